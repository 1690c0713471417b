"""Actionable error catalog for deploypipe."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "missing_config_key": {
        "what": "Missing required configuration key: {key}",
        "next": "Set `{key}` in the config file, export DEPLOYPIPE_{env_key}, or pass `--set {key}=...`.",
    },
    "invalid_config_value": {
        "what": "Invalid value for `{key}`: {reason}",
        "next": "Fix `{key}` in the config file or override it with `--set {key}=...`.",
    },
    "insecure_url": {
        "what": "{label} uses insecure HTTP.",
        "next": "Switch to HTTPS or set `allow_insecure_http: true` only for trusted endpoints.",
    },
    "unknown_stage": {
        "what": "Unknown stage: {stage}",
        "next": "Run `deploypipe stages` to list the available stage names.",
    },
    "environment_unavailable": {
        "what": "Execution environment `{environment}` is unavailable: {reason}",
        "next": "Check that the container runtime is running and the tool image can be pulled.",
    },
    "stage_failed": {
        "what": "Stage `{stage}` failed with exit code {exit_code}.",
        "next": "Inspect the captured output below, fix the cause, and rerun with `--stage {stage}`.",
    },
    "stage_timeout": {
        "what": "Stage `{stage}` timed out after {timeout}s.",
        "next": "Raise `stage_timeout_seconds` or investigate why the tool is hanging.",
    },
    "image_not_found": {
        "what": "Image {image} was not found in the registry.",
        "next": "Make sure the build stage pushed the image before deploying it.",
    },
    "tool_missing": {
        "what": "Required command not found: {tool}",
        "next": "Install {tool} and make sure it is on PATH.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
