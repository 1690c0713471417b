"""Configuration loader for deploypipe."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from deploypipe.constants import PIPELINE_KEYS
from deploypipe.errors import ConfigError
from deploypipe.models import ErrorKind


class ConfigLoader:
    """Loads YAML configuration files for pipeline values and CLI defaults."""

    OPTION_KEYS = {
        "verbose",
        "log_file",
        "dry_run",
        "stage",
        "provisioner",
        "stage_timeout_seconds",
        "summary_file",
        "verify_image",
        "registry_username",
        "registry_password",
        "allow_insecure_http",
        "retry_count",
        "retry_backoff_seconds",
        "registry_auth_file",
        "kubeconfig",
        "build_number",
    }
    SUPPORTED_KEYS = OPTION_KEYS | PIPELINE_KEYS

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {config_path}", kind=ErrorKind.INVALID_VALUE)

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigError(
                f"Invalid config file '{config_path}': {exc}", kind=ErrorKind.INVALID_VALUE
            ) from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ConfigError(
                "Config file must contain a YAML mapping at the root.", kind=ErrorKind.INVALID_VALUE
            )

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise ConfigError(f"Unknown configuration keys: {unknown_list}", kind=ErrorKind.INVALID_VALUE)

        return parsed

    @staticmethod
    def split(values: Dict[str, Any]):
        """Returns ``(pipeline_values, options)`` from a loaded mapping."""
        pipeline_values = {key: value for key, value in values.items() if key in PIPELINE_KEYS}
        options = {key: value for key, value in values.items() if key not in PIPELINE_KEYS}
        return pipeline_values, options
