"""Reference deployment pipeline: build an image, fetch the chart, deploy, verify."""

from typing import Dict, List, Optional
from urllib.parse import urlparse

from deploypipe.constants import BUILD_ENVIRONMENT, DEPLOY_ENVIRONMENT
from deploypipe.errors import ConfigError
from deploypipe.errors_catalog import actionable_error
from deploypipe.models import ErrorKind, Stage

CHART_DIR = "chart"


def kaniko_git_context(repo_url: str, ref: str) -> str:
    parsed = urlparse(repo_url)
    if parsed.scheme not in ("https", "http", "git") or not parsed.netloc:
        raise ConfigError(
            actionable_error(
                "invalid_config_value",
                key="app_repo_url",
                reason="image builds from git need an https:// or git:// repository URL",
            ),
            kind=ErrorKind.INVALID_VALUE,
            key="app_repo_url",
        )

    if not ref.startswith("refs/"):
        ref = f"refs/heads/{ref}"
    return f"git://{parsed.netloc}{parsed.path}#{ref}"


def build_image_command(params: Dict[str, str]) -> List[str]:
    return [
        "/kaniko/executor",
        "--context",
        kaniko_git_context(params["app_repo_url"], params["app_repo_ref"]),
        "--dockerfile",
        params["dockerfile"],
        "--destination",
        f"{params['image_repository']}:{params['image_tag']}",
    ]


def reference_stages(stage_timeout_seconds: Optional[float] = None) -> List[Stage]:
    return [
        Stage(
            name="build-image",
            command=build_image_command,
            required_env=frozenset(
                {"image_repository", "image_tag", "app_repo_url", "app_repo_ref", "dockerfile"}
            ),
            environment=BUILD_ENVIRONMENT,
            timeout_seconds=stage_timeout_seconds,
        ),
        Stage(
            name="fetch-chart",
            command=("git", "clone", "--depth", "1", "{chart_repo_url}", f"{{workspace}}/{CHART_DIR}"),
            required_env=frozenset({"chart_repo_url"}),
            environment=DEPLOY_ENVIRONMENT,
            timeout_seconds=stage_timeout_seconds,
        ),
        Stage(
            name="deploy",
            command=(
                "helm",
                "upgrade",
                "--install",
                "{release_name}",
                f"{{workspace}}/{CHART_DIR}/{{chart_path}}",
                "--namespace",
                "{namespace}",
                "--create-namespace",
                "--set-string",
                "image.repository={image_repository}",
                "--set-string",
                "image.tag={image_tag}",
                "--wait",
            ),
            required_env=frozenset(
                {"release_name", "chart_path", "namespace", "image_repository", "image_tag"}
            ),
            environment=DEPLOY_ENVIRONMENT,
            timeout_seconds=stage_timeout_seconds,
            requires_image=True,
        ),
        Stage(
            name="verify-rollout",
            command=(
                "kubectl",
                "rollout",
                "status",
                "deployment/{release_name}",
                "--namespace",
                "{namespace}",
            ),
            required_env=frozenset({"release_name", "namespace"}),
            environment=DEPLOY_ENVIRONMENT,
            timeout_seconds=stage_timeout_seconds,
        ),
    ]
