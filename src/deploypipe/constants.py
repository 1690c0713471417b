"""Shared constants for deploypipe."""

REQUIRED_KEYS = ("image_repository", "image_tag", "app_repo_url", "chart_repo_url")

DEFAULTS = {
    "namespace": "sample-app",
    "release_name": "sample-app",
    "chart_path": ".",
    "dockerfile": "Dockerfile",
    "app_repo_ref": "main",
}

PIPELINE_KEYS = frozenset(REQUIRED_KEYS) | frozenset(DEFAULTS)

ENV_PREFIX = "DEPLOYPIPE_"
BUILD_NUMBER_ENV = "BUILD_NUMBER"

DEFAULT_CONFIG_FILE = ".deploypipe.yml"

BUILD_ENVIRONMENT = "kaniko"
DEPLOY_ENVIRONMENT = "helm"
KANIKO_IMAGE = "gcr.io/kaniko-project/executor:debug"
HELM_IMAGE = "alpine/k8s:1.29.2"
CONTAINER_WORKSPACE = "/workspace"

MIN_HELM_VERSION = "3.2.0"

OUTPUT_TAIL_LINES = 20

EXIT_SUCCESS = 0
EXIT_UNEXPECTED = 1
EXIT_CONFIG_ERROR = 3
EXIT_STAGE_FAILED = 4
EXIT_PROVISION_ERROR = 5
EXIT_CANCELLED = 130
