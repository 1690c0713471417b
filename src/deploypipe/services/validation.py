"""Configuration value validation helpers for deploypipe."""

import re
from urllib.parse import urlparse

from deploypipe.errors import ConfigError
from deploypipe.errors_catalog import actionable_error
from deploypipe.models import ErrorKind

_DOMAIN_COMPONENT = r"(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)"
_DOMAIN = rf"{_DOMAIN_COMPONENT}(?:\.{_DOMAIN_COMPONENT})*(?::[0-9]+)?"
_PATH_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
IMAGE_REPOSITORY_RE = re.compile(rf"^(?:{_DOMAIN}/)?{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*$")
IMAGE_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
DNS_LABEL_RE = re.compile(r"^[a-z0-9](?:[-a-z0-9]*[a-z0-9])?$")
SCP_LIKE_RE = re.compile(r"^[\w.-]+@[\w.-]+:.+$")


class ValidationService:
    """Validates resolved pipeline values and the URL protocol policy."""

    REPO_SCHEMES = {"https", "ssh", "git", "file"}
    BUILD_CONTEXT_SCHEMES = {"https", "git"}
    MAX_NAMESPACE_LENGTH = 63
    MAX_RELEASE_NAME_LENGTH = 53

    def __init__(self, logger, allow_insecure_http: bool = False):
        self.logger = logger
        self.allow_insecure_http = allow_insecure_http

    def validate(self, values):
        """Validates every known key present in ``values``."""
        if "app_repo_url" in values:
            self.validate_build_context_url("app_repo_url", values["app_repo_url"])
        if "chart_repo_url" in values:
            self.validate_repo_url("chart_repo_url", values["chart_repo_url"])
        if "image_repository" in values:
            self.validate_image_repository(values["image_repository"])
        if "image_tag" in values:
            self.validate_image_tag(values["image_tag"])
        if "namespace" in values:
            self.validate_dns_label("namespace", values["namespace"], self.MAX_NAMESPACE_LENGTH)
        if "release_name" in values:
            self.validate_dns_label("release_name", values["release_name"], self.MAX_RELEASE_NAME_LENGTH)

    def validate_repo_url(self, key: str, location: str):
        if SCP_LIKE_RE.match(location):
            return

        scheme = urlparse(location).scheme.lower()
        if scheme == "http":
            if not self.allow_insecure_http:
                raise ConfigError(
                    actionable_error("insecure_url", label=key), kind=ErrorKind.INVALID_VALUE, key=key
                )
            self.logger.warning("Insecure HTTP enabled for %s: %s", key, location)
            return

        if scheme not in self.REPO_SCHEMES:
            self._invalid(key, f"unsupported repository location '{location}'")

    def validate_build_context_url(self, key: str, location: str):
        """Checks that ``location`` can serve as a kaniko git build context."""
        self.validate_repo_url(key, location)

        parsed = urlparse(location)
        scheme = parsed.scheme.lower()
        if scheme == "http" and self.allow_insecure_http:
            return
        if SCP_LIKE_RE.match(location) or scheme not in self.BUILD_CONTEXT_SCHEMES or not parsed.netloc:
            self._invalid(key, f"image builds need an https:// or git:// repository URL, got '{location}'")

    def validate_image_repository(self, repository: str):
        if not IMAGE_REPOSITORY_RE.match(repository):
            self._invalid("image_repository", f"'{repository}' is not a valid image repository")

    def validate_image_tag(self, tag: str):
        if not IMAGE_TAG_RE.match(tag):
            self._invalid("image_tag", f"'{tag}' is not a valid image tag")

    def validate_dns_label(self, key: str, value: str, max_length: int):
        if len(value) > max_length or not DNS_LABEL_RE.match(value):
            self._invalid(
                key,
                f"'{value}' must be lowercase alphanumerics or '-', at most {max_length} characters",
            )

    @staticmethod
    def _invalid(key: str, reason: str):
        raise ConfigError(
            actionable_error("invalid_config_value", key=key, reason=reason),
            kind=ErrorKind.INVALID_VALUE,
            key=key,
        )
