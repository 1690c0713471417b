"""Environment resolution for deploypipe pipeline values."""

from typing import Any, Dict, Mapping, Optional, Sequence

from deploypipe.constants import BUILD_NUMBER_ENV, DEFAULTS, ENV_PREFIX, PIPELINE_KEYS, REQUIRED_KEYS
from deploypipe.errors import ConfigError
from deploypipe.errors_catalog import actionable_error
from deploypipe.models import ErrorKind, PipelineConfig


class EnvironmentResolver:
    """Resolves named pipeline values from layered sources.

    Precedence, lowest first: declared defaults, config file values,
    ``DEPLOYPIPE_*`` environment variables, caller overrides. When no
    ``image_tag`` is given it is derived from the build number so every
    CI build pushes a distinct tag.
    """

    def __init__(
        self,
        validation_service=None,
        required_keys: Sequence[str] = REQUIRED_KEYS,
        defaults: Optional[Mapping[str, str]] = None,
    ):
        self.validation_service = validation_service
        self.required_keys = tuple(required_keys)
        self.defaults = dict(DEFAULTS if defaults is None else defaults)
        self.known_keys = set(PIPELINE_KEYS) | set(self.required_keys) | set(self.defaults)

    def resolve(
        self,
        file_values: Optional[Mapping[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        build_number: Optional[Any] = None,
    ) -> PipelineConfig:
        environ = environ or {}
        values: Dict[str, str] = {}

        for layer in (self.defaults, file_values or {}, self._from_environ(environ), overrides or {}):
            for key, value in layer.items():
                if key not in self.known_keys:
                    raise ConfigError(
                        actionable_error("invalid_config_value", key=key, reason="unknown pipeline key"),
                        kind=ErrorKind.INVALID_VALUE,
                        key=key,
                    )
                text = self._normalize(value)
                if text:
                    values[key] = text

        if "image_tag" not in values:
            derived = self._normalize(build_number) or self._normalize(environ.get(BUILD_NUMBER_ENV))
            if derived:
                values["image_tag"] = derived

        for key in self.required_keys:
            if key not in values:
                raise ConfigError(
                    actionable_error("missing_config_key", key=key, env_key=key.upper()),
                    kind=ErrorKind.MISSING_KEY,
                    key=key,
                )

        if self.validation_service is not None:
            self.validation_service.validate(values)

        return PipelineConfig(values)

    def _from_environ(self, environ: Mapping[str, str]) -> Dict[str, str]:
        found = {}
        for key in self.known_keys:
            env_name = f"{ENV_PREFIX}{key.upper()}"
            if env_name in environ:
                found[key] = environ[env_name]
        return found

    @staticmethod
    def _normalize(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, bool):
            return str(value).lower()
        return str(value).strip()
