"""Domain errors for deploypipe."""

from typing import Optional

from deploypipe.models import ErrorKind


class PipelineError(RuntimeError):
    """Raised when the pipeline cannot continue safely."""

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.kind = kind


class ConfigError(PipelineError):
    """Raised when configuration is missing or invalid."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.MISSING_KEY, key: Optional[str] = None):
        super().__init__(message, kind=kind)
        self.key = key


class ProvisionError(PipelineError):
    """Raised when an execution environment cannot be acquired."""

    def __init__(self, message: str, environment: Optional[str] = None):
        super().__init__(message, kind=ErrorKind.UNAVAILABLE)
        self.environment = environment


class StageError(PipelineError):
    """Raised when a stage command exits non-zero or runs out of time."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.NON_ZERO_EXIT,
        exit_code: Optional[int] = None,
        output: str = "",
    ):
        super().__init__(message, kind=kind)
        self.exit_code = exit_code
        self.output = output
