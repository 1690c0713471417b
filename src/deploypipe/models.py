"""Shared domain models for deploypipe."""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Sequence, Tuple, Union


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ErrorKind(str, Enum):
    MISSING_KEY = "missing_key"
    INVALID_VALUE = "invalid_value"
    UNAVAILABLE = "unavailable"
    NON_ZERO_EXIT = "non_zero_exit"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    IMAGE_NOT_FOUND = "image_not_found"
    INTERNAL = "internal"


TERMINAL_STATUSES = frozenset({StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED})

ALLOWED_TRANSITIONS: Dict[StageStatus, FrozenSet[StageStatus]] = {
    StageStatus.PENDING: frozenset({StageStatus.RUNNING, StageStatus.SKIPPED}),
    StageStatus.RUNNING: frozenset({StageStatus.SUCCEEDED, StageStatus.FAILED}),
    StageStatus.SUCCEEDED: frozenset(),
    StageStatus.FAILED: frozenset(),
    StageStatus.SKIPPED: frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineConfig(Mapping):
    """Immutable, resolved configuration values for one pipeline run."""

    def __init__(self, values: Optional[Dict[str, str]] = None):
        self._values = MappingProxyType(dict(values or {}))

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"PipelineConfig({dict(self._values)!r})"

    def subset(self, keys: Iterable[str]) -> Dict[str, str]:
        return {key: self._values[key] for key in keys}


StageCommand = Union[Sequence[str], Callable[[Dict[str, str]], Sequence[str]]]


@dataclass(frozen=True)
class Stage:
    """A named unit of work bound to an execution environment.

    ``command`` is either a sequence of ``str.format`` templates rendered
    against the stage parameters, or a callable that receives the
    parameters and returns the argv. Parameters are the ``required_env``
    subset of the config plus ``workspace``.
    """

    name: str
    command: StageCommand
    required_env: FrozenSet[str] = frozenset()
    environment: str = "local"
    timeout_seconds: Optional[float] = None
    requires_image: bool = False


@dataclass(frozen=True)
class StageResult:
    """Outcome of one stage. Transitions return new instances."""

    stage: str
    status: StageStatus = StageStatus.PENDING
    exit_code: Optional[int] = None
    output: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def transition(self, status: StageStatus, **changes) -> "StageResult":
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(
                f"Illegal transition for stage '{self.stage}': {self.status.value} -> {status.value}"
            )
        if status == StageStatus.RUNNING:
            changes.setdefault("started_at", utcnow())
        elif status in TERMINAL_STATUSES and status != StageStatus.SKIPPED:
            changes.setdefault("finished_at", utcnow())
        return replace(self, status=status, **changes)


@dataclass
class PipelineRun:
    """Record of one end-to-end execution, owned by the executor while it runs."""

    run_id: str
    results: List[StageResult] = field(default_factory=list)
    error: Optional[Exception] = None
    cancelled: bool = False
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def status(self) -> RunStatus:
        if self.error is not None:
            return RunStatus.FAILED
        if any(result.status == StageStatus.FAILED for result in self.results):
            return RunStatus.FAILED
        if self.cancelled:
            return RunStatus.CANCELLED
        return RunStatus.SUCCEEDED

    @property
    def first_failure(self) -> Optional[StageResult]:
        for result in self.results:
            if result.status == StageStatus.FAILED:
                return result
        return None

    def result_for(self, stage_name: str) -> Optional[StageResult]:
        for result in self.results:
            if result.stage == stage_name:
                return result
        return None


@dataclass(frozen=True)
class ExecutionHandle:
    """An acquired execution environment.

    ``workspace`` is the workspace path as seen by commands running inside
    the environment; ``exec_prefix`` is prepended to every argv.
    """

    environment: str
    handle_id: str
    workspace: str
    exec_prefix: Tuple[str, ...] = ()
    cwd: Optional[str] = None

    def command_for(self, argv: Sequence[str]) -> List[str]:
        return list(self.exec_prefix) + list(argv)


@dataclass(frozen=True)
class EnvironmentSpec:
    """Container image and runtime options for one named environment."""

    name: str
    image: str
    shell: str = "/bin/sh"
    mounts: Tuple[Tuple[str, str, bool], ...] = ()
    env: Tuple[Tuple[str, str], ...] = ()
