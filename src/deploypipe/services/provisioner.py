"""Execution environment provisioning for deploypipe stages."""

import uuid
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, Optional

from deploypipe.constants import BUILD_ENVIRONMENT, DEPLOY_ENVIRONMENT
from deploypipe.errors import ProvisionError
from deploypipe.errors_catalog import actionable_error
from deploypipe.models import ExecutionHandle


class Provisioner:
    """Acquires and releases isolated execution environments by name."""

    def __init__(self, logger):
        self.logger = logger
        self.active: Dict[str, ExecutionHandle] = {}

    def acquire(self, environment_name: str) -> ExecutionHandle:
        raise NotImplementedError

    def release(self, handle: ExecutionHandle):
        raise NotImplementedError

    @contextmanager
    def provision(self, environment_name: str) -> Iterator[ExecutionHandle]:
        handle = self.acquire(environment_name)
        self.active[handle.handle_id] = handle
        try:
            yield handle
        finally:
            self.active.pop(handle.handle_id, None)
            self.release(handle)


class LocalProvisioner(Provisioner):
    """Runs stage commands directly on the host inside the run workspace."""

    DEFAULT_ENVIRONMENTS = (BUILD_ENVIRONMENT, DEPLOY_ENVIRONMENT, "local")

    def __init__(self, logger, workspace: str, environments: Optional[Iterable[str]] = None):
        super().__init__(logger)
        self.workspace = workspace
        self.environments = frozenset(environments or self.DEFAULT_ENVIRONMENTS)

    def acquire(self, environment_name: str) -> ExecutionHandle:
        if environment_name not in self.environments:
            raise ProvisionError(
                actionable_error(
                    "environment_unavailable",
                    environment=environment_name,
                    reason="not declared for the local provisioner",
                ),
                environment=environment_name,
            )

        handle = ExecutionHandle(
            environment=environment_name,
            handle_id=f"local-{environment_name}-{uuid.uuid4().hex[:8]}",
            workspace=self.workspace,
            cwd=self.workspace,
        )
        self.logger.debug("Acquired local environment %s", handle.handle_id)
        return handle

    def release(self, handle: ExecutionHandle):
        self.logger.debug("Released local environment %s", handle.handle_id)
