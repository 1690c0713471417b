"""Docker-backed execution environments for deploypipe."""

import os
from typing import Dict, List, Optional

from deploypipe.constants import (
    BUILD_ENVIRONMENT,
    CONTAINER_WORKSPACE,
    DEPLOY_ENVIRONMENT,
    HELM_IMAGE,
    KANIKO_IMAGE,
)
from deploypipe.errors import PipelineError, ProvisionError
from deploypipe.errors_catalog import actionable_error
from deploypipe.models import EnvironmentSpec, ExecutionHandle
from deploypipe.services.provisioner import Provisioner

KEEPALIVE_SCRIPT = "while true; do sleep 3600; done"


def default_environments(
    registry_auth_file: Optional[str] = None,
    kubeconfig: Optional[str] = None,
) -> Dict[str, EnvironmentSpec]:
    kaniko_mounts = ()
    if registry_auth_file:
        kaniko_mounts = ((os.path.abspath(registry_auth_file), "/kaniko/.docker/config.json", True),)

    kubeconfig = kubeconfig or os.path.expanduser(os.path.join("~", ".kube", "config"))
    helm_mounts = ()
    if os.path.exists(kubeconfig):
        helm_mounts = ((os.path.abspath(kubeconfig), "/root/.kube/config", True),)

    return {
        BUILD_ENVIRONMENT: EnvironmentSpec(
            name=BUILD_ENVIRONMENT,
            image=KANIKO_IMAGE,
            shell="/busybox/sh",
            mounts=kaniko_mounts,
        ),
        DEPLOY_ENVIRONMENT: EnvironmentSpec(
            name=DEPLOY_ENVIRONMENT,
            image=HELM_IMAGE,
            shell="/bin/sh",
            mounts=helm_mounts,
        ),
    }


class DockerProvisioner(Provisioner):
    """Starts one container per acquisition and runs commands via ``docker exec``."""

    def __init__(
        self,
        logger,
        console,
        command_runner,
        workspace: str,
        run_id: str,
        environments: Optional[Dict[str, EnvironmentSpec]] = None,
        retry_count: int = 0,
        retry_backoff_seconds: float = 0.0,
    ):
        super().__init__(logger)
        self.console = console
        self.command_runner = command_runner
        self.workspace = workspace
        self.run_id = run_id
        self.environments = environments if environments is not None else default_environments()
        self.retry_count = retry_count
        self.retry_backoff_seconds = retry_backoff_seconds
        self._counter = 0

    def build_run_command(self, spec: EnvironmentSpec, container_name: str) -> List[str]:
        cmd = [
            "docker",
            "run",
            "-d",
            "--name",
            container_name,
            "--label",
            f"deploypipe.run-id={self.run_id}",
            "--entrypoint",
            spec.shell,
            "-v",
            f"{self.workspace}:{CONTAINER_WORKSPACE}",
            "-w",
            CONTAINER_WORKSPACE,
        ]
        for source, target, read_only in spec.mounts:
            volume = f"{source}:{target}"
            if read_only:
                volume = f"{volume}:ro"
            cmd += ["-v", volume]
        for key, value in spec.env:
            cmd += ["-e", f"{key}={value}"]
        return cmd + [spec.image, "-c", KEEPALIVE_SCRIPT]

    def acquire(self, environment_name: str) -> ExecutionHandle:
        spec = self.environments.get(environment_name)
        if spec is None:
            raise ProvisionError(
                actionable_error(
                    "environment_unavailable",
                    environment=environment_name,
                    reason="no container image configured",
                ),
                environment=environment_name,
            )

        self._counter += 1
        container_name = f"deploypipe_{self.run_id}_{environment_name}_{self._counter}"
        self.console.print(f"[dim]Starting {environment_name} environment ({spec.image})...[/dim]")

        try:
            self.command_runner.run(
                self.build_run_command(spec, container_name),
                capture_output=True,
                retry_count=self.retry_count,
                retry_backoff_seconds=self.retry_backoff_seconds,
            )
        except PipelineError as exc:
            # A failed `docker run` can still leave a created container behind.
            self._remove_container(container_name)
            raise ProvisionError(
                actionable_error("environment_unavailable", environment=environment_name, reason=str(exc)),
                environment=environment_name,
            ) from exc

        self.logger.info("Started container %s for environment %s", container_name, environment_name)
        return ExecutionHandle(
            environment=environment_name,
            handle_id=container_name,
            workspace=CONTAINER_WORKSPACE,
            exec_prefix=("docker", "exec", "-w", CONTAINER_WORKSPACE, container_name),
        )

    def release(self, handle: ExecutionHandle):
        self.logger.info("Removing container %s", handle.handle_id)
        self._remove_container(handle.handle_id)

    def _remove_container(self, container_name: str):
        try:
            result = self.command_runner.run(
                ["docker", "rm", "-f", container_name],
                check=False,
                capture_output=True,
            )
        except PipelineError as exc:
            self.logger.warning("Could not remove container %s: %s", container_name, exc)
            return

        if result.returncode != 0:
            self.logger.warning(
                "Could not remove container %s: %s",
                container_name,
                (result.stderr or "").strip(),
            )
