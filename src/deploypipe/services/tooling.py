"""Preflight checks for the external tools a pipeline shells out to."""

import re
import shutil
from typing import Callable, Optional

from packaging import version

from deploypipe.constants import MIN_HELM_VERSION
from deploypipe.errors import PipelineError, ProvisionError
from deploypipe.errors_catalog import actionable_error

LOCAL_TOOLS = ("git", "helm", "kubectl")
_VERSION_RE = re.compile(r"v?(\d+\.\d+(?:\.\d+)?)")


class ToolingService:
    """Validates that the host can provide the requested execution environments."""

    def __init__(self, logger, console, run_cmd: Callable, which: Callable = shutil.which):
        self.logger = logger
        self.console = console
        self.run_cmd = run_cmd
        self.which = which

    def check(self, provisioner_kind: str):
        self.console.print("[blue]Validating tooling...[/blue]")
        if provisioner_kind == "docker":
            self.check_docker()
        else:
            for tool in LOCAL_TOOLS:
                self.require(tool)
            self.check_helm_version()
        self.console.print("[green]Tooling is available.[/green]")

    def require(self, tool: str):
        if self.which(tool) is None:
            raise ProvisionError(actionable_error("tool_missing", tool=tool), environment=tool)

    def check_docker(self):
        self.require("docker")
        try:
            self.run_cmd(["docker", "version", "--format", "{{.Server.Version}}"], capture_output=True)
        except PipelineError as exc:
            raise ProvisionError(
                actionable_error("environment_unavailable", environment="docker", reason=str(exc)),
                environment="docker",
            ) from exc

    def check_helm_version(self):
        try:
            result = self.run_cmd(["helm", "version", "--short"], capture_output=True)
        except PipelineError as exc:
            raise ProvisionError(
                actionable_error("environment_unavailable", environment="helm", reason=str(exc)),
                environment="helm",
            ) from exc

        found = self.parse_version(result.stdout or "")
        if found is None:
            self.logger.warning("Could not determine Helm version from: %s", (result.stdout or "").strip())
            return

        if found < version.parse(MIN_HELM_VERSION):
            raise ProvisionError(
                actionable_error(
                    "environment_unavailable",
                    environment="helm",
                    reason=f"Helm {found} is older than {MIN_HELM_VERSION} (needed for --create-namespace)",
                ),
                environment="helm",
            )
        self.logger.debug("Helm version %s", found)

    @staticmethod
    def parse_version(text: str) -> Optional[version.Version]:
        match = _VERSION_RE.search(text)
        if not match:
            return None
        return version.parse(match.group(1))
