import logging
import os
import signal
import threading
from typing import Any, List, Mapping, Optional

from rich.console import Console

from .constants import (
    EXIT_CANCELLED,
    EXIT_CONFIG_ERROR,
    EXIT_PROVISION_ERROR,
    EXIT_STAGE_FAILED,
    EXIT_SUCCESS,
    EXIT_UNEXPECTED,
)
from .errors import ConfigError, PipelineError, ProvisionError
from .models import ErrorKind, PipelineConfig, PipelineRun, RunStatus, Stage, utcnow
from .pipeline import reference_stages
from .services.command_runner import CommandRunner
from .services.docker_runtime import DockerProvisioner, default_environments
from .services.executor import PipelineExecutor, new_run_id, select_stages
from .services.filesystem import FileSystemService
from .services.provisioner import LocalProvisioner
from .services.registry import RegistryService
from .services.reporter import DeploymentReporter
from .services.resolver import EnvironmentResolver
from .services.tooling import ToolingService
from .services.validation import ValidationService

console = Console()
logger = logging.getLogger("deploypipe")


class DeploymentPipeline:
    PROVISIONERS = ["docker", "local"]

    def __init__(
        self,
        file_values: Optional[Mapping[str, Any]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
        stages: Optional[List[Stage]] = None,
        stage: Optional[str] = None,
        dry_run: bool = False,
        provisioner: str = "docker",
        stage_timeout_seconds: Optional[float] = None,
        summary_file: Optional[str] = None,
        verify_image: bool = False,
        registry_username: Optional[str] = None,
        registry_password: Optional[str] = None,
        allow_insecure_http: bool = False,
        retry_count: int = 0,
        retry_backoff_seconds: float = 2.0,
        registry_auth_file: Optional[str] = None,
        kubeconfig: Optional[str] = None,
        build_number: Optional[Any] = None,
        workspace_root: Optional[str] = None,
        skip_preflight: bool = False,
    ):
        if provisioner not in self.PROVISIONERS:
            raise PipelineError(
                f"Invalid provisioner '{provisioner}'. Supported: {', '.join(self.PROVISIONERS)}"
            )

        self.file_values = dict(file_values or {})
        self.overrides = dict(overrides or {})
        self.environ = dict(os.environ if environ is None else environ)
        self.stages = stages if stages is not None else reference_stages(stage_timeout_seconds)
        self.stage = stage
        self.dry_run = dry_run
        self.provisioner_kind = provisioner
        self.stage_timeout_seconds = stage_timeout_seconds
        self.verify_image = verify_image
        self.retry_count = retry_count
        self.retry_backoff_seconds = retry_backoff_seconds
        self.registry_auth_file = registry_auth_file
        self.kubeconfig = kubeconfig
        self.build_number = build_number
        self.workspace_root = workspace_root
        self.skip_preflight = skip_preflight

        self.run_id = new_run_id()
        self.cancel_event = threading.Event()
        self.workspace: Optional[str] = None

        self.command_runner = CommandRunner(logger=logger)
        self.filesystem_service = FileSystemService(logger=logger, console=console)
        self.validation_service = ValidationService(
            logger=logger,
            allow_insecure_http=allow_insecure_http,
        )
        self.resolver = EnvironmentResolver(validation_service=self.validation_service)
        self.tooling_service = ToolingService(logger=logger, console=console, run_cmd=self._run_cmd)
        self.registry_service = RegistryService(
            logger=logger,
            username=registry_username,
            password=registry_password,
            allow_insecure_http=allow_insecure_http,
        )
        self.reporter = DeploymentReporter(logger=logger, console=console, summary_file=summary_file)

    def _run_cmd(self, cmd: List[str], check: bool = True, capture_output: bool = False):
        return self.command_runner.run(cmd, check=check, capture_output=capture_output)

    def resolve_config(self) -> PipelineConfig:
        return self.resolver.resolve(
            file_values=self.file_values,
            environ=self.environ,
            overrides=self.overrides,
            build_number=self.build_number,
        )

    def build_provisioner(self, workspace: str):
        if self.provisioner_kind == "local":
            return LocalProvisioner(logger=logger, workspace=workspace)

        return DockerProvisioner(
            logger=logger,
            console=console,
            command_runner=self.command_runner,
            workspace=workspace,
            run_id=self.run_id,
            environments=default_environments(
                registry_auth_file=self.registry_auth_file,
                kubeconfig=self.kubeconfig,
            ),
            retry_count=self.retry_count,
            retry_backoff_seconds=self.retry_backoff_seconds,
        )

    def build_executor(self, provisioner) -> PipelineExecutor:
        return PipelineExecutor(
            logger=logger,
            console=console,
            provisioner=provisioner,
            command_runner=self.command_runner,
            default_timeout=self.stage_timeout_seconds,
            image_verifier=self.registry_service.image_exists if self.verify_image else None,
        )

    def print_plan(self, stages: List[Stage], config: PipelineConfig):
        executor = self.build_executor(provisioner=None)
        executor.check_required(stages, config)

        console.print("[bold blue]Dry run: no environment will be provisioned.[/bold blue]")
        for index, stage in enumerate(stages, start=1):
            params = config.subset(sorted(stage.required_env))
            params["workspace"] = "<workspace>"
            argv = executor.render_command(stage, params)
            console.print(f"[blue]{index}. {stage.name}[/blue] [dim]({stage.environment})[/dim]")
            console.print(f"   {' '.join(argv)}", markup=False, highlight=False)
            logger.info("Planned stage %s: %s", stage.name, " ".join(argv))

    def request_cancel(self, *_args):
        logger.warning("Cancellation requested. The run stops at the next stage boundary.")
        self.cancel_event.set()

    def exit_code_for(self, pipeline_run: PipelineRun) -> int:
        if pipeline_run.cancelled:
            return EXIT_CANCELLED
        if pipeline_run.status == RunStatus.SUCCEEDED:
            return EXIT_SUCCESS
        if isinstance(pipeline_run.error, ConfigError):
            return EXIT_CONFIG_ERROR
        if isinstance(pipeline_run.error, ProvisionError):
            return EXIT_PROVISION_ERROR

        failure = pipeline_run.first_failure
        if failure is not None and failure.error_kind == ErrorKind.INTERNAL:
            return EXIT_UNEXPECTED
        if failure is not None and failure.error_kind == ErrorKind.UNAVAILABLE:
            return EXIT_PROVISION_ERROR
        if failure is not None and failure.error_kind in (ErrorKind.MISSING_KEY, ErrorKind.INVALID_VALUE):
            return EXIT_CONFIG_ERROR
        if failure is not None:
            return EXIT_STAGE_FAILED
        return EXIT_UNEXPECTED

    def _failed_before_start(self, error: Exception) -> PipelineRun:
        pipeline_run = PipelineRun(run_id=self.run_id, error=error)
        pipeline_run.finished_at = utcnow()
        return pipeline_run

    def run(self) -> int:
        logger.info("Starting deploypipe run %s...", self.run_id)

        try:
            config = self.resolve_config()
            stages = select_stages(self.stages, self.stage)
        except ConfigError as exc:
            self.reporter.report(self._failed_before_start(exc))
            return EXIT_CONFIG_ERROR

        if self.dry_run:
            try:
                self.print_plan(stages, config)
            except ConfigError as exc:
                self.reporter.report(self._failed_before_start(exc))
                return EXIT_CONFIG_ERROR
            return EXIT_SUCCESS

        if not self.skip_preflight:
            try:
                self.tooling_service.check(self.provisioner_kind)
            except ProvisionError as exc:
                self.reporter.report(self._failed_before_start(exc))
                return EXIT_PROVISION_ERROR

        previous_handler = None
        if threading.current_thread() is threading.main_thread():
            previous_handler = signal.signal(signal.SIGTERM, self.request_cancel)

        try:
            self.workspace = self.filesystem_service.create_workspace(self.run_id, root=self.workspace_root)
            provisioner = self.build_provisioner(self.workspace)
            executor = self.build_executor(provisioner)
            pipeline_run = executor.run(stages, config, cancel_event=self.cancel_event, run_id=self.run_id)
            self.reporter.report(pipeline_run)
            return self.exit_code_for(pipeline_run)
        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            return EXIT_CANCELLED
        except Exception:
            console.print("[bold red]Unexpected error.[/bold red]")
            logger.exception("Unexpected error")
            return EXIT_UNEXPECTED
        finally:
            if previous_handler is not None:
                signal.signal(signal.SIGTERM, previous_handler)
            if self.workspace:
                self.filesystem_service.cleanup_dir(self.workspace)
