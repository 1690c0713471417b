"""Sequential, fail-fast stage execution for deploypipe."""

import threading
import uuid
from typing import Callable, List, Optional, Sequence

from deploypipe.errors import ConfigError, PipelineError, ProvisionError, StageError
from deploypipe.errors_catalog import actionable_error
from deploypipe.models import (
    ErrorKind,
    ExecutionHandle,
    PipelineConfig,
    PipelineRun,
    Stage,
    StageResult,
    StageStatus,
    utcnow,
)


def new_run_id() -> str:
    return uuid.uuid4().hex[:10]


def select_stages(stages: Sequence[Stage], name: Optional[str]) -> List[Stage]:
    """Narrows ``stages`` to the one called ``name`` (all stages when ``name`` is empty)."""
    if not name:
        return list(stages)

    selected = [stage for stage in stages if stage.name == name]
    if not selected:
        raise ConfigError(actionable_error("unknown_stage", stage=name), kind=ErrorKind.INVALID_VALUE)
    return selected


class PipelineExecutor:
    """Runs stages one at a time in declared order and stops at the first failure.

    Errors never escape ``run``: they are recorded on the returned
    :class:`PipelineRun` so the caller decides how to report them.
    """

    def __init__(
        self,
        logger,
        console,
        provisioner,
        command_runner,
        default_timeout: Optional[float] = None,
        image_verifier: Optional[Callable[[str, str], bool]] = None,
    ):
        self.logger = logger
        self.console = console
        self.provisioner = provisioner
        self.command_runner = command_runner
        self.default_timeout = default_timeout
        self.image_verifier = image_verifier

    def check_required(self, stages: Sequence[Stage], config: PipelineConfig):
        seen = set()
        for stage in stages:
            if stage.name in seen:
                raise ConfigError(
                    actionable_error(
                        "invalid_config_value",
                        key="stages",
                        reason=f"duplicate stage name '{stage.name}'",
                    ),
                    kind=ErrorKind.INVALID_VALUE,
                )
            seen.add(stage.name)

            required = set(stage.required_env)
            if stage.requires_image:
                required |= {"image_repository", "image_tag"}
            for key in sorted(required):
                if key not in config or not config[key]:
                    raise ConfigError(
                        actionable_error("missing_config_key", key=key, env_key=key.upper()),
                        kind=ErrorKind.MISSING_KEY,
                        key=key,
                    )

    def render_command(self, stage: Stage, params) -> List[str]:
        try:
            if callable(stage.command):
                argv = list(stage.command(dict(params)))
            else:
                argv = [str(arg).format_map(params) for arg in stage.command]
        except KeyError as exc:
            key = exc.args[0] if exc.args else "?"
            raise ConfigError(
                actionable_error(
                    "invalid_config_value",
                    key=str(key),
                    reason=f"referenced by stage '{stage.name}' but not listed in its required_env",
                ),
                kind=ErrorKind.INVALID_VALUE,
                key=str(key),
            ) from exc
        except (ValueError, IndexError) as exc:
            raise ConfigError(
                actionable_error(
                    "invalid_config_value",
                    key=stage.name,
                    reason=f"stage command template cannot be rendered: {exc}",
                ),
                kind=ErrorKind.INVALID_VALUE,
            ) from exc

        if not argv:
            raise ConfigError(
                actionable_error("invalid_config_value", key=stage.name, reason="stage command is empty"),
                kind=ErrorKind.INVALID_VALUE,
            )
        return argv

    def run(
        self,
        stages: Sequence[Stage],
        config: PipelineConfig,
        cancel_event: Optional[threading.Event] = None,
        run_id: Optional[str] = None,
    ) -> PipelineRun:
        stages = list(stages)
        pipeline_run = PipelineRun(run_id=run_id or new_run_id())

        try:
            self.check_required(stages, config)
        except ConfigError as exc:
            self.logger.error(str(exc))
            pipeline_run.error = exc
            pipeline_run.finished_at = utcnow()
            return pipeline_run

        pipeline_run.results = [StageResult(stage=stage.name) for stage in stages]
        self.logger.info("Starting run %s with %s stage(s)", pipeline_run.run_id, len(stages))

        for index, stage in enumerate(stages):
            if cancel_event is not None and cancel_event.is_set():
                self.logger.warning("Cancellation requested. Skipping remaining stages.")
                pipeline_run.cancelled = True
                self._skip_from(pipeline_run, index)
                break

            result = self._run_stage(pipeline_run, index, stage, config)
            if result.status == StageStatus.FAILED:
                self._skip_from(pipeline_run, index + 1)
                break

        pipeline_run.finished_at = utcnow()
        return pipeline_run

    def _run_stage(
        self,
        pipeline_run: PipelineRun,
        index: int,
        stage: Stage,
        config: PipelineConfig,
    ) -> StageResult:
        result = pipeline_run.results[index].transition(StageStatus.RUNNING)
        pipeline_run.results[index] = result
        self.console.print(f"[bold blue]Stage {stage.name}[/bold blue] [dim]({stage.environment})[/dim]")
        self.logger.info("Stage %s started in environment %s", stage.name, stage.environment)

        try:
            with self.provisioner.provision(stage.environment) as handle:
                completed = self._invoke(stage, config, handle)
        except ProvisionError as exc:
            pipeline_run.error = exc
            final = result.transition(
                StageStatus.FAILED,
                error_kind=ErrorKind.UNAVAILABLE,
                message=str(exc),
            )
        except StageError as exc:
            message = str(exc)
            if exc.kind == ErrorKind.TIMEOUT:
                message = actionable_error(
                    "stage_timeout",
                    stage=stage.name,
                    timeout=str(self._timeout_for(stage)),
                )
            final = result.transition(
                StageStatus.FAILED,
                exit_code=exc.exit_code,
                output=exc.output,
                error_kind=exc.kind,
                message=message,
            )
        except PipelineError as exc:
            final = result.transition(
                StageStatus.FAILED,
                error_kind=exc.kind or ErrorKind.NON_ZERO_EXIT,
                message=str(exc),
            )
        except KeyboardInterrupt:
            pipeline_run.cancelled = True
            final = result.transition(
                StageStatus.FAILED,
                error_kind=ErrorKind.CANCELLED,
                message=f"Stage {stage.name} was interrupted.",
            )
        except Exception as exc:
            self.logger.error("Unexpected error in stage %s", stage.name, exc_info=True)
            final = result.transition(
                StageStatus.FAILED,
                error_kind=ErrorKind.INTERNAL,
                message=f"Stage {stage.name} raised {type(exc).__name__}: {exc}",
            )
        else:
            if completed.returncode == 0:
                final = result.transition(
                    StageStatus.SUCCEEDED,
                    exit_code=0,
                    output=completed.stdout or "",
                )
            else:
                final = result.transition(
                    StageStatus.FAILED,
                    exit_code=completed.returncode,
                    output=completed.stdout or "",
                    error_kind=ErrorKind.NON_ZERO_EXIT,
                    message=actionable_error(
                        "stage_failed", stage=stage.name, exit_code=str(completed.returncode)
                    ),
                )

        pipeline_run.results[index] = final
        if final.status == StageStatus.SUCCEEDED:
            self.console.print(f"[green]Stage {stage.name} succeeded.[/green]")
            self.logger.info("Stage %s succeeded in %.1fs", stage.name, final.duration_seconds or 0.0)
        else:
            self.console.print(f"[bold red]Stage {stage.name} failed:[/bold red] {final.message}")
            self.logger.error("Stage %s failed: %s", stage.name, final.message)
        return final

    def _invoke(self, stage: Stage, config: PipelineConfig, handle: ExecutionHandle):
        params = config.subset(sorted(stage.required_env))
        params["workspace"] = handle.workspace
        argv = self.render_command(stage, params)

        if stage.requires_image and self.image_verifier is not None:
            image_repository, image_tag = config["image_repository"], config["image_tag"]
            if not self.image_verifier(image_repository, image_tag):
                raise StageError(
                    actionable_error("image_not_found", image=f"{image_repository}:{image_tag}"),
                    kind=ErrorKind.IMAGE_NOT_FOUND,
                )

        return self.command_runner.run(
            handle.command_for(argv),
            check=False,
            capture_output=True,
            merge_stderr=True,
            timeout=self._timeout_for(stage),
            cwd=handle.cwd,
        )

    def _timeout_for(self, stage: Stage) -> Optional[float]:
        if stage.timeout_seconds is not None:
            return stage.timeout_seconds
        return self.default_timeout

    @staticmethod
    def _skip_from(pipeline_run: PipelineRun, start: int):
        for index in range(start, len(pipeline_run.results)):
            pipeline_run.results[index] = pipeline_run.results[index].transition(StageStatus.SKIPPED)
