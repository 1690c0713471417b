"""Run summaries for deploypipe."""

import json
import os
import tempfile
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from rich.table import Table

from deploypipe.constants import OUTPUT_TAIL_LINES
from deploypipe.models import PipelineRun, RunStatus, StageStatus


def tail(text: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    if not text:
        return ""
    return "\n".join(text.rstrip("\n").splitlines()[-lines:])


@dataclass(frozen=True)
class StageSummary:
    name: str
    status: str
    duration_seconds: Optional[float]
    exit_code: Optional[int]


@dataclass(frozen=True)
class FailureSummary:
    stage: str
    exit_code: Optional[int]
    error_kind: Optional[str]
    message: Optional[str]
    output_tail: str


@dataclass(frozen=True)
class Summary:
    run_id: str
    status: str
    started_at: Optional[str]
    finished_at: Optional[str]
    duration_seconds: Optional[float]
    stages: List[StageSummary] = field(default_factory=list)
    first_failure: Optional[FailureSummary] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DeploymentReporter:
    """Builds a run summary and emits it to the console, the log, and an optional JSON file."""

    def __init__(self, logger, console, summary_file: Optional[str] = None, tail_lines: int = OUTPUT_TAIL_LINES):
        self.logger = logger
        self.console = console
        self.summary_file = summary_file
        self.tail_lines = tail_lines

    def summarize(self, run: PipelineRun) -> Summary:
        duration = None
        if run.finished_at is not None:
            duration = (run.finished_at - run.started_at).total_seconds()

        first_failure = None
        failed = run.first_failure
        if failed is not None:
            first_failure = FailureSummary(
                stage=failed.stage,
                exit_code=failed.exit_code,
                error_kind=failed.error_kind.value if failed.error_kind else None,
                message=failed.message,
                output_tail=tail(failed.output, self.tail_lines),
            )

        return Summary(
            run_id=run.run_id,
            status=run.status.value,
            started_at=run.started_at.isoformat(),
            finished_at=run.finished_at.isoformat() if run.finished_at else None,
            duration_seconds=duration,
            stages=[
                StageSummary(
                    name=result.stage,
                    status=result.status.value,
                    duration_seconds=result.duration_seconds,
                    exit_code=result.exit_code,
                )
                for result in run.results
            ],
            first_failure=first_failure,
            error=str(run.error) if run.error is not None else None,
        )

    def report(self, run: PipelineRun) -> Summary:
        summary = self.summarize(run)
        self._emit_console(summary)
        self._emit_log(summary)
        if self.summary_file:
            self.write_json(summary)
        return summary

    def _emit_console(self, summary: Summary):
        if summary.stages:
            table = Table(title=f"Run {summary.run_id}")
            table.add_column("Stage")
            table.add_column("Status")
            table.add_column("Duration", justify="right")
            table.add_column("Exit code", justify="right")
            for stage in summary.stages:
                table.add_row(
                    stage.name,
                    f"[{self._style(stage.status)}]{stage.status}[/{self._style(stage.status)}]",
                    f"{stage.duration_seconds:.1f}s" if stage.duration_seconds is not None else "-",
                    str(stage.exit_code) if stage.exit_code is not None else "-",
                )
            self.console.print(table)

        if summary.error and summary.first_failure is None:
            self.console.print(f"[bold red]Error:[/bold red] {summary.error}")

        failure = summary.first_failure
        if failure is not None:
            self.console.print(f"[bold red]Stage {failure.stage} failed:[/bold red] {failure.message}")
            if failure.output_tail:
                self.console.print("[dim]Last output lines:[/dim]")
                self.console.print(failure.output_tail, markup=False, highlight=False)

        style = self._style(summary.status)
        self.console.print(f"[bold {style}]Pipeline {summary.status}.[/bold {style}]")

    def _emit_log(self, summary: Summary):
        for stage in summary.stages:
            self.logger.debug(
                "Stage %s: %s (%s s, exit %s)",
                stage.name,
                stage.status,
                stage.duration_seconds,
                stage.exit_code,
            )
        if summary.succeeded:
            self.logger.info("Run %s succeeded", summary.run_id)
            return

        if summary.first_failure is not None:
            self.logger.error(
                "Run %s %s at stage %s (exit code %s)",
                summary.run_id,
                summary.status,
                summary.first_failure.stage,
                summary.first_failure.exit_code,
            )
        else:
            self.logger.error("Run %s %s: %s", summary.run_id, summary.status, summary.error)

    def write_json(self, summary: Summary):
        os.makedirs(os.path.dirname(self.summary_file) or ".", exist_ok=True)

        fd, temp_path = tempfile.mkstemp(
            prefix="run-summary-",
            suffix=".json",
            dir=os.path.dirname(os.path.abspath(self.summary_file)),
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(summary.to_dict(), file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.summary_file)
        except OSError as exc:
            self.logger.warning("Could not write summary file '%s': %s", self.summary_file, exc)
            try:
                os.remove(temp_path)
            except OSError:
                pass

    @staticmethod
    def _style(status: str) -> str:
        if status in (RunStatus.SUCCEEDED.value, StageStatus.SUCCEEDED.value):
            return "green"
        if status in (StageStatus.SKIPPED.value, RunStatus.CANCELLED.value):
            return "yellow"
        return "red"
