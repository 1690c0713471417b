"""Subprocess execution service for deploypipe."""

import subprocess
import time
from typing import Dict, Iterable, List, Optional

from deploypipe.errors import PipelineError, StageError
from deploypipe.errors_catalog import actionable_error
from deploypipe.models import ErrorKind

COMMAND_NOT_FOUND_EXIT_CODE = 127


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class CommandRunner:
    """Runs external commands with consistent error handling."""

    def __init__(self, logger, default_timeout: Optional[float] = None):
        self.logger = logger
        self.default_timeout = default_timeout

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        merge_stderr: bool = False,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        retry_count: int = 0,
        retry_backoff_seconds: float = 0.0,
        retry_on_returncodes: Optional[Iterable[int]] = None,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout
        max_attempts = max(1, retry_count + 1)
        retry_codes = set(retry_on_returncodes or [])

        if capture_output and merge_stderr:
            streams = {"stdout": subprocess.PIPE, "stderr": subprocess.STDOUT}
        else:
            streams = {"capture_output": capture_output}

        for attempt in range(1, max_attempts + 1):
            try:
                result = subprocess.run(
                    cmd,
                    text=True,
                    timeout=effective_timeout,
                    cwd=cwd,
                    env=env,
                    **streams,
                )
            except FileNotFoundError as exc:
                raise StageError(
                    actionable_error("tool_missing", tool=cmd[0]),
                    exit_code=COMMAND_NOT_FOUND_EXIT_CODE,
                ) from exc
            except subprocess.TimeoutExpired as exc:
                if attempt < max_attempts:
                    self.logger.warning(
                        "Command timed out on attempt %s/%s. Retrying in %.1fs: %s",
                        attempt,
                        max_attempts,
                        retry_backoff_seconds,
                        cmd_str,
                    )
                    time.sleep(retry_backoff_seconds)
                    continue
                raise StageError(
                    f"Command timed out after {effective_timeout}s: {cmd_str}",
                    kind=ErrorKind.TIMEOUT,
                    output=_as_text(exc.output),
                ) from exc
            except OSError as exc:
                raise PipelineError(f"Failed to execute command: {cmd_str}. {exc}") from exc

            if capture_output and result.stdout:
                self.logger.debug("Command output: %s", result.stdout.strip())

            if result.returncode == 0:
                return result

            stderr = (result.stderr or "").strip() if capture_output else ""
            message = f"Command failed ({result.returncode}): {cmd_str}"
            if stderr:
                message = f"{message}\n{stderr}"

            can_retry = attempt < max_attempts and (
                not retry_codes or result.returncode in retry_codes
            )
            if can_retry:
                self.logger.warning(
                    "Command failed on attempt %s/%s and will be retried in %.1fs.\n%s",
                    attempt,
                    max_attempts,
                    retry_backoff_seconds,
                    message,
                )
                time.sleep(retry_backoff_seconds)
                continue

            if check:
                raise StageError(
                    message,
                    exit_code=result.returncode,
                    output=_as_text(result.stdout),
                )

            self.logger.debug(message)
            return result

        raise PipelineError(f"Command failed after retries: {cmd_str}")
