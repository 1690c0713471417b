import sys

import pytest

from deploypipe.errors import StageError
from deploypipe.models import ErrorKind
from deploypipe.services.command_runner import CommandRunner


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


def test_command_runner_raises_with_stderr():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(StageError, match="boom") as exc_info:
        runner.run(
            [sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(3)"],
            check=True,
            capture_output=True,
        )

    assert exc_info.value.exit_code == 3
    assert exc_info.value.kind == ErrorKind.NON_ZERO_EXIT


def test_command_runner_returns_when_check_disabled():
    runner = CommandRunner(logger=DummyLogger())

    result = runner.run(
        [sys.executable, "-c", "import sys; sys.exit(1)"],
        check=False,
        capture_output=True,
    )

    assert result.returncode == 1


def test_command_runner_merges_stderr_into_stdout():
    runner = CommandRunner(logger=DummyLogger())

    result = runner.run(
        [
            sys.executable,
            "-c",
            "import sys; print('out'); sys.stdout.flush(); sys.stderr.write('err\\n')",
        ],
        check=False,
        capture_output=True,
        merge_stderr=True,
    )

    assert "out" in result.stdout
    assert "err" in result.stdout


def test_command_runner_retries_before_success(tmp_path, monkeypatch):
    runner = CommandRunner(logger=DummyLogger())
    monkeypatch.chdir(tmp_path)

    command = [
        sys.executable,
        "-c",
        (
            "from pathlib import Path;"
            "p=Path('retry-counter.txt');"
            "n=int(p.read_text()) if p.exists() else 0;"
            "p.write_text(str(n+1));"
            "import sys; sys.exit(1 if n == 0 else 0)"
        ),
    ]

    result = runner.run(
        command,
        check=True,
        capture_output=True,
        retry_count=1,
        retry_backoff_seconds=0.0,
    )

    assert result.returncode == 0


def test_command_runner_timeout_raises_timeout_error():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(StageError, match="timed out") as exc_info:
        runner.run(
            [sys.executable, "-c", "import time; time.sleep(2)"],
            check=True,
            capture_output=True,
            timeout=0.1,
        )

    assert exc_info.value.kind == ErrorKind.TIMEOUT


def test_command_runner_reports_missing_executable():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(StageError, match="Required command not found") as exc_info:
        runner.run(["deploypipe-no-such-tool-xyz"])

    assert exc_info.value.exit_code == 127
