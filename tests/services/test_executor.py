import sys
import threading

import pytest

from deploypipe.errors import ConfigError, ProvisionError
from deploypipe.models import ErrorKind, PipelineConfig, RunStatus, Stage, StageStatus
from deploypipe.services.command_runner import CommandRunner
from deploypipe.services.executor import PipelineExecutor, select_stages
from deploypipe.services.provisioner import LocalProvisioner


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None

    def error(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class CountingProvisioner(LocalProvisioner):
    def __init__(self, workspace, environments=None):
        super().__init__(DummyLogger(), workspace, environments=environments)
        self.acquired = []
        self.released = []

    def acquire(self, environment_name):
        handle = super().acquire(environment_name)
        self.acquired.append(handle)
        return handle

    def release(self, handle):
        self.released.append(handle)
        super().release(handle)


SCENARIO_CONFIG = {
    "image_repository": "acme/app",
    "image_tag": "42",
    "app_repo_url": "https://x/app.git",
    "chart_repo_url": "https://x/chart.git",
}


def python_stage(name, code, required_env=(), environment="local", **kwargs):
    return Stage(
        name=name,
        command=(sys.executable, "-c", code),
        required_env=frozenset(required_env),
        environment=environment,
        **kwargs,
    )


def scenario_stages(build_code="print('built')"):
    return [
        python_stage("build-image", build_code, {"image_repository", "image_tag", "app_repo_url"}),
        python_stage("fetch-chart", "print('fetched')", {"chart_repo_url"}),
        python_stage("deploy", "print('deployed')", {"image_repository", "image_tag"}),
        python_stage("verify-rollout", "print('verified')"),
    ]


def build_executor(tmp_path, **kwargs):
    provisioner = kwargs.pop("provisioner", None) or CountingProvisioner(str(tmp_path))
    executor = PipelineExecutor(
        logger=DummyLogger(),
        console=DummyConsole(),
        provisioner=provisioner,
        command_runner=CommandRunner(logger=DummyLogger()),
        **kwargs,
    )
    return executor, provisioner


def test_all_stages_succeed_in_declared_order(tmp_path):
    executor, provisioner = build_executor(tmp_path)

    run = executor.run(scenario_stages(), PipelineConfig(SCENARIO_CONFIG))

    assert run.status == RunStatus.SUCCEEDED
    assert [result.stage for result in run.results] == [
        "build-image",
        "fetch-chart",
        "deploy",
        "verify-rollout",
    ]
    assert all(result.status == StageStatus.SUCCEEDED for result in run.results)
    assert run.results[0].output.strip() == "built"
    assert run.results[0].exit_code == 0
    assert len(provisioner.acquired) == 4
    assert len(provisioner.released) == 4


def test_failed_build_skips_remaining_stages(tmp_path):
    executor, provisioner = build_executor(tmp_path)
    stages = scenario_stages(build_code="import sys; print('kaniko error'); sys.exit(1)")

    run = executor.run(stages, PipelineConfig(SCENARIO_CONFIG))

    assert run.status == RunStatus.FAILED
    assert run.results[0].status == StageStatus.FAILED
    assert run.results[0].exit_code == 1
    assert run.results[0].error_kind == ErrorKind.NON_ZERO_EXIT
    assert "kaniko error" in run.results[0].output
    assert [result.status for result in run.results[1:]] == [StageStatus.SKIPPED] * 3
    assert len(provisioner.acquired) == 1
    assert len(provisioner.released) == 1


def test_missing_key_fails_before_any_stage(tmp_path):
    executor, provisioner = build_executor(tmp_path)
    config = dict(SCENARIO_CONFIG)
    del config["chart_repo_url"]

    run = executor.run(scenario_stages(), PipelineConfig(config))

    assert isinstance(run.error, ConfigError)
    assert run.error.kind == ErrorKind.MISSING_KEY
    assert run.error.key == "chart_repo_url"
    assert run.results == []
    assert run.status == RunStatus.FAILED
    assert provisioner.acquired == []


def test_timeout_marks_stage_failed_and_releases_once(tmp_path):
    executor, provisioner = build_executor(tmp_path)
    stages = [
        python_stage("slow", "import time; time.sleep(5)", timeout_seconds=0.2),
        python_stage("after", "print('never')"),
    ]

    run = executor.run(stages, PipelineConfig({}))

    assert run.results[0].status == StageStatus.FAILED
    assert run.results[0].error_kind == ErrorKind.TIMEOUT
    assert "timed out" in run.results[0].message
    assert run.results[1].status == StageStatus.SKIPPED
    assert len(provisioner.released) == 1
    assert provisioner.released[0] is provisioner.acquired[0]
    assert provisioner.active == {}


def test_default_timeout_applies_when_stage_has_none(tmp_path):
    executor, _ = build_executor(tmp_path, default_timeout=0.2)

    run = executor.run([python_stage("slow", "import time; time.sleep(5)")], PipelineConfig({}))

    assert run.results[0].error_kind == ErrorKind.TIMEOUT


def test_unavailable_environment_fails_stage_and_records_provision_error(tmp_path):
    provisioner = CountingProvisioner(str(tmp_path), environments=["local"])
    executor, _ = build_executor(tmp_path, provisioner=provisioner)
    stages = [
        python_stage("build-image", "print('built')", environment="kaniko"),
        python_stage("deploy", "print('deployed')"),
    ]

    run = executor.run(stages, PipelineConfig({}))

    assert isinstance(run.error, ProvisionError)
    assert run.results[0].status == StageStatus.FAILED
    assert run.results[0].error_kind == ErrorKind.UNAVAILABLE
    assert run.results[1].status == StageStatus.SKIPPED
    assert provisioner.released == []


def test_missing_executable_is_reported_as_stage_failure(tmp_path):
    executor, provisioner = build_executor(tmp_path)
    stage = Stage(name="helm", command=("deploypipe-no-such-tool-xyz",))

    run = executor.run([stage], PipelineConfig({}))

    assert run.results[0].status == StageStatus.FAILED
    assert run.results[0].exit_code == 127
    assert len(provisioner.released) == 1


def test_commands_receive_config_subset_and_workspace(tmp_path):
    executor, _ = build_executor(tmp_path)
    stage = Stage(
        name="echo",
        command=(sys.executable, "-c", "import sys; print(sys.argv[1:])", "{image_tag}", "{workspace}"),
        required_env=frozenset({"image_tag"}),
    )

    run = executor.run([stage], PipelineConfig(SCENARIO_CONFIG))

    assert run.results[0].status == StageStatus.SUCCEEDED
    assert repr(["42", str(tmp_path)]) in run.results[0].output


def test_template_referencing_undeclared_key_fails_stage(tmp_path):
    executor, _ = build_executor(tmp_path)
    stage = Stage(name="echo", command=("echo", "{image_tag}"))

    run = executor.run([stage], PipelineConfig(SCENARIO_CONFIG))

    assert run.results[0].status == StageStatus.FAILED
    assert run.results[0].error_kind == ErrorKind.INVALID_VALUE


def test_cancellation_takes_effect_at_next_stage_boundary(tmp_path):
    executor, provisioner = build_executor(tmp_path)
    cancel_event = threading.Event()

    def first_command(_params):
        cancel_event.set()
        return [sys.executable, "-c", "print('first')"]

    stages = [
        Stage(name="first", command=first_command),
        python_stage("second", "print('second')"),
    ]

    run = executor.run(stages, PipelineConfig({}), cancel_event=cancel_event)

    assert run.cancelled is True
    assert run.status == RunStatus.CANCELLED
    assert run.results[0].status == StageStatus.SUCCEEDED
    assert run.results[1].status == StageStatus.SKIPPED
    assert len(provisioner.released) == 1


def test_image_verifier_blocks_deploy_when_image_missing(tmp_path):
    marker = tmp_path / "deployed.txt"
    checked = []

    def verifier(repository, tag):
        checked.append((repository, tag))
        return False

    executor, provisioner = build_executor(tmp_path, image_verifier=verifier)
    stage = python_stage(
        "deploy",
        f"open({str(marker)!r}, 'w').write('x')",
        requires_image=True,
    )

    run = executor.run([stage], PipelineConfig(SCENARIO_CONFIG))

    assert checked == [("acme/app", "42")]
    assert run.results[0].error_kind == ErrorKind.IMAGE_NOT_FOUND
    assert not marker.exists()
    assert len(provisioner.released) == 1


def test_runs_are_independent(tmp_path):
    executor, _ = build_executor(tmp_path)
    stages = scenario_stages()
    config = PipelineConfig(SCENARIO_CONFIG)

    first = executor.run(stages, config)
    second = executor.run(stages, config)

    assert first.run_id != second.run_id
    assert first.results is not second.results
    assert [r.status for r in first.results] == [r.status for r in second.results]


def test_duplicate_stage_names_are_rejected(tmp_path):
    executor, _ = build_executor(tmp_path)
    stages = [python_stage("same", "pass"), python_stage("same", "pass")]

    run = executor.run(stages, PipelineConfig({}))

    assert run.error.kind == ErrorKind.INVALID_VALUE
    assert run.results == []


def test_select_stages_narrows_to_named_stage():
    stages = scenario_stages()

    assert [stage.name for stage in select_stages(stages, "deploy")] == ["deploy"]
    assert select_stages(stages, None) == stages

    with pytest.raises(ConfigError, match="Unknown stage"):
        select_stages(stages, "nope")


def test_unrenderable_template_fails_stage_as_invalid_value(tmp_path):
    executor, provisioner = build_executor(tmp_path)
    stages = [Stage(name="odd", command=("echo", "{")), python_stage("after", "pass")]

    run = executor.run(stages, PipelineConfig({}))

    assert run.results[0].status == StageStatus.FAILED
    assert run.results[0].error_kind == ErrorKind.INVALID_VALUE
    assert run.results[1].status == StageStatus.SKIPPED
    assert len(provisioner.released) == 1


def test_unexpected_exception_is_recorded_on_the_run(tmp_path):
    def broken_verifier(_repository, _tag):
        raise ValueError("bad registry answer")

    executor, provisioner = build_executor(tmp_path, image_verifier=broken_verifier)
    stages = [
        python_stage("deploy", "print('deployed')", requires_image=True),
        python_stage("verify-rollout", "print('verified')"),
    ]

    run = executor.run(stages, PipelineConfig(SCENARIO_CONFIG))

    assert run.status == RunStatus.FAILED
    assert run.results[0].status == StageStatus.FAILED
    assert run.results[0].error_kind == ErrorKind.INTERNAL
    assert "bad registry answer" in run.results[0].message
    assert run.results[1].status == StageStatus.SKIPPED
    assert provisioner.released == provisioner.acquired


def test_interrupt_during_stage_cancels_run_and_releases_environment(tmp_path):
    class InterruptingRunner:
        def run(self, *_args, **_kwargs):
            raise KeyboardInterrupt

    provisioner = CountingProvisioner(str(tmp_path))
    executor = PipelineExecutor(
        logger=DummyLogger(),
        console=DummyConsole(),
        provisioner=provisioner,
        command_runner=InterruptingRunner(),
    )
    stages = [python_stage("build-image", "pass"), python_stage("deploy", "pass")]

    run = executor.run(stages, PipelineConfig({}))

    assert run.cancelled is True
    assert run.status == RunStatus.FAILED
    assert run.results[0].status == StageStatus.FAILED
    assert run.results[0].error_kind == ErrorKind.CANCELLED
    assert run.results[1].status == StageStatus.SKIPPED
    assert len(provisioner.released) == 1
    assert provisioner.active == {}
