import logging
import os
import sys
import threading
from collections import ChainMap

import pytest

from stagekit.engine.nodes import ActionStep, EchoStep, ScanReportStep, ShellStep, TestReportStep
from stagerun.framework.artifacts import ArtifactStore
from stagerun.framework.cancellation import CancelToken
from stagerun.framework.context import RunContext
from stagerun.framework.credentials import Redactor
from stagerun.framework.executor import (
    CommandOutcome,
    LogSink,
    StepExecutor,
    StepFrame,
    SubprocessCommandRunner,
)

posix_only = pytest.mark.skipif(os.name != "posix", reason="uses /bin/sh")


def _frame(tmp_path, *, env=None, redactor=None, cancel=None, deadline=None):
    workspace = tmp_path / "ws"
    workspace.mkdir(exist_ok=True)
    ctx = RunContext(
        run_id="r1",
        build_number=1,
        workspace=str(workspace),
        logger=logging.getLogger("test.executor"),
        created_at="2024-01-01T00:00:00Z",
    )
    return StepFrame(
        ctx=ctx,
        stage_path="pipeline/Build",
        env=ChainMap(dict(env or {}), {"PATH": os.environ.get("PATH", "")}),
        redactor=redactor or Redactor(),
        cancel=cancel or CancelToken(),
        deadline=deadline,
    )


def _executor(tmp_path):
    return StepExecutor(
        log_sink=LogSink(str(tmp_path / "logs")),
        artifact_store=ArtifactStore(str(tmp_path / "artifacts")),
        command_runner=SubprocessCommandRunner(poll_interval=0.01),
    )


@posix_only
def test_shell_step_captures_output_and_env(tmp_path):
    executor = _executor(tmp_path)
    step = ShellStep("greet", 'echo "hello $WHO"', env={"WHO": "${NAME}"})

    execution = executor.execute(step, _frame(tmp_path, env={"NAME": "world"}), index=0)

    result = execution.result
    assert result.status == "succeeded"
    assert result.exit_code == 0
    assert result.message == "hello world"
    assert result.log_path == os.path.join(str(tmp_path / "logs"), "r1", "pipeline", "Build", "01.log")
    assert executor.log_sink.read("r1", "pipeline/Build", "01") == "hello world\n"


@posix_only
def test_non_zero_exit_fails_with_exit_code_reason(tmp_path):
    step = ShellStep(None, "echo broken >&2; exit 3")

    result = _executor(tmp_path).execute(step, _frame(tmp_path), index=1).result

    assert result.status == "failed"
    assert result.reason == "exit-code"
    assert result.exit_code == 3
    assert result.name == "step_02"
    assert result.message == "Exit code 3: broken"


@posix_only
def test_step_timeout_kills_the_process(tmp_path):
    step = ShellStep(None, "sleep 30", timeout=0.2)

    result = _executor(tmp_path).execute(step, _frame(tmp_path), index=0).result

    assert result.status == "failed"
    assert result.reason == "timeout"
    assert result.duration < 10


@posix_only
def test_cancellation_kills_the_process(tmp_path):
    token = CancelToken()
    timer = threading.Timer(0.2, token.cancel, args=("run-timeout",))
    timer.start()
    try:
        result = _executor(tmp_path).execute(
            ShellStep(None, "sleep 30"), _frame(tmp_path, cancel=token), index=0
        ).result
    finally:
        timer.cancel()

    assert result.status == "failed"
    assert result.reason == "run-timeout"
    assert result.message == "Command killed (run-timeout)"
    assert result.duration < 10


def test_cancelled_frame_does_not_start_the_command(tmp_path):
    token = CancelToken()
    token.cancel()

    result = _executor(tmp_path).execute(
        ShellStep(None, "sleep 30"), _frame(tmp_path, cancel=token), index=0
    ).result

    assert result.status == "failed"
    assert result.reason == "cancelled"
    assert result.message == "Not started"


def test_argv_command_runs_without_shell(tmp_path):
    step = ShellStep(None, (sys.executable, "-c", "print('argv ok')"))

    result = _executor(tmp_path).execute(step, _frame(tmp_path), index=0).result

    assert result.status == "succeeded"
    assert result.message == "argv ok"


def test_missing_executable_is_exit_127(tmp_path):
    step = ShellStep(None, ("definitely-not-a-real-binary-xyz",))

    result = _executor(tmp_path).execute(step, _frame(tmp_path), index=0).result

    assert result.status == "failed"
    assert result.exit_code == 127


def test_echo_interpolates_and_redacts(tmp_path):
    frame = _frame(tmp_path, env={"TOKEN": "hunter2"}, redactor=Redactor(("hunter2",)))

    execution = _executor(tmp_path).execute(EchoStep("say", "token is ${TOKEN}"), frame, index=0)

    assert execution.result.status == "succeeded"
    assert execution.result.message == "token is ****"
    with open(execution.result.log_path, "r", encoding="utf-8") as handle:
        assert handle.read() == "token is ****\n"


def test_action_exception_becomes_failed_step(tmp_path):
    def broken(env):
        raise RuntimeError("bad action")

    result = _executor(tmp_path).execute(ActionStep("act", broken), _frame(tmp_path), index=0).result

    assert result.status == "failed"
    assert result.reason == "error"
    assert result.message == "RuntimeError: bad action"


def test_action_environment_is_read_only(tmp_path):
    seen = {}

    def grab(env):
        seen["NAME"] = env.get("NAME")
        with pytest.raises(TypeError):
            env["NAME"] = "changed"

    result = _executor(tmp_path).execute(
        ActionStep("grab", grab), _frame(tmp_path, env={"NAME": "x"}), index=0
    ).result

    assert result.status == "succeeded"
    assert seen == {"NAME": "x"}


def test_secret_in_step_result_fails_the_step(tmp_path):
    frame = _frame(tmp_path, redactor=Redactor(("hunter2",)))

    def echo_secret(env):
        return None

    step = ActionStep("hunter2", echo_secret)
    result = _executor(tmp_path).execute(step, frame, index=0).result

    assert result.status == "failed"
    assert result.reason == "secret-leak"


def test_test_report_with_failures_is_unstable(tmp_path):
    frame = _frame(tmp_path)
    report = os.path.join(frame.ctx.workspace, "junit.xml")
    with open(report, "w", encoding="utf-8") as handle:
        handle.write(
            '<testsuite name="unit" tests="2" failures="1">'
            '<testcase classname="a" name="ok"/>'
            '<testcase classname="a" name="bad"><failure message="boom"/></testcase>'
            "</testsuite>"
        )

    execution = _executor(tmp_path).execute(TestReportStep(None, "junit.xml"), frame, index=0)

    assert execution.result.status == "succeeded"
    assert execution.unstable == "1 failing test(s) in unit"
    assert execution.details["tests"] == 2


def test_missing_test_report_fails_unless_allowed(tmp_path):
    executor = _executor(tmp_path)

    missing = executor.execute(TestReportStep(None, "nope.xml"), _frame(tmp_path), index=0).result
    assert missing.status == "failed"
    assert missing.reason == "report-error"

    allowed = executor.execute(
        TestReportStep(None, "nope.xml", allow_missing=True), _frame(tmp_path), index=0
    )
    assert allowed.result.status == "succeeded"
    assert allowed.unstable is None


def test_scan_report_threshold(tmp_path):
    frame = _frame(tmp_path)
    with open(os.path.join(frame.ctx.workspace, "scan.json"), "w", encoding="utf-8") as handle:
        handle.write(
            '{"tool": "scanner", "findings": ['
            '{"rule_id": "R1", "severity": "medium"}, {"rule_id": "R2", "severity": "critical"}]}'
        )
    executor = _executor(tmp_path)

    flagged = executor.execute(ScanReportStep(None, "scan.json"), frame, index=0)
    assert flagged.result.status == "succeeded"
    assert flagged.unstable == "1 scanner finding(s) at or above high"

    strict = executor.execute(ScanReportStep(None, "scan.json", unstable_at="low"), frame, index=0)
    assert strict.unstable == "2 scanner finding(s) at or above low"

    lenient = executor.execute(ScanReportStep(None, "scan.json", unstable_at="critical"), frame, index=0)
    assert lenient.unstable == "1 scanner finding(s) at or above critical"


def test_runner_timeout_without_a_limit_reports_a_plain_message(tmp_path):
    class SelfTimingRunner:
        def run(self, command, *, env, cwd, timeout, cancel):
            return CommandOutcome(exit_code=-9, timed_out=True)

    executor = StepExecutor(
        log_sink=LogSink(str(tmp_path / "logs")),
        artifact_store=ArtifactStore(str(tmp_path / "artifacts")),
        command_runner=SelfTimingRunner(),
    )

    result = executor.execute(ShellStep(None, "watchdog"), _frame(tmp_path), index=0).result

    assert result.status == "failed"
    assert result.reason == "timeout"
    assert result.exit_code == -9
    assert result.message == "Command timed out"
