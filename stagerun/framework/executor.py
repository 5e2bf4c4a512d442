"""Step execution: external commands, built-in actions and report/artifact steps.

Every string that leaves this module (log files, step messages, stored
artifacts) passes through the frame's `Redactor` first.
"""

from __future__ import annotations

import os
import signal
import subprocess
import time
from collections import ChainMap
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Protocol

from stagekit.engine.nodes import (
    ActionStep,
    ArchiveStep,
    EchoStep,
    ScanReportStep,
    ShellStep,
    Step,
    TestReportStep,
    effective_step_name,
    step_kind,
)
from stagekit.engine.results import StepResult, utc_now_iso8601
from stagerun.foundation.errors import (
    ReportParseError,
    SecretLeakError,
    StageRunError,
    StepExecutionFailure,
    StepTimeout,
)
from stagerun.foundation.logging_utils import write_step_log
from stagerun.framework.artifacts import ArtifactRecord, ArtifactStore
from stagerun.framework.cancellation import CancelToken
from stagerun.framework.context import RunContext, interpolate
from stagerun.framework.credentials import Redactor
from stagerun.framework.reports import ingest_scan_report, ingest_test_report

_MESSAGE_LIMIT = 200


@dataclass(frozen=True)
class CommandOutcome:
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False


class CommandRunner(Protocol):
    def run(
        self,
        command: str | tuple[str, ...],
        *,
        env: Mapping[str, str],
        cwd: str,
        timeout: float | None,
        cancel: CancelToken | None,
    ) -> CommandOutcome:
        ...


class SubprocessCommandRunner:
    """Runs commands with `subprocess.Popen` in their own process group.

    On timeout or cancellation the whole group is killed so that shells do not
    leave orphaned children behind.
    """

    def __init__(self, *, poll_interval: float = 0.05, kill_grace: float = 5.0) -> None:
        self._poll_interval = poll_interval
        self._kill_grace = kill_grace

    def _kill(self, proc: subprocess.Popen) -> None:
        if os.name == "posix":
            try:
                os.killpg(proc.pid, signal.SIGKILL)
                return
            except (ProcessLookupError, PermissionError):
                pass
        try:
            proc.kill()
        except ProcessLookupError:
            pass

    def run(
        self,
        command: str | tuple[str, ...],
        *,
        env: Mapping[str, str],
        cwd: str,
        timeout: float | None,
        cancel: CancelToken | None,
    ) -> CommandOutcome:
        try:
            proc = subprocess.Popen(
                command if isinstance(command, str) else list(command),
                shell=isinstance(command, str),
                cwd=cwd,
                env=dict(env),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=os.name == "posix",
            )
        except FileNotFoundError as exc:
            return CommandOutcome(exit_code=127, stderr=f"{exc}\n")

        deadline = None if timeout is None else time.monotonic() + timeout
        timed_out = False
        cancelled = False
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self._poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel is not None and cancel.cancelled:
                cancelled = True
            elif deadline is not None and time.monotonic() >= deadline:
                timed_out = True
            else:
                continue
            self._kill(proc)
            try:
                stdout, stderr = proc.communicate(timeout=self._kill_grace)
            except subprocess.TimeoutExpired:
                # a grandchild outside the group still holds the pipes
                proc.kill()
                stdout, stderr = "", ""
            break

        return CommandOutcome(
            exit_code=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            timed_out=timed_out,
            cancelled=cancelled,
        )


class LogSink:
    """Captured step output under `<root>/<run_id>/<stage path>/<label>.log`."""

    def __init__(self, root: str) -> None:
        self._root = os.path.abspath(root)

    @property
    def root(self) -> str:
        return self._root

    def path_for(self, run_id: str, stage_path: str, label: str) -> str:
        segments = [seg if seg not in (".", "..") else f"_{seg}" for seg in stage_path.split("/")]
        return os.path.join(self._root, run_id, *segments, f"{label}.log")

    def write(self, run_id: str, stage_path: str, label: str, text: str) -> str:
        path = self.path_for(run_id, stage_path, label)
        write_step_log(path, text)
        return path

    def read(self, run_id: str, stage_path: str, label: str) -> str:
        with open(self.path_for(run_id, stage_path, label), "r", encoding="utf-8") as handle:
            return handle.read()


@dataclass
class StepFrame:
    """Stage-local execution state; never shared across sibling stages."""

    ctx: RunContext
    stage_path: str
    env: ChainMap
    redactor: Redactor
    cancel: CancelToken
    deadline: float | None = None

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


@dataclass(frozen=True)
class StepExecution:
    result: StepResult
    artifacts: tuple[ArtifactRecord, ...] = ()
    unstable: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


def _short(text: str | None) -> str | None:
    if not text:
        return None
    lines = [line for line in text.strip().splitlines() if line.strip()]
    if not lines:
        return None
    last = lines[-1].strip()
    return last if len(last) <= _MESSAGE_LIMIT else last[: _MESSAGE_LIMIT - 3] + "..."


class StepExecutor:
    def __init__(
        self,
        *,
        log_sink: LogSink,
        artifact_store: ArtifactStore,
        command_runner: CommandRunner | None = None,
    ) -> None:
        self._log_sink = log_sink
        self._artifacts = artifact_store
        self._commands = command_runner or SubprocessCommandRunner()

    @property
    def log_sink(self) -> LogSink:
        return self._log_sink

    @property
    def artifact_store(self) -> ArtifactStore:
        return self._artifacts

    def execute(
        self, step: Step, frame: StepFrame, *, index: int, label: str | None = None, post: bool = False
    ) -> StepExecution:
        name = effective_step_name(step, index=index)
        kind = step_kind(step)
        label = label or f"{index + 1:02d}"
        started_at = utc_now_iso8601()
        start = time.monotonic()

        def finish(
            status: str,
            *,
            reason: str | None = None,
            exit_code: int | None = None,
            message: str | None = None,
            log_path: str | None = None,
            artifacts: tuple[ArtifactRecord, ...] = (),
            unstable: str | None = None,
            details: dict[str, Any] | None = None,
        ) -> StepExecution:
            message = frame.redactor.redact(message)
            unstable = frame.redactor.redact(unstable)
            result = StepResult(
                name=name,
                index=index,
                kind=kind,
                status=status,  # type: ignore[arg-type]
                reason=reason,
                exit_code=exit_code,
                duration=time.monotonic() - start,
                log_path=log_path,
                started_at=started_at,
                message=message,
                post=post,
            )
            try:
                self._guard_result(result, frame.redactor)
            except SecretLeakError as exc:
                frame.ctx.logger.error("%s (step %s/%s)", exc, frame.stage_path, name)
                result = StepResult(
                    name=name,
                    index=index,
                    kind=kind,
                    status="failed",
                    reason=exc.reason,
                    duration=result.duration,
                    started_at=started_at,
                    post=post,
                )
                return StepExecution(result=result)
            return StepExecution(
                result=result, artifacts=artifacts, unstable=unstable, details=details or {}
            )

        if frame.cancel.cancelled:
            return finish("failed", reason=frame.cancel.reason or "cancelled", message="Not started")

        try:
            if isinstance(step, ShellStep):
                return self._run_shell(step, frame, label=label, finish=finish)
            if isinstance(step, EchoStep):
                text = interpolate(step.message, frame.env)
                log_path = self._log_sink.write(
                    frame.ctx.run_id, frame.stage_path, label, (frame.redactor.redact(text) or "") + "\n"
                )
                return finish("succeeded", message=_short(text), log_path=log_path)
            if isinstance(step, ActionStep):
                outcome = step.fn(MappingProxyType(dict(frame.env)))
                message = None if outcome is None else _short(str(outcome))
                return finish("succeeded", message=message)
            if isinstance(step, ArchiveStep):
                records = self._artifacts.archive(
                    interpolate(step.pattern, frame.env),
                    frame.ctx.run_id,
                    frame.stage_path,
                    workspace=frame.ctx.workspace,
                    fingerprint=step.fingerprint,
                    allow_empty=step.allow_empty,
                    retention_class=step.retention_class,
                    redactor=frame.redactor,
                )
                message = f"Archived {len(records)} file(s)" if records else "No files matched"
                return finish("succeeded", message=message, artifacts=tuple(records))
            if isinstance(step, TestReportStep):
                return self._ingest_tests(step, frame, finish=finish)
            if isinstance(step, ScanReportStep):
                return self._ingest_scan(step, frame, finish=finish)
            raise TypeError(f"Unsupported step type: {type(step).__name__}")
        except StageRunError as exc:
            return finish("failed", reason=exc.reason, message=str(exc))
        except Exception as exc:
            frame.ctx.logger.error(
                "Step %s/%s raised %s: %s",
                frame.stage_path,
                name,
                type(exc).__name__,
                frame.redactor.redact(str(exc)),
            )
            return finish("failed", reason="error", message=f"{type(exc).__name__}: {exc}")

    def _resolve(self, frame: StepFrame, raw: str) -> str:
        path = interpolate(raw, frame.env)
        if not os.path.isabs(path):
            path = os.path.join(frame.ctx.workspace, path)
        return path

    def _run_shell(self, step: ShellStep, frame: StepFrame, *, label: str, finish) -> StepExecution:
        step_env = {key: interpolate(value, frame.env) for key, value in step.env.items()}
        env = dict(frame.env.new_child(step_env))

        timeout = step.timeout
        remaining = frame.remaining()
        stage_bound = False
        if remaining is not None and (timeout is None or remaining < timeout):
            timeout = remaining
            stage_bound = True

        outcome = self._commands.run(
            step.command, env=env, cwd=frame.ctx.workspace, timeout=timeout, cancel=frame.cancel
        )
        text = outcome.stdout
        if outcome.stderr:
            if text and not text.endswith("\n"):
                text += "\n"
            text += outcome.stderr
        redacted = frame.redactor.redact(text) or ""
        log_path = self._log_sink.write(frame.ctx.run_id, frame.stage_path, label, redacted)

        if outcome.cancelled:
            reason = frame.cancel.reason or "cancelled"
            return finish(
                "failed",
                reason=reason,
                exit_code=outcome.exit_code,
                message=f"Command killed ({reason})",
                log_path=log_path,
            )
        if outcome.timed_out:
            scope = "stage" if stage_bound else "step"
            if timeout is None:
                message = "Command timed out"
            else:
                message = f"Command exceeded {scope} timeout of {timeout:g}s"
            return finish(
                "failed",
                reason=StepTimeout.reason,
                exit_code=outcome.exit_code,
                message=message,
                log_path=log_path,
            )
        if outcome.exit_code != 0:
            detail = _short(redacted)
            message = f"Exit code {outcome.exit_code}" + (f": {detail}" if detail else "")
            return finish(
                "failed",
                reason=StepExecutionFailure.reason,
                exit_code=outcome.exit_code,
                message=message,
                log_path=log_path,
            )
        return finish("succeeded", exit_code=0, message=_short(redacted), log_path=log_path)

    def _ingest_tests(self, step: TestReportStep, frame: StepFrame, *, finish) -> StepExecution:
        path = self._resolve(frame, step.path)
        if not os.path.exists(path) and step.allow_missing:
            return finish("succeeded", message=f"No test report at {step.path}")
        summary = ingest_test_report(path)
        message = (
            f"{summary.suite}: {summary.tests} test(s), {summary.failures} failure(s), "
            f"{summary.errors} error(s)"
        )
        unstable = None
        if summary.failed_count > 0:
            unstable = f"{summary.failed_count} failing test(s) in {summary.suite}"
        return finish("succeeded", message=message, unstable=unstable, details=summary.to_dict())

    def _ingest_scan(self, step: ScanReportStep, frame: StepFrame, *, finish) -> StepExecution:
        path = self._resolve(frame, step.path)
        if not os.path.exists(path):
            raise ReportParseError(f"Scan report not found: {step.path}")
        summary = ingest_scan_report(path)
        flagged = summary.at_or_above(step.unstable_at)
        message = f"{summary.tool}: {len(summary.findings)} finding(s)"
        unstable = None
        if flagged:
            unstable = f"{len(flagged)} {summary.tool} finding(s) at or above {step.unstable_at}"
        return finish("succeeded", message=message, unstable=unstable, details=summary.to_dict())

    def _guard_result(self, result: StepResult, redactor: Redactor) -> None:
        if not redactor.active:
            return
        for value in (result.message, result.reason, result.name):
            if value and redactor.contains_secret(value):
                raise SecretLeakError(f"Secret value reached step result {result.name}")
