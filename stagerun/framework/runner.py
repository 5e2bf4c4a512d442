"""Scheduler/runner: walks the stage tree and produces a sealed `RunLedger`.

Per stage the order is fixed: guard, gate, slot, credentials, steps, children,
status, post-actions, release. Stage-local environment and secrets live in the
frame handed down the tree; the shared `RunContext` is never mutated.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import threading
import time
from collections import ChainMap
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable

from stagekit.engine.conditions import describe_guard, evaluate_guard
from stagekit.engine.graph import PipelineGraph, join_path
from stagekit.engine.nodes import PipelineDefinition, StageSpec, Step, effective_step_name, step_kind
from stagekit.engine.recorder import DefaultRunRecorder, RunRecorder, validate_recorder
from stagekit.engine.results import (
    RunStatus,
    StageResult,
    StepResult,
    never_run,
    status_severity,
    utc_now_iso8601,
    worst_status,
)
from stagerun.foundation.errors import (
    Cancelled,
    CredentialResolutionError,
    RunTimeout,
    StageRunError,
)
from stagerun.framework.artifacts import ArtifactRecord
from stagerun.framework.cancellation import CancelToken
from stagerun.framework.cleanup import CleanupReport, WorkspaceCleaner
from stagerun.framework.config import DEFAULT_SLOT_LABEL
from stagerun.framework.context import (
    RunContext,
    build_run_environment,
    generate_run_id,
    interpolate,
    resolve_parameters,
)
from stagerun.framework.credentials import CredentialBroker, Redactor, RunRedactor, SecretScope
from stagerun.framework.executor import StepExecution, StepExecutor, StepFrame
from stagerun.framework.gates import GateController
from stagerun.framework.ledger import RunLedger
from stagerun.framework.slots import SlotPool

_UNSTABLE_REASONS = {"test_report": "test-failures", "scan_report": "scan-findings"}
_CHILD_REASONS = {"failed": "child-failed", "aborted": "child-aborted", "skipped": "child-skipped"}


@dataclass(frozen=True)
class _GuardView:
    branch: str | None
    tag: str | None
    change_request: bool
    parameters: Mapping[str, Any]
    environment: Mapping[str, str]


@dataclass(frozen=True)
class _Frame:
    env: ChainMap
    redactor: Redactor
    cancel: CancelToken
    slot: str | None = None
    held: tuple[str, ...] = ()
    deadline: float | None = None


def _cancel_status(reason: str | None) -> str:
    # a run timeout fails whatever it interrupts; explicit cancellation aborts it
    return "failed" if reason == RunTimeout.reason else "aborted"


class PipelineRunner:
    def __init__(
        self,
        *,
        executor: StepExecutor,
        slots: SlotPool,
        broker: CredentialBroker,
        gates: GateController,
        workspace_root: str,
        cleaner: WorkspaceCleaner | None = None,
        recorder: RunRecorder | None = None,
        logger: logging.Logger | None = None,
        default_agent: str = DEFAULT_SLOT_LABEL,
        clean_workspace: bool = True,
        post_grace: float = 30.0,
    ) -> None:
        self._executor = executor
        self._slots = slots
        self._broker = broker
        self._gates = gates
        self._workspace_root = os.path.abspath(workspace_root)
        self._cleaner = cleaner or WorkspaceCleaner()
        self._recorder = recorder or DefaultRunRecorder()
        validate_recorder(self._recorder)
        self._logger = logger or logging.getLogger(__name__)
        self._default_agent = default_agent
        self._clean_workspace = clean_workspace
        self._post_grace = post_grace
        self._active: dict[str, CancelToken] = {}
        self._lock = threading.Lock()

    @property
    def gates(self) -> GateController:
        return self._gates

    def active_runs(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._active)

    def abort(self, run_id: str | None = None) -> int:
        """Cancel one active run (or all of them); returns how many were cancelled."""

        with self._lock:
            if run_id is None:
                tokens = list(self._active.values())
            else:
                tokens = [self._active[run_id]] if run_id in self._active else []
        return sum(1 for token in tokens if token.cancel("cancelled"))

    def run(
        self,
        definition: PipelineDefinition,
        *,
        branch: str | None = None,
        tag: str | None = None,
        change_request: bool = False,
        parameters: Mapping[str, Any] | None = None,
        build_number: int = 1,
        run_id: str | None = None,
        logger: logging.Logger | None = None,
    ) -> RunLedger:
        """Execute `definition` once; always returns a sealed ledger.

        Raises:
            DefinitionError: if the definition fails validation (before any stage runs).
            ValueError: if `parameters` names an undeclared parameter or an invalid value.
        """

        graph = PipelineGraph.build(definition)
        resolved = resolve_parameters(definition.parameters, parameters)
        run_id = run_id or generate_run_id()
        log = logger or self._logger

        workspace = os.path.join(self._workspace_root, run_id)
        os.makedirs(workspace, exist_ok=True)
        ctx = RunContext(
            run_id=run_id,
            build_number=build_number,
            workspace=workspace,
            logger=log,
            created_at=utc_now_iso8601(),
            branch=branch,
            tag=tag,
            change_request=change_request,
            parameters=resolved,
            environment=build_run_environment(
                definition,
                run_id=run_id,
                build_number=build_number,
                workspace=workspace,
                parameters=resolved,
                branch=branch,
                tag=tag,
                change_request=change_request,
            ),
        )
        ledger = RunLedger(ctx, pipeline=definition.name)

        token = CancelToken()
        with self._lock:
            self._active[run_id] = token
        watchdog: threading.Timer | None = None
        if definition.options.timeout is not None:
            watchdog = threading.Timer(
                definition.options.timeout, self._expire, args=(token, ctx, definition.options.timeout)
            )
            watchdog.daemon = True
            watchdog.start()

        log.info(
            "Run %s started (pipeline=%s, build=%s, branch=%s, tag=%s)",
            run_id,
            definition.name,
            build_number,
            branch,
            tag,
        )
        ledger.append_event("run-start")
        status: RunStatus = "failed"
        redactor = RunRedactor()
        try:
            frame = _Frame(
                env=ChainMap(dict(ctx.environment), dict(os.environ)),
                redactor=redactor,
                cancel=token,
            )
            root = self._run_stage(ctx, ledger, graph.root, graph.root_path, frame, root=True)
            ledger.set_root(root)
            status = self._run_status(root, token)
        except Exception as exc:
            path = getattr(exc, "pipeline_path", None)
            where = f" at {path}" if path else ""
            log.exception("Internal fault during run %s%s", run_id, where)
            ledger.record_fault(f"{type(exc).__name__}: {exc}{where}")
            if ledger.root is None:
                ledger.set_root(
                    never_run(graph.root.name, graph.root_path, reason="internal-fault", status="failed")
                )
            status = "failed"
        finally:
            if watchdog is not None:
                watchdog.cancel()
            with self._lock:
                self._active.pop(run_id, None)
            try:
                self._finalize(ctx, ledger, definition, status)
            finally:
                redactor.clear()
        return ledger

    def _expire(self, token: CancelToken, ctx: RunContext, timeout: float) -> None:
        if token.cancel(RunTimeout.reason):
            ctx.logger.error("Run %s exceeded its %gs timeout; cancelling", ctx.run_id, timeout)

    def _run_status(self, root: StageResult, token: CancelToken) -> RunStatus:
        if token.cancelled and token.reason == "cancelled":
            return "aborted"
        if root.status in ("failed", "aborted"):
            return root.status  # type: ignore[return-value]
        if root.status == "unstable":
            return "unstable"
        return "succeeded"

    def _finalize(
        self, ctx: RunContext, ledger: RunLedger, definition: PipelineDefinition, status: RunStatus
    ) -> None:
        retention = definition.options.retention
        if retention:
            try:
                pruned = self._executor.artifact_store.prune(retention)
            except (OSError, ValueError) as exc:
                ctx.logger.warning("Artifact pruning failed: %s", exc)
            else:
                if pruned:
                    ledger.append_event("artifacts-pruned", runs=pruned)

        if self._clean_workspace and definition.options.clean_workspace:
            cleanup = self._cleaner.clean(ctx.workspace, logger=ctx.logger)
        else:
            cleanup = CleanupReport("skipped")
        ledger.seal(status, cleanup)
        log = ctx.logger.info if status == "succeeded" else ctx.logger.warning
        log("Run %s finished: %s (cleanup=%s)", ctx.run_id, status, cleanup.status)

    def _notify(self, ctx: RunContext, method: str, *args: Any, **kwargs: Any) -> None:
        try:
            getattr(self._recorder, method)(ctx, *args, **kwargs)
        except Exception:
            ctx.logger.exception("Run recorder %s failed", method)

    def _attach_pipeline_error(self, exc: Exception, *, pipeline_path: str) -> None:
        if not hasattr(exc, "pipeline_path"):
            try:
                setattr(exc, "pipeline_path", pipeline_path)
            except Exception:
                pass

    def _unvisited(
        self, stage: StageSpec, path: str, *, reason: str, status: str = "pending"
    ) -> tuple[StageResult, ...]:
        out: list[StageResult] = []
        for child in stage.children():
            child_path = join_path(path, child.name)
            out.append(
                never_run(
                    child.name,
                    child_path,
                    reason=reason,
                    status=status,  # type: ignore[arg-type]
                    parallel=child.is_parallel,
                    children=self._unvisited(child, child_path, reason=reason, status=status),
                )
            )
        return tuple(out)

    def _run_stage(
        self,
        ctx: RunContext,
        ledger: RunLedger,
        stage: StageSpec,
        path: str,
        frame: _Frame,
        *,
        root: bool = False,
    ) -> StageResult:
        started_at = utc_now_iso8601()
        start = time.monotonic()

        def done(
            status: str,
            reason: str | None = None,
            *,
            children: tuple[StageResult, ...] = (),
            steps: tuple[StepResult, ...] = (),
            post: tuple[StepResult, ...] = (),
            artifacts: tuple[ArtifactRecord, ...] = (),
            notes: tuple[str, ...] = (),
        ) -> StageResult:
            result = StageResult(
                name=stage.name,
                path=path,
                status=status,  # type: ignore[arg-type]
                reason=reason,
                parallel=stage.is_parallel,
                started_at=started_at,
                ended_at=utc_now_iso8601(),
                duration=time.monotonic() - start,
                children=children,
                steps=steps,
                post_steps=post,
                artifacts=artifacts,
                notes=notes,
            )
            ledger.append_event("stage-end", path, status=status, reason=reason)
            self._notify(ctx, "on_stage_end", result)
            return result

        def cancelled(reason: str | None) -> StageResult:
            status = _cancel_status(reason)
            reason = reason or "cancelled"
            return done(status, reason, children=self._unvisited(stage, path, reason=reason, status=status))

        try:
            self._notify(
                ctx,
                "on_stage_start",
                path,
                agent=stage.agent,
                parallel=stage.is_parallel,
                gate=stage.gate is not None,
                credentials=len(stage.credentials),
            )
            ledger.append_event("stage-start", path)

            if frame.cancel.cancelled:
                return cancelled(frame.cancel.reason)

            if stage.when is not None:
                view = _GuardView(
                    branch=ctx.branch,
                    tag=ctx.tag,
                    change_request=ctx.change_request,
                    parameters=ctx.parameters,
                    environment=frame.env,
                )
                if not evaluate_guard(stage.when, view, logger=ctx.logger):
                    ctx.logger.info("Skipping stage %s (when: %s)", path, describe_guard(stage.when))
                    return done("skipped", "guard", children=self._unvisited(stage, path, reason="parent-skipped"))

            if stage.gate is not None:
                request = self._gates.request(ctx.run_id, path, stage.gate)
                ledger.append_event("gate-requested", path, request_id=request.request_id)
                try:
                    self._gates.await_decision(request, cancel=frame.cancel)
                except Cancelled as exc:
                    return cancelled(exc.reason)
                except StageRunError as exc:
                    ledger.append_event(
                        "gate-decided", path, outcome=request.outcome, by=request.decided_by
                    )
                    return done(
                        "failed",
                        exc.reason,
                        children=self._unvisited(stage, path, reason="not-run"),
                        notes=(str(exc),),
                    )
                ledger.append_event("gate-decided", path, outcome="approved", by=request.decided_by)

            deadline = frame.deadline
            if stage.timeout is not None:
                own = time.monotonic() + stage.timeout
                deadline = own if deadline is None else min(deadline, own)

            label = stage.agent or frame.slot or (None if root else self._default_agent)
            acquire = label is not None and label not in frame.held
            held = frame.held + (label,) if acquire else frame.held
            if acquire:
                wait = None if deadline is None else max(0.0, deadline - time.monotonic())
                try:
                    self._slots.acquire(label, timeout=wait, cancel=frame.cancel)
                except Cancelled as exc:
                    return cancelled(exc.reason)
                except StageRunError as exc:
                    return done(
                        "failed",
                        exc.reason,
                        children=self._unvisited(stage, path, reason="not-run"),
                        notes=(str(exc),),
                    )
            try:
                try:
                    with self._broker.scope(stage, stage_path=path) as secrets:
                        return self._run_scoped(
                            ctx,
                            ledger,
                            stage,
                            path,
                            dataclasses.replace(frame, slot=label, held=held, deadline=deadline),
                            secrets,
                            done,
                        )
                except CredentialResolutionError as exc:
                    return done(
                        "failed",
                        exc.reason,
                        children=self._unvisited(stage, path, reason="not-run"),
                        notes=(str(exc),),
                    )
            finally:
                if acquire:
                    self._slots.release(label)  # type: ignore[arg-type]
        except Exception as exc:
            self._attach_pipeline_error(exc, pipeline_path=path)
            raise

    def _run_scoped(
        self,
        ctx: RunContext,
        ledger: RunLedger,
        stage: StageSpec,
        path: str,
        frame: _Frame,
        secrets: SecretScope,
        done: Callable[..., StageResult],
    ) -> StageResult:
        notes: list[str] = []
        if secrets.missing:
            notes.append(f"Missing credential(s): {', '.join(secrets.missing)}")
            if stage.on_missing_credential == "skip":
                return done(
                    "skipped",
                    "missing-credential",
                    children=self._unvisited(stage, path, reason="parent-skipped"),
                    notes=tuple(notes),
                )

        stage_env: dict[str, str] = {}
        layered = frame.env.new_child(stage_env)
        for key, value in stage.environment.items():
            stage_env[key] = interpolate(value, layered)
        env = layered.new_child(secrets.environment())
        redactor = frame.redactor.extend(secrets.values())
        inner = dataclasses.replace(frame, env=env, redactor=redactor)
        step_frame = StepFrame(
            ctx=ctx,
            stage_path=path,
            env=env,
            redactor=redactor,
            cancel=frame.cancel,
            deadline=frame.deadline,
        )

        steps: list[StepResult] = []
        artifacts: list[ArtifactRecord] = []
        failure: tuple[str, str] | None = None
        unstable_reason: str | None = None
        for index, step in enumerate(stage.steps):
            if frame.cancel.cancelled:
                reason = frame.cancel.reason or "cancelled"
                failure = (_cancel_status(reason), reason)
                break
            if step_frame.remaining() == 0.0:
                failure = ("failed", "timeout")
                notes.append(f"Stage timeout elapsed before {effective_step_name(step, index=index)}")
                break

            execution = self._execute_step(ctx, step, step_frame, path, index=index)
            steps.append(execution.result)
            if execution.artifacts:
                artifacts.extend(execution.artifacts)
                ledger.record_artifacts(execution.artifacts)

            if execution.result.status == "failed":
                reason = execution.result.reason or "error"
                if frame.cancel.cancelled and reason == frame.cancel.reason:
                    failure = (_cancel_status(reason), reason)
                    break
                if step.continue_on_error:
                    notes.append(f"Step {execution.result.name} failed ({reason}); continuing")
                    unstable_reason = unstable_reason or "tolerated-failure"
                    continue
                failure = ("failed", reason)
                break
            if execution.unstable:
                notes.append(execution.unstable)
                unstable_reason = unstable_reason or _UNSTABLE_REASONS.get(
                    execution.result.kind, "unstable"
                )

        if failure is None:
            children = self._run_children(ctx, ledger, stage, path, inner)
            status, reason = ("unstable", unstable_reason) if unstable_reason else ("succeeded", None)
            child_status, child_reason = self._aggregate(stage, children)
            if status_severity(child_status) > status_severity(status):
                status, reason = child_status, child_reason
            if status == "succeeded" and secrets.used_placeholder:
                status, reason = "unstable", "placeholder-credential"
        else:
            status, reason = failure
            if frame.cancel.cancelled:
                children = self._unvisited(stage, path, reason=reason, status=_cancel_status(reason))
            else:
                children = self._unvisited(stage, path, reason="not-run")

        post = self._run_post(ctx, ledger, stage, path, step_frame, status, artifacts, notes)
        return done(
            status,
            reason,
            children=children,
            steps=tuple(steps),
            post=post,
            artifacts=tuple(artifacts),
            notes=tuple(notes),
        )

    def _aggregate(
        self, stage: StageSpec, children: tuple[StageResult, ...]
    ) -> tuple[str, str | None]:
        statuses: list[str] = []
        tolerated = False
        for child in children:
            status = child.status
            if status == "pending":
                status = "skipped"
            if not stage.is_parallel and status == "skipped":
                continue
            if stage.continue_on_error and status in ("failed", "aborted"):
                tolerated = True
                status = "unstable"
            statuses.append(status)
        # failed outranks aborted at equal severity
        worst = worst_status(sorted(statuses, key=lambda s: s != "failed"))
        if worst == "unstable":
            return worst, "tolerated-failure" if tolerated else "child-unstable"
        return worst, _CHILD_REASONS.get(worst)

    def _run_children(
        self, ctx: RunContext, ledger: RunLedger, stage: StageSpec, path: str, frame: _Frame
    ) -> tuple[StageResult, ...]:
        if stage.parallel is not None:
            return self._run_parallel(ctx, ledger, stage, path, frame)

        results: list[StageResult] = []
        children = stage.stages
        for index, child in enumerate(children):
            result = self._run_stage(ctx, ledger, child, join_path(path, child.name), frame)
            results.append(result)
            if result.status not in ("failed", "aborted") or stage.continue_on_error:
                continue
            for rest in children[index + 1 :]:
                rest_path = join_path(path, rest.name)
                if frame.cancel.cancelled:
                    results.append(self._run_stage(ctx, ledger, rest, rest_path, frame))
                else:
                    results.append(
                        never_run(
                            rest.name,
                            rest_path,
                            reason="not-run",
                            parallel=rest.is_parallel,
                            children=self._unvisited(rest, rest_path, reason="not-run"),
                        )
                    )
            break
        return tuple(results)

    def _run_parallel(
        self, ctx: RunContext, ledger: RunLedger, stage: StageSpec, path: str, frame: _Frame
    ) -> tuple[StageResult, ...]:
        branches = stage.parallel or ()
        group = frame.cancel.child()
        branch_frame = dataclasses.replace(frame, cancel=group)
        results: dict[str, StageResult] = {}
        with ThreadPoolExecutor(
            max_workers=len(branches), thread_name_prefix=f"stagerun-{ctx.run_id}"
        ) as pool:
            futures = {
                pool.submit(
                    self._run_stage, ctx, ledger, branch, join_path(path, branch.name), branch_frame
                ): branch.name
                for branch in branches
            }
            for future in as_completed(futures):
                result = future.result()
                results[futures[future]] = result
                if stage.fail_fast and result.status == "failed" and not group.cancelled:
                    ctx.logger.warning(
                        "Cancelling remaining branches of %s after %s failed (fail_fast)",
                        path,
                        result.path,
                    )
                    group.cancel("fail-fast")
        return tuple(results[branch.name] for branch in branches)

    def _execute_step(
        self,
        ctx: RunContext,
        step: Step,
        frame: StepFrame,
        path: str,
        *,
        index: int,
        label: str | None = None,
        post: bool = False,
    ) -> StepExecution:
        step_path = f"{path}#{effective_step_name(step, index=index)}"
        self._notify(ctx, "on_step_start", step_path, kind=step_kind(step))
        execution = self._executor.execute(step, frame, index=index, label=label, post=post)
        self._notify(ctx, "on_step_end", step_path, execution.result)
        return execution

    def _run_post(
        self,
        ctx: RunContext,
        ledger: RunLedger,
        stage: StageSpec,
        path: str,
        frame: StepFrame,
        status: str,
        artifacts: list[ArtifactRecord],
        notes: list[str],
    ) -> tuple[StepResult, ...]:
        conditions = ["always"]
        if status == "succeeded":
            conditions.append("success")
        elif status == "failed":
            conditions.append("failure")

        # post-actions outlive the stage deadline; once the run is cancelled
        # they get a fresh token bounded by the post grace period
        if frame.cancel.cancelled:
            frame = dataclasses.replace(
                frame, cancel=CancelToken(), deadline=time.monotonic() + self._post_grace
            )
        else:
            frame = dataclasses.replace(frame, deadline=None)
        results: list[StepResult] = []
        for condition in conditions:
            for index, step in enumerate(stage.post.for_condition(condition)):  # type: ignore[arg-type]
                execution = self._execute_step(
                    ctx,
                    step,
                    frame,
                    f"{path}#post.{condition}",
                    index=index,
                    label=f"post-{condition}-{index + 1:02d}",
                    post=True,
                )
                results.append(execution.result)
                if execution.artifacts:
                    artifacts.extend(execution.artifacts)
                    ledger.record_artifacts(execution.artifacts)
                if execution.result.status == "failed":
                    ctx.logger.warning(
                        "Post-action %s/%s failed (%s); stage status unchanged",
                        path,
                        execution.result.name,
                        execution.result.reason,
                    )
                    notes.append(
                        f"Post-action {condition}/{execution.result.name} failed ({execution.result.reason})"
                    )
        return tuple(results)
