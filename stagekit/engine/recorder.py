from __future__ import annotations

import logging
from typing import Any, Protocol

from stagekit.engine.results import StageResult, StepResult


class RecorderContext(Protocol):
    run_id: str
    logger: logging.Logger


class RunRecorder(Protocol):
    def on_stage_start(self, ctx: RecorderContext, path: str, **metrics: Any) -> None:
        ...

    def on_stage_end(self, ctx: RecorderContext, result: StageResult) -> None:
        ...

    def on_step_start(self, ctx: RecorderContext, path: str, **metrics: Any) -> None:
        ...

    def on_step_end(self, ctx: RecorderContext, path: str, result: StepResult) -> None:
        ...


class DefaultRunRecorder:
    def on_stage_start(self, ctx: RecorderContext, path: str, **metrics: Any) -> None:
        tokens: list[str] = []
        for key in ("agent", "parallel", "gate", "credentials"):
            value = metrics.get(key)
            if value not in (None, False, "", 0):
                tokens.append(f"{key}={value}")
        if tokens:
            ctx.logger.info("Stage: %s (%s)", path, ", ".join(tokens))
        else:
            ctx.logger.info("Stage: %s", path)

    def on_stage_end(self, ctx: RecorderContext, result: StageResult) -> None:
        suffix = f", reason={result.reason}" if result.reason else ""
        log = ctx.logger.warning if result.status in ("failed", "unstable") else ctx.logger.info
        log(
            "Completed stage %s (status=%s, duration=%.2fs%s)",
            result.path,
            result.status,
            result.duration,
            suffix,
        )

    def on_step_start(self, ctx: RecorderContext, path: str, **metrics: Any) -> None:
        kind = metrics.get("kind") or "step"
        ctx.logger.info("Step: %s (type=%s)", path, kind)

    def on_step_end(self, ctx: RecorderContext, path: str, result: StepResult) -> None:
        if result.status == "failed":
            ctx.logger.error(
                "Step failed: %s (reason=%s, exit=%s)", path, result.reason, result.exit_code
            )
            return
        ctx.logger.info("Completed step %s (status=%s)", path, result.status)


class NullRunRecorder:
    def on_stage_start(self, ctx: RecorderContext, path: str, **metrics: Any) -> None:
        return

    def on_stage_end(self, ctx: RecorderContext, result: StageResult) -> None:
        return

    def on_step_start(self, ctx: RecorderContext, path: str, **metrics: Any) -> None:
        return

    def on_step_end(self, ctx: RecorderContext, path: str, result: StepResult) -> None:
        return


def validate_recorder(recorder: RunRecorder) -> None:
    required = ("on_stage_start", "on_stage_end", "on_step_start", "on_step_end")
    for name in required:
        method = getattr(recorder, name, None)
        if method is None or not callable(method):
            raise TypeError(f"Run recorder missing required method: {name}")
