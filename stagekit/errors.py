from __future__ import annotations


class DefinitionError(ValueError):
    """A pipeline definition is malformed; raised before anything executes."""

    def __init__(self, message: str, *, stage_path: str | None = None) -> None:
        self.stage_path = stage_path
        if stage_path:
            message = f"{message} (stage: {stage_path})"
        super().__init__(message)


class GuardEvaluationWarning(UserWarning):
    """A guard could not be evaluated against the run context and defaulted to false."""
