from __future__ import annotations


class StageRunError(Exception):
    """Base class for engine runtime errors. `reason` is the stable status reason."""

    reason = "error"


class CredentialResolutionError(StageRunError):
    reason = "missing-credential"

    def __init__(self, credential_id: str, message: str | None = None) -> None:
        self.credential_id = credential_id
        super().__init__(message or f"Credential not found: {credential_id}")


class StepExecutionFailure(StageRunError):
    reason = "exit-code"

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        self.exit_code = exit_code
        super().__init__(message)


class StepTimeout(StageRunError):
    reason = "timeout"


class RunTimeout(StageRunError):
    reason = "run-timeout"


class SlotTimeout(StageRunError):
    reason = "slot-timeout"


class Cancelled(StageRunError):
    reason = "cancelled"

    def __init__(self, reason: str = "cancelled") -> None:
        self.reason = reason
        super().__init__(f"Cancelled ({reason})")


class ApprovalRejected(StageRunError):
    reason = "rejected"

    def __init__(self, message: str, *, approver: str | None = None) -> None:
        self.approver = approver
        super().__init__(message)


class ApprovalTimeout(StageRunError):
    reason = "approval-timeout"


class ApproverNotAllowed(PermissionError):
    pass


class ArtifactError(StageRunError):
    reason = "artifact-error"


class ReportParseError(StageRunError):
    reason = "report-error"


class SecretLeakError(StageRunError):
    reason = "secret-leak"


class CleanupFailure(StageRunError):
    reason = "cleanup-failed"


class LedgerSealedError(AssertionError):
    """The run ledger was already sealed; it is never finalized twice."""


class UnknownAgentLabel(StageRunError):
    reason = "unknown-agent"
