"""Status vocabulary and immutable result records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Literal, TypeAlias

StepStatus: TypeAlias = Literal["succeeded", "failed", "skipped"]
StageStatus: TypeAlias = Literal[
    "pending", "succeeded", "failed", "unstable", "skipped", "aborted"
]
RunStatus: TypeAlias = Literal["succeeded", "failed", "unstable", "aborted"]

TERMINAL_STAGE_STATUSES: tuple[str, ...] = ("succeeded", "failed", "unstable", "skipped", "aborted")

# failure > unstable > skipped > success; never-run stages weigh like skipped ones
_SEVERITY: dict[str, int] = {
    "succeeded": 0,
    "skipped": 1,
    "pending": 1,
    "unstable": 2,
    "failed": 3,
    "aborted": 3,
}


def utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def status_severity(status: str) -> int:
    try:
        return _SEVERITY[status]
    except KeyError:
        raise ValueError(f"Unknown status: {status!r}") from None


def worst_status(statuses: Iterable[str], *, default: str = "succeeded") -> str:
    worst = default
    for status in statuses:
        if status_severity(status) > status_severity(worst):
            worst = status
    return worst


@dataclass(frozen=True)
class StepResult:
    name: str
    index: int
    kind: str
    status: StepStatus
    reason: str | None = None
    exit_code: int | None = None
    duration: float = 0.0
    log_path: str | None = None
    started_at: str | None = None
    message: str | None = None
    post: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "index": self.index,
            "kind": self.kind,
            "status": self.status,
            "reason": self.reason,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "log_path": self.log_path,
            "started_at": self.started_at,
            "message": self.message,
            "post": self.post,
        }


@dataclass(frozen=True)
class StageResult:
    name: str
    path: str
    status: StageStatus
    reason: str | None = None
    parallel: bool = False
    started_at: str | None = None
    ended_at: str | None = None
    duration: float = 0.0
    children: tuple["StageResult", ...] = ()
    steps: tuple[StepResult, ...] = ()
    post_steps: tuple[StepResult, ...] = ()
    artifacts: tuple[Any, ...] = ()
    notes: tuple[str, ...] = field(default_factory=tuple)

    def child(self, name: str) -> "StageResult":
        for child in self.children:
            if child.name == name:
                return child
        raise KeyError(f"No child stage {name!r} under {self.path}")

    def children_by_name(self) -> dict[str, "StageResult"]:
        return {child.name: child for child in self.children}

    def iter_results(self) -> Iterable["StageResult"]:
        yield self
        for child in self.children:
            yield from child.iter_results()

    def find(self, path: str) -> "StageResult":
        for result in self.iter_results():
            if result.path == path:
                return result
        raise KeyError(f"No stage result at {path}")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "path": self.path,
            "status": self.status,
            "reason": self.reason,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration": round(self.duration, 3),
            "steps": [step.to_dict() for step in self.steps],
            "post_steps": [step.to_dict() for step in self.post_steps],
            "artifacts": [a.to_dict() if hasattr(a, "to_dict") else str(a) for a in self.artifacts],
            "notes": list(self.notes),
        }
        if self.parallel:
            out["parallel"] = {child.name: child.to_dict() for child in self.children}
        else:
            out["stages"] = [child.to_dict() for child in self.children]
        return out


def never_run(
    name: str,
    path: str,
    *,
    reason: str,
    status: StageStatus = "pending",
    parallel: bool = False,
    children: tuple[StageResult, ...] = (),
) -> StageResult:
    return StageResult(
        name=name, path=path, status=status, reason=reason, parallel=parallel, children=children
    )
