"""The run ledger: append-only record of one pipeline run, sealed exactly once."""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Iterable, Mapping
from typing import Any

import pandas as pd

from stagekit.engine.results import RunStatus, StageResult, utc_now_iso8601
from stagerun.foundation.errors import LedgerSealedError
from stagerun.framework.artifacts import ArtifactRecord
from stagerun.framework.cleanup import CleanupReport
from stagerun.framework.context import RunContext

RUN_STATUSES: tuple[str, ...] = ("succeeded", "failed", "unstable", "aborted")

STAGE_FRAME_COLUMNS: list[str] = [
    "path",
    "name",
    "depth",
    "status",
    "reason",
    "parallel",
    "started_at",
    "ended_at",
    "duration",
    "steps",
    "failed_steps",
    "artifacts",
]

RUN_INDEX_SCHEMA_VERSION = 1


class RunLedger:
    def __init__(self, ctx: RunContext, *, pipeline: str) -> None:
        self._ctx = ctx
        self._pipeline = pipeline
        self._root: StageResult | None = None
        self._status: RunStatus | None = None
        self._artifacts: list[ArtifactRecord] = []
        self._events: list[dict[str, Any]] = []
        self._cleanup: CleanupReport | None = None
        self._fault: str | None = None
        self._seal_count = 0
        self._sealed_at: str | None = None
        self._lock = threading.Lock()

    @property
    def context(self) -> RunContext:
        return self._ctx

    @property
    def run_id(self) -> str:
        return self._ctx.run_id

    @property
    def pipeline(self) -> str:
        return self._pipeline

    @property
    def root(self) -> StageResult | None:
        return self._root

    @property
    def status(self) -> RunStatus | None:
        return self._status

    @property
    def artifacts(self) -> tuple[ArtifactRecord, ...]:
        return tuple(self._artifacts)

    @property
    def events(self) -> tuple[dict[str, Any], ...]:
        return tuple(self._events)

    @property
    def cleanup(self) -> CleanupReport | None:
        return self._cleanup

    @property
    def cleanup_notes(self) -> tuple[str, ...]:
        return self._cleanup.notes if self._cleanup else ()

    @property
    def fault(self) -> str | None:
        return self._fault

    @property
    def sealed(self) -> bool:
        return self._seal_count > 0

    @property
    def seal_count(self) -> int:
        return self._seal_count

    def _check_open(self, action: str) -> None:
        if self._seal_count:
            raise LedgerSealedError(f"Cannot {action}: ledger for run {self.run_id} is sealed")

    def append_event(self, kind: str, path: str | None = None, **data: Any) -> None:
        with self._lock:
            self._check_open("append event")
            self._events.append({"at": utc_now_iso8601(), "kind": kind, "path": path, **data})

    def set_root(self, result: StageResult) -> None:
        with self._lock:
            self._check_open("set root result")
            if self._root is not None:
                raise LedgerSealedError(f"Root result for run {self.run_id} is already recorded")
            self._root = result

    def record_artifacts(self, records: Iterable[ArtifactRecord]) -> None:
        with self._lock:
            self._check_open("record artifacts")
            self._artifacts.extend(records)

    def record_fault(self, description: str) -> None:
        with self._lock:
            self._check_open("record fault")
            self._fault = description

    def seal(self, status: RunStatus, cleanup: CleanupReport) -> None:
        if status not in RUN_STATUSES:
            raise ValueError(f"Invalid run status: {status!r}")
        with self._lock:
            if self._seal_count:
                self._seal_count += 1
                raise LedgerSealedError(f"Ledger for run {self.run_id} was already sealed")
            self._status = status
            self._cleanup = cleanup
            self._sealed_at = utc_now_iso8601()
            self._seal_count = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": RUN_INDEX_SCHEMA_VERSION,
            "run_id": self.run_id,
            "pipeline": self._pipeline,
            "status": self._status,
            "sealed_at": self._sealed_at,
            "context": self._ctx.summary(),
            "root": self._root.to_dict() if self._root else None,
            "artifacts": [record.to_dict() for record in self._artifacts],
            "events": list(self._events),
            "cleanup": self._cleanup.to_dict() if self._cleanup else None,
            "fault": self._fault,
        }

    def write_json(self, path: str) -> str:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(self.to_dict(), handle, ensure_ascii=False, indent=2)
            handle.write("\n")
        return path

    def stage_frame(self) -> pd.DataFrame:
        """Per-stage breakdown, one row per stage in depth-first order."""

        rows: list[dict[str, Any]] = []
        if self._root is not None:
            root_depth = self._root.path.count("/")
            for result in self._root.iter_results():
                rows.append(
                    {
                        "path": result.path,
                        "name": result.name,
                        "depth": result.path.count("/") - root_depth,
                        "status": result.status,
                        "reason": result.reason,
                        "parallel": result.parallel,
                        "started_at": result.started_at,
                        "ended_at": result.ended_at,
                        "duration": round(result.duration, 3),
                        "steps": len(result.steps),
                        "failed_steps": sum(1 for step in result.steps if step.status == "failed"),
                        "artifacts": len(result.artifacts),
                    }
                )
        return pd.DataFrame(rows, columns=STAGE_FRAME_COLUMNS)

    def write_stage_csv(self, path: str) -> str:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        self.stage_frame().to_csv(path, index=False)
        return path

    def index_entry(self, *, ledger_path: str | None = None) -> dict[str, Any]:
        counts: dict[str, int] = {}
        if self._root is not None:
            for result in self._root.iter_results():
                counts[result.status] = counts.get(result.status, 0) + 1
        return {
            "schema_version": RUN_INDEX_SCHEMA_VERSION,
            "run_id": self.run_id,
            "pipeline": self._pipeline,
            "build_number": self._ctx.build_number,
            "branch": self._ctx.branch,
            "status": self._status,
            "created_at": self._ctx.created_at,
            "sealed_at": self._sealed_at,
            "stage_counts": counts,
            "artifacts": len(self._artifacts),
            "cleanup": self._cleanup.status if self._cleanup else None,
            "ledger_path": ledger_path,
        }


def append_run_index_entry(path: str, entry: Mapping[str, Any]) -> None:
    """Append a single JSON object to a JSONL run index file."""

    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(dict(entry), ensure_ascii=False))
        handle.write("\n")


def read_run_index(path: str) -> list[dict[str, Any]]:
    if not os.path.exists(path):
        return []
    entries: list[dict[str, Any]] = []
    with open(path, "r", encoding="utf-8") as handle:
        for line in handle:
            if line.strip():
                entries.append(json.loads(line))
    return entries
