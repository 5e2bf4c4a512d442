from __future__ import annotations

import csv
import glob
import hashlib
import logging
import os
import shutil
import tempfile
import threading
from dataclasses import asdict, dataclass
from typing import Any

import pandas as pd

from stagekit.engine.results import utc_now_iso8601
from stagerun.foundation.errors import ArtifactError
from stagerun.framework.credentials import Redactor

INDEX_FILENAME = "artifacts.csv"
KEEP_RETENTION_CLASS = "keep"

INDEX_FIELDNAMES: list[str] = [
    "run_id",
    "stage_id",
    "pattern",
    "source_path",
    "stored_path",
    "fingerprint",
    "size",
    "retention_class",
    "redacted",
    "created_at",
]


@dataclass(frozen=True)
class ArtifactRecord:
    run_id: str
    stage_id: str
    pattern: str
    source_path: str
    stored_path: str
    size: int
    fingerprint: str | None = None
    retention_class: str = "default"
    redacted: bool = False
    created_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def sha256_file(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _stage_dir(stage_id: str) -> list[str]:
    return [seg if seg not in (".", "..") else f"_{seg}" for seg in stage_id.split("/") if seg]


class ArtifactStore:
    """Copies matched workspace files under `<root>/<run_id>/<stage path>/`.

    Every archived file is appended to `<root>/artifacts.csv`.
    """

    def __init__(self, root: str, *, logger: logging.Logger | None = None) -> None:
        self._root = os.path.abspath(root)
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()

    @property
    def root(self) -> str:
        return self._root

    @property
    def index_path(self) -> str:
        return os.path.join(self._root, INDEX_FILENAME)

    def _match(self, pattern: str, workspace: str) -> list[str]:
        workspace = os.path.abspath(workspace)
        matches: list[str] = []
        for path in sorted(glob.glob(os.path.join(workspace, pattern), recursive=True)):
            if not os.path.isfile(path):
                continue
            resolved = os.path.abspath(path)
            if os.path.commonpath([resolved, workspace]) != workspace:
                raise ArtifactError(f"Artifact pattern {pattern!r} matched a file outside the workspace")
            matches.append(resolved)
        return matches

    def archive(
        self,
        pattern: str,
        run_id: str,
        stage_id: str,
        *,
        workspace: str,
        fingerprint: bool = False,
        allow_empty: bool = True,
        retention_class: str = "default",
        redactor: Redactor | None = None,
    ) -> list[ArtifactRecord]:
        matches = self._match(pattern, workspace)
        if not matches:
            if not allow_empty:
                raise ArtifactError(f"No files matched artifact pattern {pattern!r}")
            self._logger.info("No files matched artifact pattern %s (stage %s)", pattern, stage_id)
            return []

        target_root = os.path.join(self._root, run_id, *_stage_dir(stage_id))
        records: list[ArtifactRecord] = []
        for source in matches:
            rel = os.path.relpath(source, os.path.abspath(workspace))
            dest = os.path.join(target_root, rel)
            os.makedirs(os.path.dirname(dest), exist_ok=True)

            with open(source, "rb") as handle:
                data = handle.read()
            redacted = False
            if redactor is not None and redactor.active:
                data, redacted = redactor.redact_bytes(data)
            with open(dest, "wb") as handle:
                handle.write(data)
            if redacted:
                self._logger.warning("Masked secret values in archived artifact %s", rel)

            records.append(
                ArtifactRecord(
                    run_id=run_id,
                    stage_id=stage_id,
                    pattern=pattern,
                    source_path=rel.replace(os.sep, "/"),
                    stored_path=dest,
                    size=len(data),
                    fingerprint=hashlib.sha256(data).hexdigest() if fingerprint else None,
                    retention_class=retention_class,
                    redacted=redacted,
                    created_at=utc_now_iso8601(),
                )
            )

        self._append_index(records)
        return records

    def _append_index(self, records: list[ArtifactRecord]) -> None:
        with self._lock:
            os.makedirs(self._root, exist_ok=True)
            file_exists = os.path.exists(self.index_path) and os.path.getsize(self.index_path) > 0
            with open(self.index_path, "a", encoding="utf-8", newline="") as file:
                writer = csv.DictWriter(file, fieldnames=INDEX_FIELDNAMES, extrasaction="ignore")
                if not file_exists:
                    writer.writeheader()
                for record in records:
                    row = record.to_dict()
                    row["fingerprint"] = row["fingerprint"] or ""
                    writer.writerow(row)

    def verify(self, record: ArtifactRecord) -> bool:
        """True when the stored copy still exists and matches its fingerprint."""

        if not os.path.isfile(record.stored_path):
            return False
        if record.fingerprint is None:
            return True
        return sha256_file(record.stored_path) == record.fingerprint

    def index_frame(self) -> pd.DataFrame:
        if not os.path.exists(self.index_path) or os.path.getsize(self.index_path) == 0:
            return pd.DataFrame(columns=INDEX_FIELDNAMES)
        return pd.read_csv(
            self.index_path, dtype={"run_id": str, "fingerprint": str}, keep_default_na=False
        )

    def prune(self, keep_runs: int) -> list[str]:
        """Drop artifacts of all but the newest `keep_runs` runs; returns pruned run ids.

        Records with retention class `keep` survive pruning.
        """

        if keep_runs < 1:
            raise ValueError(f"keep_runs must be >= 1 (got {keep_runs})")

        with self._lock:
            df = self.index_frame()
            if df.empty:
                return []
            run_order = list(dict.fromkeys(df["run_id"].tolist()))
            expired = run_order[:-keep_runs] if len(run_order) > keep_runs else []
            if not expired:
                return []

            doomed = df["run_id"].isin(expired) & (df["retention_class"] != KEEP_RETENTION_CLASS)
            for stored_path in df.loc[doomed, "stored_path"]:
                try:
                    os.remove(stored_path)
                except FileNotFoundError:
                    pass
            for run_id in expired:
                run_dir = os.path.join(self._root, run_id)
                if not df.loc[(df["run_id"] == run_id) & ~doomed].empty:
                    continue
                shutil.rmtree(run_dir, ignore_errors=True)

            survivors = df.loc[~doomed]
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                newline="",
                delete=False,
                dir=self._root,
                prefix=INDEX_FILENAME + ".",
                suffix=".tmp",
            ) as handle:
                survivors.to_csv(handle, index=False, columns=INDEX_FIELDNAMES)
                temp_path = handle.name
            os.replace(temp_path, self.index_path)

        self._logger.info("Pruned artifacts for %d run(s): %s", len(expired), ", ".join(expired))
        return expired
