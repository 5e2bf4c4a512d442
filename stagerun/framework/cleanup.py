from __future__ import annotations

import logging
import os
import shutil
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Literal

from stagerun.foundation.errors import CleanupFailure

CleanupStatus = Literal["clean", "fallback", "failed", "skipped"]

FALLBACK_NOTE = "Workspace cleanup completed via the fallback path"


@dataclass(frozen=True)
class CleanupReport:
    status: CleanupStatus
    notes: tuple[str, ...] = ()

    @property
    def used_fallback(self) -> bool:
        return self.status in ("fallback", "failed")

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "notes": list(self.notes)}


class WorkspaceCleaner:
    """Tears down a run workspace; never raises.

    The primary strategy removes the tree in place. If that fails the
    workspace is renamed into a trash directory (so the next run can reuse the
    path) and removed best-effort.
    """

    def __init__(
        self,
        *,
        trash_dir: str | None = None,
        remove: Callable[[str], Any] = shutil.rmtree,
        logger: logging.Logger | None = None,
    ) -> None:
        self._trash_dir = trash_dir
        self._remove = remove
        self._logger = logger or logging.getLogger(__name__)

    def clean(self, workspace: str, *, logger: logging.Logger | None = None) -> CleanupReport:
        log = logger or self._logger
        if not os.path.exists(workspace):
            return CleanupReport("clean")

        try:
            self._remove(workspace)
            log.debug("Removed workspace %s", workspace)
            return CleanupReport("clean")
        except OSError as exc:
            primary = CleanupFailure(f"Primary workspace teardown failed: {exc}")
            log.warning("%s; trying fallback", primary)

        trash_root = self._trash_dir or os.path.join(
            os.path.dirname(os.path.abspath(workspace)), ".trash"
        )
        target = os.path.join(trash_root, f"{os.path.basename(workspace)}-{uuid.uuid4().hex[:8]}")
        try:
            os.makedirs(trash_root, exist_ok=True)
            os.replace(workspace, target)
        except OSError as exc:
            fallback = CleanupFailure(f"Fallback workspace teardown failed: {exc}")
            log.error("%s", fallback)
            return CleanupReport("failed", notes=(str(primary), str(fallback)))

        shutil.rmtree(target, ignore_errors=True)
        notes = [str(primary), FALLBACK_NOTE]
        if os.path.exists(target):
            notes.append(f"Leftover files remain in {target}")
        log.info("%s (%s)", FALLBACK_NOTE, workspace)
        return CleanupReport("fallback", notes=tuple(notes))
