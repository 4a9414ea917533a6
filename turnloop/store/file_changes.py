"""Per-task record of files changed by tools.

Tools that modify the project (``write``) report each change here; the
autonomous-iteration hook lists them in its progress summary and the review
hook uses them to pick what to review.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime

from turnloop.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class FileChange:
    """One changed file."""

    file_path: str
    action: str = "modified"
    changed_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


class FileChangeTracker:
    """Thread-safe mapping of task id to changed files.

    A path appears once per task; a later change to the same path replaces
    the earlier entry but keeps its original position.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._changes: dict[str, dict[str, FileChange]] = {}

    def record(self, task_id: str, file_path: str, action: str = "modified") -> None:
        normalized = self._normalize(file_path)
        if not task_id or not normalized:
            return
        with self._lock:
            bucket = self._changes.setdefault(task_id, {})
            previous = bucket.get(normalized)
            if previous is not None and previous.action == "created":
                action = "created"
            bucket[normalized] = FileChange(file_path=normalized, action=action)
        log.debug("File change recorded", task_id=task_id, path=normalized, action=action)

    def get_changes(self, task_id: str) -> list[FileChange]:
        with self._lock:
            return list(self._changes.get(task_id, {}).values())

    def clear(self, task_id: str) -> None:
        with self._lock:
            self._changes.pop(task_id, None)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(bucket) for bucket in self._changes.values())

    @staticmethod
    def _normalize(path: str) -> str:
        """Strip quotes, whitespace and a leading ``./``."""
        raw = str(path or "").strip().strip("\"'`")
        while raw.startswith("./"):
            raw = raw[2:]
        return raw
