"""File-backed artifact store for per-task documents."""

import asyncio
import os
import tempfile
from pathlib import Path

from turnloop.config import get_config
from turnloop.logging import get_logger

log = get_logger(__name__)


def _safe_segment(value: str, fallback: str) -> str:
    """Return a filesystem-safe single path segment."""
    raw = str(value or "").strip()
    safe = "".join(c if c.isalnum() or c in "._-" else "-" for c in raw).strip("-.")
    return safe or fallback


class ArtifactStore:
    """Stores text artifacts under ``<root>/<task_id>/<namespace>/<filename>``.

    Namespaces keep loop artifacts apart from other task files. Writes go to
    a temp file first and are moved into place with ``os.replace``.
    """

    def __init__(self, root: Path | str | None = None):
        if root is None:
            self.root = get_config().resolved_artifacts_dir()
        else:
            self.root = Path(root).expanduser().resolve()

    def path_for(self, namespace: str, task_id: str, filename: str) -> Path:
        return (
            self.root
            / _safe_segment(task_id, "default")
            / _safe_segment(namespace, "default")
            / _safe_segment(filename, "artifact.txt")
        )

    async def read_file(self, namespace: str, task_id: str, filename: str) -> str | None:
        """Return file content, or None when the artifact does not exist."""
        path = self.path_for(namespace, task_id, filename)
        return await asyncio.to_thread(self._read_sync, path)

    async def write_file(self, namespace: str, task_id: str, filename: str, content: str) -> None:
        """Atomically create or replace an artifact."""
        path = self.path_for(namespace, task_id, filename)
        await asyncio.to_thread(self._write_sync, path, content)
        log.debug("Artifact written", namespace=namespace, task_id=task_id, file=filename, chars=len(content))

    @staticmethod
    def _read_sync(path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    @staticmethod
    def _write_sync(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
