"""Write tool for writing file contents."""

from pathlib import Path
from typing import Any

from turnloop.logging import get_logger
from turnloop.store.file_changes import FileChangeTracker
from turnloop.tools.registry import Tool, ToolResult

log = get_logger(__name__)


class WriteTool(Tool):
    """Create or overwrite project files, recording each change per task."""

    name = "write"
    description = "Create or overwrite a file in the project with content."
    timeout_seconds = 30.0
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to write, relative to the project directory",
            },
            "content": {
                "type": "string",
                "description": "Content to write to the file",
            },
            "append": {
                "type": "boolean",
                "description": "Append to file instead of overwriting",
            },
        },
        "required": ["path", "content"],
    }

    def __init__(self, file_changes: FileChangeTracker | None = None):
        self.file_changes = file_changes

    @staticmethod
    def _resolve_in_workspace(path: str, workspace: Path) -> Path | None:
        """Resolve ``path`` under ``workspace``; None if it escapes."""
        requested = Path(path).expanduser()
        candidate = (requested if requested.is_absolute() else workspace / requested).resolve()
        try:
            candidate.relative_to(workspace)
        except ValueError:
            return None
        return candidate

    async def execute(self, path: str, content: str, append: bool = False, **kwargs: Any) -> ToolResult:
        """Write content to a file.

        Args:
            path: Path to file
            content: Content to write
            append: Whether to append instead of overwrite
        """
        workspace = Path(kwargs.get("_workspace") or Path.cwd()).resolve()
        file_path = self._resolve_in_workspace(path, workspace)
        if file_path is None:
            return ToolResult(success=False, error=f"Path is outside the project directory: {path}")

        existed = file_path.exists()
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            mode = "a" if append else "w"
            with open(file_path, mode, encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            log.error("Write failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))

        task_id = str(kwargs.get("_task_id") or "")
        if self.file_changes is not None and task_id:
            relative = file_path.relative_to(workspace).as_posix()
            self.file_changes.record(task_id, relative, "modified" if existed else "created")

        return ToolResult(
            success=True,
            content=f"Written {len(content)} chars to {file_path}",
            metadata={"path": str(file_path)},
        )
