"""Read tool for reading file contents."""

from pathlib import Path
from typing import Any

from turnloop.logging import get_logger
from turnloop.tools.registry import Tool, ToolResult

log = get_logger(__name__)

MAX_FILE_BYTES = 100_000


class ReadTool(Tool):
    """Read file contents."""

    name = "read"
    description = "Read the contents of a file in the project."
    timeout_seconds = 30.0
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to read, relative to the project directory",
            },
            "limit": {
                "type": "number",
                "description": "Maximum number of lines to read",
            },
            "offset": {
                "type": "number",
                "description": "Line number to start reading from (1-indexed)",
            },
        },
        "required": ["path"],
    }

    async def execute(
        self, path: str, limit: int | None = None, offset: int | None = None, **kwargs: Any
    ) -> ToolResult:
        """Read a file.

        Args:
            path: Path to file
            limit: Optional line limit
            offset: Optional line offset
        """
        workspace = Path(kwargs.get("_workspace") or Path.cwd())
        requested = Path(path).expanduser()
        file_path = (requested if requested.is_absolute() else workspace / requested).resolve()

        if not file_path.exists():
            return ToolResult(success=False, error=f"File not found: {path}")
        if not file_path.is_file():
            return ToolResult(success=False, error=f"Not a file: {path}")

        file_size = file_path.stat().st_size
        if file_size > MAX_FILE_BYTES:
            return ToolResult(
                success=False,
                error=f"File too large: {file_size} bytes (max {MAX_FILE_BYTES})",
            )

        try:
            content = file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            log.error("Read failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))

        lines = content.splitlines()
        start = max(1, int(offset or 1))
        lines = lines[start - 1:]
        if limit:
            lines = lines[: int(limit)]
        content = "\n".join(lines)

        info = f"[{file_path} {len(content)} chars]"
        if offset or limit:
            info += f" [lines {start}-{start + len(lines) - 1}]"

        return ToolResult(success=True, content=f"{info}\n{content}")
