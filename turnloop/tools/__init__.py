"""Tools package for turnloop."""

from turnloop.tools.executor import ToolContext, ToolExecutor
from turnloop.tools.registry import (
    Tool,
    ToolRegistry,
    ToolResult,
    shell_segment_texts,
)
from turnloop.tools.shell import ShellTool
from turnloop.tools.read import ReadTool
from turnloop.tools.write import WriteTool

__all__ = [
    "Tool",
    "ToolContext",
    "ToolExecutor",
    "ToolRegistry",
    "ToolResult",
    "shell_segment_texts",
    "ShellTool",
    "ReadTool",
    "WriteTool",
]
