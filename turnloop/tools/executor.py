"""Tool executor: the loop-facing wrapper around the registry.

The executor never raises for tool failures. Unknown tools, blocked commands,
bad arguments, timeouts and crashes all come back as ``ToolResult(success=False)``
so the model sees them on its next turn. Every invocation, successful or not,
is reported to the registered observers and to the per-call observer carried
in the ``ToolContext``.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable

from turnloop.exceptions import ToolError
from turnloop.logging import get_logger
from turnloop.tools.registry import ToolRegistry, ToolResult

log = get_logger(__name__)

ToolResultObserver = Callable[[str, ToolResult, str], None]


@dataclass
class ToolContext:
    """Per-call execution context."""

    task_id: str
    call_id: str = ""
    cancel_event: asyncio.Event | None = None
    on_tool_result: ToolResultObserver | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class ToolExecutor:
    """Validates, runs and reports tool invocations."""

    def __init__(self, registry: ToolRegistry):
        self.registry = registry
        self._observers: list[ToolResultObserver] = []

    def add_observer(self, observer: ToolResultObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: ToolResultObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    async def execute(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        context: ToolContext,
    ) -> ToolResult:
        """Run one tool call and report it.

        Raises only ``asyncio.CancelledError``.
        """
        try:
            result = await self.registry.execute(
                tool_name,
                dict(arguments or {}),
                task_id=context.task_id,
                abort_event=context.cancel_event,
                extra_context=context.extra,
            )
        except ToolError as e:
            log.warning("Tool call failed", tool=tool_name, call_id=context.call_id, error=str(e))
            result = ToolResult(success=False, error=str(e))

        if tool_name == "shell" and "command" not in result.metadata:
            command = (arguments or {}).get("command")
            if isinstance(command, str):
                result.metadata["command"] = command

        self._notify(tool_name, result, context)
        return result

    def _notify(self, tool_name: str, result: ToolResult, context: ToolContext) -> None:
        observers = list(self._observers)
        if context.on_tool_result is not None:
            observers.append(context.on_tool_result)
        for observer in observers:
            try:
                observer(tool_name, result, context.call_id)
            except Exception as e:
                log.error("Tool result observer failed", tool=tool_name, error=str(e))
