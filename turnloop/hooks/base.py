"""Completion hook contract: context, results and the hook base class."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from turnloop.messages import TurnMessage


class StopReason(str, Enum):
    COMPLETE = "complete"
    BLOCKED = "blocked"
    MAX_ITERATIONS = "max-iterations"
    MAX_WALL_TIME = "max-wall-time"
    ERROR = "error"
    UNKNOWN = "unknown"
    HOOK = "hook"


UNSUCCESSFUL_STOP_REASONS = frozenset(
    {
        StopReason.BLOCKED,
        StopReason.ERROR,
        StopReason.MAX_ITERATIONS,
        StopReason.MAX_WALL_TIME,
    }
)


@dataclass(frozen=True)
class ToolSummary:
    """One tool invocation of the current completion round."""

    tool_name: str
    call_id: str
    command: str | None = None
    success: bool = True
    output: str = ""
    error: str | None = None


@dataclass(frozen=True)
class LoopStateView:
    """Read-only snapshot of the loop state handed to hooks."""

    task_id: str
    messages: tuple[TurnMessage, ...]
    iteration: int
    turn_count: int
    last_request_tokens: int = 0
    unknown_finish_count: int = 0
    last_finish_reason: str | None = None
    attachments: tuple[dict[str, Any], ...] = ()
    # user message that started the run
    request_text: str = ""


@dataclass(frozen=True)
class CompletionHookContext:
    """Everything a hook may inspect on a stop-candidate turn."""

    task_id: str
    full_text: str
    tool_summaries: tuple[ToolSummary, ...]
    loop_state: LoopStateView
    iteration: int
    start_time: float
    cancel_event: asyncio.Event | None = field(default=None, compare=False)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


@dataclass(frozen=True)
class Stop:
    reason: StopReason | None = None
    message: str | None = None


@dataclass(frozen=True)
class Continue:
    """Replace the loop's history with ``messages`` and run another round."""

    messages: tuple[TurnMessage, ...] = ()


@dataclass(frozen=True)
class Skip:
    pass


HookResult = Stop | Continue | Skip


def is_nested_task(task_id: str) -> bool:
    """Sub-agent runs use ``nested`` or ``nested-*`` task ids."""
    return task_id == "nested" or task_id.startswith("nested-")


class CompletionHook(ABC):
    """A named, prioritized stop/continue/skip decision unit."""

    name: str = ""
    priority: int = 100

    def should_run(self, context: CompletionHookContext) -> bool:
        return bool(context.task_id)

    @abstractmethod
    async def run(self, context: CompletionHookContext) -> HookResult:
        pass

    def system_prompt_addendum(self, task_id: str) -> str | None:
        """Extra system-prompt text this hook needs for ``task_id``."""
        return None
