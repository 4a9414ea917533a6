"""Automatic code review of files changed during a task."""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable

from turnloop.hooks.base import (
    CompletionHook,
    CompletionHookContext,
    Continue,
    HookResult,
    Stop,
    is_nested_task,
)
from turnloop.instructions import InstructionLoader, get_instruction_loader
from turnloop.llm import LLMProvider
from turnloop.logging import get_logger
from turnloop.messages import TurnMessage, user_message
from turnloop.store.file_changes import FileChange, FileChangeTracker
from turnloop.store.message_store import MessageStore

log = get_logger(__name__)

APPROVAL_TOKEN = "LGTM"


class Reviewer(ABC):
    @abstractmethod
    async def review(self, task_id: str) -> str | None:
        """Return review findings, or None when there is nothing to report."""


class ModelReviewer(Reviewer):
    """Asks the model to review files changed since the last review of the task."""

    def __init__(
        self,
        provider: LLMProvider,
        file_changes: FileChangeTracker,
        workspace: Path | str | None = None,
        instructions: InstructionLoader | None = None,
        approval_token: str = APPROVAL_TOKEN,
        max_file_chars: int = 20000,
    ):
        self.provider = provider
        self.file_changes = file_changes
        self.workspace = Path(workspace or Path.cwd()).resolve()
        self.instructions = instructions or get_instruction_loader()
        self.approval_token = approval_token
        self.max_file_chars = max_file_chars
        self._reviewed: dict[str, set[tuple[str, str]]] = {}

    def pending_changes(self, task_id: str) -> list[FileChange]:
        reviewed = self._reviewed.get(task_id, set())
        return [
            change
            for change in self.file_changes.get_changes(task_id)
            if (change.file_path, change.changed_at) not in reviewed
        ]

    def _read_file(self, relative: str) -> str:
        path = (self.workspace / relative).resolve()
        try:
            path.relative_to(self.workspace)
        except ValueError:
            return "[outside project]"
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return "[deleted]"
        except (OSError, UnicodeDecodeError) as e:
            return f"[unreadable: {e}]"
        if len(text) > self.max_file_chars:
            text = text[: self.max_file_chars] + "\n... [truncated]"
        return text

    async def review(self, task_id: str) -> str | None:
        changes = self.pending_changes(task_id)
        if not changes:
            return None

        files = list(dict.fromkeys(change.file_path for change in changes))
        contents = "\n\n".join(f"--- {f} ---\n{self._read_file(f)}" for f in files)
        prompt = self.instructions.render(
            "review_user_prompt.md",
            file_list="\n".join(f"- {f}" for f in files),
            file_contents=contents,
        )
        system_prompt = self.instructions.render(
            "review_system_prompt.md", approval_token=self.approval_token
        )

        reply = await self.provider.complete([TurnMessage(role="user", content=prompt)], system_prompt=system_prompt)

        bucket = self._reviewed.setdefault(task_id, set())
        bucket.update((change.file_path, change.changed_at) for change in changes)

        text = (reply or "").strip()
        if not text or self.is_approval(text):
            return None
        return text

    def is_approval(self, reply: str) -> bool:
        # approval is the token alone on the first line, trailing punctuation allowed
        lines = reply.strip().splitlines()
        if not lines:
            return False
        first_line = lines[0].strip().rstrip(".!")
        return first_line.lower() == self.approval_token.lower()


class AutoReviewHook(CompletionHook):
    name = "auto-code-review"
    priority = 30

    def __init__(
        self,
        reviewer: Reviewer,
        message_store: MessageStore | None = None,
        enabled: bool | Callable[[str], bool] = True,
    ):
        self.reviewer = reviewer
        self.message_store = message_store
        self.enabled = enabled

    def is_enabled(self, task_id: str) -> bool:
        if callable(self.enabled):
            return bool(self.enabled(task_id))
        return bool(self.enabled)

    def should_run(self, context: CompletionHookContext) -> bool:
        return (
            bool(context.task_id)
            and not is_nested_task(context.task_id)
            and self.is_enabled(context.task_id)
        )

    async def run(self, context: CompletionHookContext) -> HookResult:
        task_id = context.task_id
        log.info("Running auto code review", task_id=task_id)
        try:
            review_text = await self.reviewer.review(task_id)
        except Exception as e:
            log.error("Auto code review failed", task_id=task_id, error=str(e))
            return Stop()

        if not review_text:
            log.info("Code review passed", task_id=task_id)
            return Stop()

        log.info("Code review found issues, requesting continuation", task_id=task_id)
        message = user_message(review_text)
        if self.message_store is not None:
            await self.message_store.append(task_id, message)
        return Continue((*context.loop_state.messages, message))
