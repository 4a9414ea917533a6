"""Context compaction: summarize older history, keep the recent tail verbatim."""

import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from turnloop.config import CompactionConfig, get_config
from turnloop.instructions import InstructionLoader, get_instruction_loader
from turnloop.logging import get_logger
from turnloop.messages import (
    TextPart,
    ToolCallPart,
    ToolResultPart,
    TurnMessage,
    orphaned_tool_results,
)

log = get_logger(__name__)

Summarizer = Callable[[list[TurnMessage]], Awaitable[str]]

CONTEXT_NAMESPACE = "context"
COMPACTED_MESSAGES_FILE = "compacted-messages.json"
SUMMARY_HEADER = "Conversation summary of earlier messages (compacted memory):"

_FILE_ARGUMENT_KEYS = ("path", "file_path", "filename")


@dataclass
class CompressionConfig:
    preserve_recent_messages: int = 6
    compression_threshold: float = 0.8
    summary_max_tokens: int = 2048

    @classmethod
    def from_config(cls, section: CompactionConfig) -> "CompressionConfig":
        return cls(
            preserve_recent_messages=section.preserve_recent_messages,
            compression_threshold=section.compression_threshold,
            summary_max_tokens=section.summary_max_tokens,
        )


@dataclass
class CompactionSection:
    """Deterministically extracted facts about the compacted history."""

    title: str
    items: list[str] = field(default_factory=list)


@dataclass
class CompactionResult:
    compressed_summary: str
    sections: list[CompactionSection]
    preserved_messages: list[TurnMessage]
    original_message_count: int
    compressed_message_count: int
    compression_ratio: float
    retained_system_messages: list[TurnMessage] = field(default_factory=list)

    @property
    def is_effective(self) -> bool:
        """False when compaction produced neither a summary nor any section."""
        return bool(self.compressed_summary.strip()) or bool(self.sections)


def should_compress(tokens: int, context_window: int, config: CompressionConfig) -> bool:
    """Whether ``tokens`` has crossed the compression threshold of the window."""
    if context_window <= 0:
        return False
    return tokens >= int(context_window * config.compression_threshold)


def estimate_tokens(messages: list[TurnMessage]) -> int:
    # ~1 token per 4 characters
    total = 0
    for message in messages:
        for part in message.parts:
            if isinstance(part, TextPart):
                total += len(part.text)
            elif isinstance(part, ToolCallPart):
                total += len(part.tool_name) + len(json.dumps(part.arguments))
            else:
                total += len(part.output)
    return total // 4


def find_split_index(messages: list[TurnMessage], preserve_recent: int) -> int:
    """Index where the verbatim tail starts.

    Moves earlier until the tail holds no tool result whose call is outside it.
    """
    split = max(0, len(messages) - max(0, preserve_recent))
    while split > 0 and orphaned_tool_results(messages[split:]):
        split -= 1
    return split


def _snippet(text: str, limit: int) -> str:
    cleaned = re.sub(r"\s+", " ", str(text or "").strip())
    if len(cleaned) > limit:
        return cleaned[:limit].rstrip() + "..."
    return cleaned


def _format_compaction_messages(
    messages: list[TurnMessage],
    max_total_chars: int = 24000,
    max_item_chars: int = 600,
) -> str:
    """Format messages for the summarization prompt."""
    lines: list[str] = []
    consumed = 0
    for idx, msg in enumerate(messages, start=1):
        for part in msg.parts:
            if isinstance(part, TextPart):
                label = f"{idx}. {msg.role}"
                content = _snippet(part.text, max_item_chars)
            elif isinstance(part, ToolCallPart):
                label = f"{idx}. {msg.role}(call {part.tool_name})"
                content = _snippet(json.dumps(part.arguments), max_item_chars)
            else:
                status = "error" if part.is_error else "ok"
                label = f"{idx}. tool({part.tool_name}, {status})"
                content = _snippet(part.output, max_item_chars)
            if not content:
                continue
            line = f"{label}: {content}"
            if consumed + len(line) > max_total_chars:
                lines.append("[... older conversation excerpt truncated for compaction ...]")
                return "\n".join(lines)
            lines.append(line)
            consumed += len(line)
    return "\n".join(lines)


def _fallback_compaction_summary(messages: list[TurnMessage]) -> str:
    """Deterministic summary when the model summarizer is absent or fails."""
    if not messages:
        return ""
    highlights: list[str] = []
    for msg in messages[-8:]:
        content = _snippet(msg.text, 180)
        if not content:
            continue
        highlights.append(f"- {msg.role}: {content}")
    if not highlights:
        return "Prior conversation compacted."
    return "Key points from earlier conversation:\n" + "\n".join(highlights)


def _build_sections(messages: list[TurnMessage]) -> list[CompactionSection]:
    requests: list[str] = []
    tool_lines: list[str] = []
    files: list[str] = []
    calls: dict[str, ToolCallPart] = {}

    for msg in messages:
        if msg.role == "user":
            text = _snippet(msg.text, 200)
            if text:
                requests.append(text)
        for part in msg.parts:
            if isinstance(part, ToolCallPart):
                calls[part.call_id] = part
                for key in _FILE_ARGUMENT_KEYS:
                    value = part.arguments.get(key)
                    if isinstance(value, str) and value.strip() and value.strip() not in files:
                        files.append(value.strip())
            elif isinstance(part, ToolResultPart):
                call = calls.get(part.call_id)
                detail = ""
                if call is not None:
                    target = call.arguments.get("command") or next(
                        (call.arguments.get(k) for k in _FILE_ARGUMENT_KEYS if call.arguments.get(k)),
                        "",
                    )
                    detail = _snippet(str(target), 120)
                status = "failed" if part.is_error else "ok"
                line = f"{part.tool_name} [{status}]"
                if detail:
                    line += f" {detail}"
                tool_lines.append(line)

    sections: list[CompactionSection] = []
    if requests:
        sections.append(CompactionSection("User requests", requests[-10:]))
    if tool_lines:
        sections.append(CompactionSection("Tool activity", tool_lines[-20:]))
    if files:
        sections.append(CompactionSection("Files touched", files[-30:]))
    return sections


def _empty_result(messages: list[TurnMessage]) -> CompactionResult:
    return CompactionResult(
        compressed_summary="",
        sections=[],
        preserved_messages=list(messages),
        original_message_count=len(messages),
        compressed_message_count=len(messages),
        compression_ratio=1.0,
    )


async def compact_messages(
    messages: list[TurnMessage],
    config: CompressionConfig,
    summarizer: Summarizer | None = None,
    last_request_tokens: int = 0,
) -> CompactionResult:
    """Summarize everything but the recent tail.

    System messages are never summarized; they are carried to the front of
    the compacted history. Returns an ineffective result (no summary, no
    sections) when there is nothing older than the tail.
    """
    system_messages = [m for m in messages if m.role == "system"]
    conversation = [m for m in messages if m.role != "system"]

    split = find_split_index(conversation, config.preserve_recent_messages)
    old, tail = conversation[:split], conversation[split:]
    if not old:
        return _empty_result(messages)

    sections = _build_sections(old)
    summary = ""
    if summarizer is not None:
        try:
            summary = (await summarizer(old)).strip()
        except Exception as e:
            log.warning("Compaction summarization failed, using fallback", error=str(e))
    if not summary:
        summary = _fallback_compaction_summary(old)

    result = CompactionResult(
        compressed_summary=summary,
        sections=sections,
        preserved_messages=tail,
        original_message_count=len(messages),
        compressed_message_count=len(system_messages) + 1 + len(tail),
        compression_ratio=1.0,
        retained_system_messages=system_messages,
    )
    before = last_request_tokens if last_request_tokens > 0 else estimate_tokens(messages)
    after = estimate_tokens(create_compressed_messages(result))
    result.compression_ratio = round(after / before, 4) if before > 0 else 1.0

    log.info(
        "Context compacted",
        original_messages=len(messages),
        compacted_messages=len(old),
        kept_messages=len(tail),
        before_tokens=before,
        after_tokens=after,
    )
    return result


def render_summary(result: CompactionResult) -> str:
    lines = [SUMMARY_HEADER, result.compressed_summary.strip()]
    for section in result.sections:
        lines.append("")
        lines.append(f"### {section.title}")
        lines.extend(f"- {item}" for item in section.items)
    return "\n".join(lines).strip()


def create_compressed_messages(result: CompactionResult) -> list[TurnMessage]:
    """Summary user message followed by the preserved tail."""
    if not result.is_effective:
        return [*result.retained_system_messages, *result.preserved_messages]
    summary = TurnMessage(role="user", content=render_summary(result))
    return [*result.retained_system_messages, summary, *result.preserved_messages]


def model_summarizer(
    provider: Any,
    loader: InstructionLoader | None = None,
    max_tokens: int = 2048,
) -> Summarizer:
    """Summarizer backed by ``provider.complete`` and the compaction prompts."""
    instructions = loader or get_instruction_loader()

    async def _summarize(messages: list[TurnMessage]) -> str:
        formatted = _format_compaction_messages(messages)
        if not formatted.strip():
            return ""
        prompt = instructions.render("compaction_summary_user_prompt.md", formatted=formatted)
        return await provider.complete(
            [TurnMessage(role="user", content=prompt)],
            system_prompt=instructions.load("compaction_summary_system_prompt.md"),
            max_tokens=max_tokens,
        )

    return _summarize


class ContextCompactor:
    """Holds compaction settings and the summarizer for the agent loop."""

    def __init__(
        self,
        config: CompressionConfig | None = None,
        summarizer: Summarizer | None = None,
    ):
        self.config = config or CompressionConfig.from_config(get_config().compaction)
        self.summarizer = summarizer

    async def compact(
        self, messages: list[TurnMessage], last_request_tokens: int = 0
    ) -> CompactionResult:
        return await compact_messages(
            messages,
            self.config,
            summarizer=self.summarizer,
            last_request_tokens=last_request_tokens,
        )


@dataclass
class ManualCompactionResult:
    success: bool
    message: str
    error: str | None = None
    compressed_messages: list[TurnMessage] | None = None
    compression_ratio: float | None = None


async def compact_task_context(
    task_id: str,
    message_store: Any,
    artifact_store: Any,
    compactor: ContextCompactor | None = None,
) -> ManualCompactionResult:
    """Compact a task's persisted history on demand.

    The compacted history is written to the ``context`` namespace as
    ``compacted-messages.json``; the message store itself stays append-only.
    """
    if not task_id:
        error = "No active task - cannot compact context"
        return ManualCompactionResult(success=False, message=error, error=error)

    try:
        messages = await message_store.read_all(task_id)
        if not messages:
            return ManualCompactionResult(success=False, message="No messages to compact")

        compactor = compactor or ContextCompactor()
        result = await compactor.compact(messages)
        if not result.is_effective:
            return ManualCompactionResult(
                success=False,
                message="No compression needed - context is already compact",
            )

        compressed = create_compressed_messages(result)
        data = {
            "messages": [m.to_dict() for m in compressed],
            "sourceMessageCount": len(messages),
            "lastRequestTokens": 0,
            "updatedAt": int(time.time() * 1000),
        }
        await artifact_store.write_file(
            CONTEXT_NAMESPACE, task_id, COMPACTED_MESSAGES_FILE, json.dumps(data)
        )
    except Exception as e:
        log.error("Manual compaction failed", task_id=task_id, error=str(e))
        error = f"Failed to compact context: {e}"
        return ManualCompactionResult(success=False, message=error, error=error)

    reduction = (1 - result.compression_ratio) * 100
    return ManualCompactionResult(
        success=True,
        message=(
            f"Context compacted successfully. Reduced to {result.compressed_message_count} "
            f"messages ({reduction:.1f}% reduction)"
        ),
        compressed_messages=compressed,
        compression_ratio=result.compression_ratio,
    )
