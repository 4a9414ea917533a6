import json

import pytest

from turnloop.compaction import (
    COMPACTED_MESSAGES_FILE,
    SUMMARY_HEADER,
    CompressionConfig,
    ContextCompactor,
    compact_task_context,
    create_compressed_messages,
    find_split_index,
    model_summarizer,
    should_compress,
)
from turnloop.instructions import InstructionLoader
from turnloop.messages import (
    ToolCallPart,
    ToolResultPart,
    TurnMessage,
    assistant_message,
    orphaned_tool_results,
    tool_message,
    user_message,
)
from turnloop.store.artifacts import ArtifactStore


class FakeMessageStore:
    def __init__(self, messages: list[TurnMessage] | None = None):
        self.messages = list(messages or [])

    async def read_all(self, task_id: str) -> list[TurnMessage]:
        return list(self.messages)


class BrokenMessageStore:
    async def read_all(self, task_id: str) -> list[TurnMessage]:
        raise OSError("database is locked")


class CompletingProvider:
    def __init__(self, reply: str = "Model summary."):
        self.reply = reply
        self.calls: list[dict] = []

    async def complete(self, messages, system_prompt=None, max_tokens=None):
        self.calls.append({"messages": messages, "system_prompt": system_prompt, "max_tokens": max_tokens})
        return self.reply


def _tool_exchange(call_id: str, command: str, output: str = "ok") -> list[TurnMessage]:
    return [
        assistant_message("", [ToolCallPart(call_id, "shell", {"command": command})]),
        tool_message(ToolResultPart(call_id, "shell", output)),
    ]


def _history() -> list[TurnMessage]:
    return [
        user_message("Fix the flaky parser test"),
        *_tool_exchange("c1", "pytest -q tests/test_parser.py", "1 failed"),
        assistant_message("", [ToolCallPart("c2", "write", {"path": "src/parser.py", "content": "x"})]),
        tool_message(ToolResultPart("c2", "write", "Written 1 chars")),
        assistant_message("Patched the parser."),
        user_message("Now run the whole suite"),
        *_tool_exchange("c3", "pytest -q", "12 passed"),
        assistant_message("All green."),
    ]


def test_should_compress_uses_threshold():
    config = CompressionConfig(compression_threshold=0.8)

    assert should_compress(800, 1000, config) is True
    assert should_compress(799, 1000, config) is False
    assert should_compress(10, 0, config) is False


def test_split_never_orphans_tool_results():
    messages = _history()

    # a two-message tail would start on the tool result of c3
    split = find_split_index(messages, 2)

    assert split == len(messages) - 3
    assert orphaned_tool_results(messages[split:]) == []
    assert find_split_index(messages, 100) == 0


@pytest.mark.asyncio
async def test_compaction_summarizes_old_and_keeps_tail():
    compactor = ContextCompactor(CompressionConfig(preserve_recent_messages=3))
    messages = _history()

    result = await compactor.compact(messages)

    assert result.is_effective is True
    assert result.preserved_messages == messages[-3:]
    assert result.original_message_count == len(messages)
    assert result.compressed_message_count == 4
    assert result.compressed_summary.startswith("Key points from earlier conversation:")
    titles = {section.title: section.items for section in result.sections}
    assert titles["User requests"] == ["Fix the flaky parser test", "Now run the whole suite"]
    assert "shell [ok] pytest -q tests/test_parser.py" in titles["Tool activity"]
    assert titles["Files touched"] == ["src/parser.py"]

    compressed = create_compressed_messages(result)
    assert compressed[0].role == "user"
    assert compressed[0].text.startswith(SUMMARY_HEADER)
    assert "### Files touched" in compressed[0].text
    assert compressed[1:] == messages[-3:]
    assert orphaned_tool_results(compressed) == []


@pytest.mark.asyncio
async def test_compaction_keeps_system_messages_in_front():
    system = TurnMessage(role="system", content="You are careful.")
    messages = [system, *_history()]
    compactor = ContextCompactor(CompressionConfig(preserve_recent_messages=2))

    result = await compactor.compact(messages)
    compressed = create_compressed_messages(result)

    assert compressed[0] is system
    assert compressed[1].text.startswith(SUMMARY_HEADER)
    assert "You are careful." not in compressed[1].text


@pytest.mark.asyncio
async def test_compaction_with_nothing_old_is_ineffective():
    compactor = ContextCompactor(CompressionConfig(preserve_recent_messages=50))
    messages = _history()

    result = await compactor.compact(messages)

    assert result.is_effective is False
    assert create_compressed_messages(result) == messages


@pytest.mark.asyncio
async def test_model_summarizer_is_used_and_failures_fall_back(tmp_path):
    provider = CompletingProvider("Parser fixed; suite was requested.")
    loader = InstructionLoader(personal_dir=tmp_path)
    compactor = ContextCompactor(
        CompressionConfig(preserve_recent_messages=3, summary_max_tokens=512),
        summarizer=model_summarizer(provider, loader, max_tokens=512),
    )

    result = await compactor.compact(_history())

    assert result.compressed_summary == "Parser fixed; suite was requested."
    call = provider.calls[0]
    assert call["max_tokens"] == 512
    assert "Fix the flaky parser test" in call["messages"][0].text

    async def failing(messages):
        raise RuntimeError("provider down")

    fallback = await ContextCompactor(CompressionConfig(preserve_recent_messages=3), failing).compact(_history())
    assert fallback.compressed_summary.startswith("Key points from earlier conversation:")


@pytest.mark.asyncio
async def test_compact_task_context_writes_artifact(tmp_path):
    artifacts = ArtifactStore(tmp_path / "artifacts")
    store = FakeMessageStore(_history())
    compactor = ContextCompactor(CompressionConfig(preserve_recent_messages=3))

    result = await compact_task_context("task-1", store, artifacts, compactor)

    assert result.success is True
    assert result.message.startswith("Context compacted successfully. Reduced to 4 messages")
    assert len(result.compressed_messages) == 4

    raw = await artifacts.read_file("context", "task-1", COMPACTED_MESSAGES_FILE)
    data = json.loads(raw)
    assert data["sourceMessageCount"] == len(_history())
    restored = [TurnMessage.from_dict(m) for m in data["messages"]]
    assert restored[0].text.startswith(SUMMARY_HEADER)
    assert [m.role for m in restored[1:]] == ["assistant", "tool", "assistant"]


@pytest.mark.asyncio
async def test_compact_task_context_reports_problems(tmp_path):
    artifacts = ArtifactStore(tmp_path)
    compactor = ContextCompactor(CompressionConfig(preserve_recent_messages=3))

    no_task = await compact_task_context("", FakeMessageStore(), artifacts, compactor)
    empty = await compact_task_context("task-1", FakeMessageStore(), artifacts, compactor)
    small = await compact_task_context("task-1", FakeMessageStore([user_message("hi")]), artifacts, compactor)
    broken = await compact_task_context("task-1", BrokenMessageStore(), artifacts, compactor)

    assert no_task.success is False and no_task.error == "No active task - cannot compact context"
    assert empty.message == "No messages to compact"
    assert small.message == "No compression needed - context is already compact"
    assert broken.error == "Failed to compact context: database is locked"
    assert await artifacts.read_file("context", "task-1", COMPACTED_MESSAGES_FILE) is None
