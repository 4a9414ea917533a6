import pytest

from turnloop.agent import AgentLoop, LoopRequest
from turnloop.config import Config
from turnloop.hooks.base import StopReason
from turnloop.llm import FinishEvent, FinishReason, LLMProvider, TextDelta
from turnloop.messages import user_message
from turnloop.runtime import build_registry, build_runtime
from turnloop.store.file_changes import FileChangeTracker


class OneShotProvider(LLMProvider):
    def __init__(self, text: str = "Done."):
        self.text = text
        self.closed = False

    async def stream(self, messages, model="", system_prompt=None, tools=None):
        yield TextDelta(self.text)
        yield FinishEvent(reason=FinishReason.STOP)

    async def complete(self, messages, system_prompt=None, max_tokens=None):
        return "LGTM"

    def count_tokens(self, text: str) -> int:
        return len(text) // 4

    async def close(self):
        self.closed = True


def _config(tmp_path) -> Config:
    cfg = Config()
    cfg.storage.data_dir = str(tmp_path / "data")
    return cfg


def test_build_registry_registers_enabled_tools_only(tmp_path):
    cfg = _config(tmp_path)
    cfg.tools.enabled = ["read", "shell", "browser"]

    registry = build_registry(cfg, FileChangeTracker(), tmp_path)

    assert registry.list_tools() == ["read", "shell"]
    assert registry.workspace == tmp_path.resolve()


@pytest.mark.asyncio
async def test_runtime_wires_hooks_in_priority_order(tmp_path):
    provider = OneShotProvider()
    runtime = build_runtime(_config(tmp_path), provider=provider, workspace=tmp_path)
    try:
        assert runtime.pipeline.registered_hooks() == [
            ("stop-hook", 10),
            ("ralph-loop", 20),
            ("auto-code-review", 30),
        ]
        assert runtime.registry.list_tools() == ["shell", "read", "write"]
        assert isinstance(runtime.create_loop(), AgentLoop)
    finally:
        await runtime.close()

    assert provider.closed is True


@pytest.mark.asyncio
async def test_runtime_loop_persists_assistant_reply(tmp_path):
    runtime = build_runtime(_config(tmp_path), provider=OneShotProvider("All set."), workspace=tmp_path)
    try:
        prompt = user_message("Say hi")
        await runtime.message_store.append("task-1", prompt)

        result = await runtime.create_loop().run(LoopRequest(task_id="task-1", messages=[prompt]))

        assert result.success is True
        assert result.stop_reason is StopReason.COMPLETE
        assert result.full_text == "All set."
        stored = await runtime.message_store.read_all("task-1")
        assert [(m.role, m.text) for m in stored] == [("user", "Say hi"), ("assistant", "All set.")]
    finally:
        await runtime.close()


@pytest.mark.asyncio
async def test_stop_command_timeout_fits_inside_hook_deadline(tmp_path):
    cfg = _config(tmp_path)
    cfg.hooks.timeout_seconds = 20.0
    cfg.hooks.stop_command_timeout_seconds = 60.0
    runtime = build_runtime(cfg, provider=OneShotProvider(), workspace=tmp_path)
    try:
        assert runtime.pipeline.get("stop-hook").runner.timeout_seconds == 20.0
    finally:
        await runtime.close()
