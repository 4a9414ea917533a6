import json

import httpx
import pytest

from turnloop.exceptions import ContextOverflowError, LLMAPIError
from turnloop.llm import (
    FinishEvent,
    FinishReason,
    OllamaProvider,
    TextDelta,
    ToolCallEvent,
    ToolDefinition,
)
from turnloop.messages import ToolCallPart, ToolResultPart, assistant_message, tool_message, user_message


def _ndjson(*chunks: dict) -> bytes:
    return "\n".join(json.dumps(c) for c in chunks).encode("utf-8") + b"\n"


def _provider(handler) -> OllamaProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaProvider(model="qwen3:8b", base_url="http://ollama.test", client=client)


async def _collect(provider: OllamaProvider, **kwargs) -> list:
    return [event async for event in provider.stream([user_message("hi")], **kwargs)]


@pytest.mark.asyncio
async def test_stream_yields_text_and_stop_with_usage():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            content=_ndjson(
                {"message": {"content": "Hel"}},
                {"message": {"content": "lo"}},
                {"done": True, "done_reason": "stop", "prompt_eval_count": 12, "eval_count": 3},
            ),
        )

    provider = _provider(handler)
    events = await _collect(provider, system_prompt="Be brief.")
    await provider.close()

    assert events[:2] == [TextDelta("Hel"), TextDelta("lo")]
    finish = events[-1]
    assert isinstance(finish, FinishEvent)
    assert FinishReason.parse(finish.reason) is FinishReason.STOP
    assert finish.usage == {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15}

    body = seen[0]
    assert body["stream"] is True
    assert body["model"] == "qwen3:8b"
    assert body["messages"][0] == {"role": "system", "content": "Be brief."}
    assert body["options"]["num_ctx"] == 65536


@pytest.mark.asyncio
async def test_stream_reports_tool_calls():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["tools"][0]["function"]["name"] == "shell"
        return httpx.Response(
            200,
            content=_ndjson(
                {
                    "message": {
                        "content": "",
                        "tool_calls": [
                            {"function": {"name": "shell", "arguments": {"command": "pytest -q"}}},
                            {"id": "abc", "function": {"name": "read", "arguments": '{"path": "a.py"}'}},
                        ],
                    }
                },
                {"done": True, "done_reason": "stop"},
            ),
        )

    provider = _provider(handler)
    tools = [ToolDefinition(name="shell", description="Run", parameters={"type": "object"})]
    events = await _collect(provider, tools=tools)
    await provider.close()

    assert events[0] == ToolCallEvent("ollama_call_1", "shell", {"command": "pytest -q"})
    assert events[1] == ToolCallEvent("abc", "read", {"path": "a.py"})
    assert events[2].reason is FinishReason.TOOL_CALLS


@pytest.mark.asyncio
async def test_stream_error_chunks_become_finish_events():
    def overflow(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_ndjson({"error": "prompt is too long for context window"}))

    def failure(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_ndjson({"error": "model crashed"}))

    def truncated(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_ndjson({"message": {"content": "partial"}}))

    overflow_events = await _collect(_provider(overflow))
    failure_events = await _collect(_provider(failure))
    truncated_events = await _collect(_provider(truncated))

    assert overflow_events[-1].reason is FinishReason.CONTEXT_OVERFLOW
    assert failure_events[-1].reason is FinishReason.ERROR
    assert failure_events[-1].error == "model crashed"
    assert truncated_events[-1].reason is FinishReason.UNKNOWN


@pytest.mark.asyncio
async def test_stream_http_errors_raise():
    def rejected(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, content=b"maximum context length exceeded")

    def unauthorized(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, content=b"bad key")

    with pytest.raises(ContextOverflowError):
        await _collect(_provider(rejected))
    with pytest.raises(LLMAPIError) as exc_info:
        await _collect(_provider(unauthorized))
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_complete_sends_tool_history_and_returns_text():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"message": {"role": "assistant", "content": "LGTM"}})

    provider = _provider(handler)
    history = [
        user_message("check"),
        assistant_message("", [ToolCallPart("c1", "shell", {"command": "ls"})]),
        tool_message(ToolResultPart("c1", "shell", "a.py")),
    ]
    text = await provider.complete(history, system_prompt="Review.", max_tokens=256)
    await provider.close()

    assert text == "LGTM"
    body = seen[0]
    assert body["stream"] is False
    assert body["options"]["num_predict"] == 256
    assert body["messages"][2]["tool_calls"] == [{"function": {"name": "shell", "arguments": {"command": "ls"}}}]
    assert body["messages"][3] == {"role": "tool", "content": "a.py", "tool_name": "shell"}
