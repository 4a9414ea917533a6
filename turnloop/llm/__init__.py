"""Model invocation contract and the Ollama streaming provider."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator

import httpx

from turnloop.exceptions import ContextOverflowError, LLMAPIError, LLMError
from turnloop.logging import get_logger
from turnloop.messages import TextPart, ToolCallPart, ToolResultPart, TurnMessage

log = get_logger(__name__)


OLLAMA_NATIVE_BASE_URL = "http://127.0.0.1:11434"

_OVERFLOW_MARKERS = (
    "context length",
    "context window",
    "context_length_exceeded",
    "maximum context",
    "prompt is too long",
    "too many tokens",
)


class FinishReason(str, Enum):
    """Terminal finish signal of one model response."""

    STOP = "stop"
    TOOL_CALLS = "tool-calls"
    LENGTH = "length"
    CONTENT_FILTER = "content-filter"
    CONTEXT_OVERFLOW = "context-overflow"
    ERROR = "error"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "FinishReason":
        raw = str(value or "").strip().lower().replace("_", "-")
        aliases = {"tool-use": "tool-calls", "tool_calls": "tool-calls", "end-turn": "stop"}
        raw = aliases.get(raw, raw)
        for member in cls:
            if member.value == raw:
                return member
        return cls.UNKNOWN


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


@dataclass(frozen=True)
class TextDelta:
    """Incremental assistant text."""

    text: str


@dataclass(frozen=True)
class ToolCallEvent:
    """A tool call announced by the model."""

    call_id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FinishEvent:
    """End of one model response."""

    reason: FinishReason | str
    usage: dict[str, int] = field(default_factory=dict)
    error: str | None = None


StreamEvent = TextDelta | ToolCallEvent | FinishEvent


def is_context_overflow_message(text: str) -> bool:
    lowered = str(text or "").lower()
    return any(marker in lowered for marker in _OVERFLOW_MARKERS)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def stream(
        self,
        messages: list[TurnMessage],
        model: str = "",
        system_prompt: str | None = None,
        tools: list[ToolDefinition] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one response as text deltas, tool calls and a final FinishEvent."""

    @abstractmethod
    async def complete(
        self,
        messages: list[TurnMessage],
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """One-shot text completion without tools."""

    @abstractmethod
    def count_tokens(self, text: str) -> int:
        pass


class OllamaProvider(LLMProvider):
    """Direct Ollama API provider."""

    def __init__(
        self,
        model: str = "llama3.2",
        base_url: str = OLLAMA_NATIVE_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        context_window: int = 65536,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Ollama provider.

        Args:
            model: Ollama model name (e.g., 'llama3.2', 'qwen3:32b')
            base_url: Ollama API base URL
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            context_window: num_ctx passed to the server
            api_key: Optional API key (Ollama usually doesn't need one locally)
            client: Optional preconfigured httpx client
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.context_window = context_window
        self.api_key = api_key

        self.client = client or httpx.AsyncClient(
            timeout=120.0,
            follow_redirects=True,
        )

    def _convert_messages(
        self, messages: list[TurnMessage], system_prompt: str | None
    ) -> list[dict[str, Any]]:
        """Convert turn messages to Ollama format."""
        result: list[dict[str, Any]] = []
        if system_prompt:
            result.append({"role": "system", "content": system_prompt})

        for msg in messages:
            if msg.role == "tool":
                for part in msg.parts:
                    if isinstance(part, ToolResultPart):
                        result.append(
                            {"role": "tool", "content": part.output, "tool_name": part.tool_name}
                        )
                continue

            entry: dict[str, Any] = {"role": msg.role, "content": msg.text}
            calls = [p for p in msg.parts if isinstance(p, ToolCallPart)]
            if msg.role == "assistant" and calls:
                entry["tool_calls"] = [
                    {"function": {"name": c.tool_name, "arguments": dict(c.arguments)}}
                    for c in calls
                ]
            result.append(entry)

        return result

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to Ollama format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {},
                },
            }
            for tool in tools
            if tool.name
        ]

    def _build_body(
        self,
        messages: list[TurnMessage],
        model: str,
        system_prompt: str | None,
        tools: list[ToolDefinition] | None,
        stream: bool,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        options: dict[str, Any] = {
            "num_ctx": self.context_window,
            "temperature": self.temperature,
        }
        if max_tokens or self.max_tokens:
            options["num_predict"] = max_tokens or self.max_tokens

        body: dict[str, Any] = {
            "model": model or self.model,
            "messages": self._convert_messages(messages, system_prompt),
            "stream": stream,
            "options": options,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
        return body

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _raise_for_status(status_code: int, error_text: str) -> None:
        if is_context_overflow_message(error_text):
            raise ContextOverflowError(f"Ollama rejected prompt: {error_text}")
        raise LLMAPIError(
            f"Ollama API error {status_code}: {error_text}",
            status_code=status_code,
        )

    async def stream(
        self,
        messages: list[TurnMessage],
        model: str = "",
        system_prompt: str | None = None,
        tools: list[ToolDefinition] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a completion as StreamEvents."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, model, system_prompt, tools, stream=True)

        saw_tool_call = False
        call_index = 0
        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    self._raise_for_status(response.status_code, error_text)

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError:
                        log.debug("Skipping malformed stream line", line=line[:200])
                        continue

                    if chunk.get("error"):
                        error_text = str(chunk["error"])
                        if is_context_overflow_message(error_text):
                            yield FinishEvent(reason=FinishReason.CONTEXT_OVERFLOW, error=error_text)
                        else:
                            yield FinishEvent(reason=FinishReason.ERROR, error=error_text)
                        return

                    message = chunk.get("message") or {}
                    if message.get("content"):
                        yield TextDelta(message["content"])
                    for tc in message.get("tool_calls") or []:
                        function = tc.get("function") or {}
                        arguments = function.get("arguments") or {}
                        if isinstance(arguments, str):
                            try:
                                arguments = json.loads(arguments)
                            except json.JSONDecodeError:
                                arguments = {"raw": arguments}
                        call_index += 1
                        saw_tool_call = True
                        yield ToolCallEvent(
                            call_id=str(tc.get("id") or f"ollama_call_{call_index}"),
                            tool_name=str(function.get("name", "")),
                            arguments=dict(arguments),
                        )

                    if chunk.get("done"):
                        prompt_tokens = int(chunk.get("prompt_eval_count", 0) or 0)
                        completion_tokens = int(chunk.get("eval_count", 0) or 0)
                        usage = {
                            "prompt_tokens": prompt_tokens,
                            "completion_tokens": completion_tokens,
                            "total_tokens": prompt_tokens + completion_tokens,
                        }
                        if saw_tool_call:
                            reason: FinishReason | str = FinishReason.TOOL_CALLS
                        else:
                            reason = chunk.get("done_reason") or FinishReason.STOP
                        yield FinishEvent(reason=reason, usage=usage)
                        return

        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama streaming error: {e}")

        yield FinishEvent(reason=FinishReason.UNKNOWN, error="stream ended without done signal")

    async def complete(
        self,
        messages: list[TurnMessage],
        system_prompt: str | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Generate a non-streaming text completion."""
        url = f"{self.base_url}/api/chat"
        body = self._build_body(messages, "", system_prompt, None, stream=False, max_tokens=max_tokens)

        try:
            log.debug("Calling Ollama", model=self.model, url=url, msg_count=len(body["messages"]))
            response = await self.client.post(url, json=body, headers=self._headers())
            if not response.is_success:
                self._raise_for_status(response.status_code, response.text)
            data = response.json()
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Ollama HTTP error: {e}")
        except json.JSONDecodeError as e:
            raise LLMError(f"Ollama response decode error: {e}")

        return str((data.get("message") or {}).get("content", ""))

    def count_tokens(self, text: str) -> int:
        """Count tokens (rough estimate for Ollama models)."""
        # ~1 token per 4 characters for English
        return len(text) // 4

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


def estimate_message_tokens(provider: LLMProvider, messages: list[TurnMessage]) -> int:
    total = 0
    for message in messages:
        for part in message.parts:
            if isinstance(part, TextPart):
                total += provider.count_tokens(part.text)
            elif isinstance(part, ToolCallPart):
                total += provider.count_tokens(part.tool_name + json.dumps(part.arguments))
            else:
                total += provider.count_tokens(part.output)
    return total


def create_provider(
    provider: str = "ollama",
    model: str = "llama3.2",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    context_window: int = 65536,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (only "ollama" ships with turnloop)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens
        context_window: Context size requested from the server

    Returns:
        Configured LLMProvider instance
    """
    if provider == "ollama":
        return OllamaProvider(
            model=model,
            base_url=base_url or OLLAMA_NATIVE_BASE_URL,
            temperature=temperature,
            max_tokens=max_tokens,
            context_window=context_window,
            api_key=api_key,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'ollama' or inject a provider.")


# Global provider instance
_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider instance."""
    global _provider
    if _provider is None:
        from turnloop.config import get_config
        cfg = get_config()
        _provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            context_window=cfg.model.context_window,
            api_key=cfg.model.api_key or None,
            base_url=cfg.model.base_url or None,
        )
    return _provider


def set_provider(provider: LLMProvider | None) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider
