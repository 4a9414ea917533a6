"""Agent execution loop: stream, run tools, recover, and defer to completion hooks."""

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Callable

from turnloop.compaction import ContextCompactor, create_compressed_messages, should_compress
from turnloop.config import Config, get_config
from turnloop.exceptions import (
    CompactionIneffectiveError,
    ContextOverflowError,
    LLMError,
    LoopCancelledError,
    UnknownFinishReasonError,
)
from turnloop.hooks.base import (
    UNSUCCESSFUL_STOP_REASONS,
    CompletionHookContext,
    Continue,
    LoopStateView,
    StopReason,
    ToolSummary,
)
from turnloop.hooks.pipeline import HookPipeline
from turnloop.llm import (
    FinishEvent,
    FinishReason,
    LLMProvider,
    TextDelta,
    ToolCallEvent,
    ToolDefinition,
)
from turnloop.logging import get_logger, task_log_context
from turnloop.messages import (
    ToolCallPart,
    ToolResultPart,
    TurnMessage,
    assistant_message,
    tool_message,
)
from turnloop.store.message_store import MessageStore
from turnloop.tools.executor import ToolContext, ToolExecutor
from turnloop.tools.registry import ToolResult

log = get_logger(__name__)

# Finish reasons of a turn that completed normally.
_STOP_CANDIDATE_REASONS = frozenset(
    {FinishReason.STOP, FinishReason.LENGTH, FinishReason.CONTENT_FILTER, FinishReason.TOOL_CALLS}
)


@dataclass
class LoopRequest:
    """Input of one run."""

    task_id: str
    messages: list[TurnMessage]
    model: str = ""
    system_prompt: str | None = None
    tools: list[ToolDefinition] | None = None
    max_turns: int | None = None


@dataclass
class LoopCallbacks:
    on_chunk: Callable[[str], None] | None = None
    on_status: Callable[[str], None] | None = None
    on_tool_message: Callable[[TurnMessage], None] | None = None
    on_error: Callable[[BaseException], None] | None = None
    on_complete: Callable[["LoopResult"], None] | None = None


@dataclass
class LoopState:
    """Mutable state owned by a single run."""

    task_id: str
    messages: list[TurnMessage]
    iteration: int = 1
    turn_count: int = 0
    last_request_tokens: int = 0
    unknown_finish_count: int = 0
    last_finish_reason: str | None = None
    attachments: tuple[dict[str, Any], ...] = ()
    request_text: str = ""
    unknown_finish_signature: str | None = None
    compacted_since_success: bool = False
    round_text: list[str] = field(default_factory=list)
    tool_summaries: list[ToolSummary] = field(default_factory=list)

    def view(self) -> LoopStateView:
        return LoopStateView(
            task_id=self.task_id,
            messages=tuple(self.messages),
            iteration=self.iteration,
            turn_count=self.turn_count,
            last_request_tokens=self.last_request_tokens,
            unknown_finish_count=self.unknown_finish_count,
            last_finish_reason=self.last_finish_reason,
            attachments=self.attachments,
            request_text=self.request_text,
        )

    def start_next_iteration(self, messages: tuple[TurnMessage, ...]) -> None:
        if messages:
            self.messages = list(messages)
        self.last_request_tokens = 0
        self.unknown_finish_count = 0
        self.unknown_finish_signature = None
        self.last_finish_reason = None
        self.round_text = []
        self.tool_summaries = []
        self.iteration += 1


@dataclass
class LoopResult:
    success: bool
    full_text: str
    stop_reason: StopReason
    stop_message: str | None
    iterations: int
    turns: int
    messages: list[TurnMessage]


@dataclass
class _Turn:
    text: str
    tool_calls: list[ToolCallPart]
    reason: FinishReason
    usage: dict[str, int]
    error: str | None = None


def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise LoopCancelledError()


def _emit(callback: Callable[..., None] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception as e:
        log.error("Loop callback failed", callback=getattr(callback, "__name__", repr(callback)), error=str(e))


class AgentLoop:
    """Drives one task through model turns until a hook stops it or an error ends it."""

    def __init__(
        self,
        provider: LLMProvider,
        executor: ToolExecutor,
        pipeline: HookPipeline,
        compactor: ContextCompactor | None = None,
        message_store: MessageStore | None = None,
        config: Config | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.executor = executor
        self.pipeline = pipeline
        self.compactor = compactor
        self.message_store = message_store
        self.config = config or get_config()
        self._clock = clock

    async def run(
        self,
        request: LoopRequest,
        callbacks: LoopCallbacks | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> LoopResult:
        """Run until stop.

        Raises:
            LoopCancelledError: ``cancel_event`` was set.
            UnknownFinishReasonError: repeated unexpected model failures.
            CompactionIneffectiveError: overflow could not be compacted away.
        """
        callbacks = callbacks or LoopCallbacks()
        try:
            with task_log_context(request.task_id):
                result = await self._run(request, callbacks, cancel_event)
        except LoopCancelledError:
            log.info("Agent loop cancelled", task_id=request.task_id)
            raise
        except Exception as e:
            log.error("Agent loop failed", task_id=request.task_id, error=str(e))
            _emit(callbacks.on_error, e)
            raise
        _emit(callbacks.on_complete, result)
        return result

    async def _run(
        self,
        request: LoopRequest,
        callbacks: LoopCallbacks,
        cancel_event: asyncio.Event | None,
    ) -> LoopResult:
        last_user = next((m for m in reversed(request.messages) if m.role == "user"), None)
        state = LoopState(
            task_id=request.task_id,
            messages=list(request.messages),
            attachments=tuple(last_user.attachments or ()) if last_user else (),
            request_text=last_user.text.strip() if last_user else "",
        )
        start_time = self._clock()
        max_turns = request.max_turns or self.config.loop.max_turns
        tools = request.tools if request.tools is not None else self.executor.registry.get_definitions()

        log.info("Starting agent loop", task_id=state.task_id, messages=len(state.messages), max_turns=max_turns)

        while True:
            _check_cancelled(cancel_event)
            if state.turn_count >= max_turns:
                log.warning("Turn limit reached", task_id=state.task_id, max_turns=max_turns)
                return self._finish(
                    state,
                    StopReason.MAX_ITERATIONS,
                    f"Reached the maximum of {max_turns} turns",
                )

            if self._near_context_limit(state):
                await self._compact_ahead_of_turn(state, callbacks)

            state.turn_count += 1
            system_prompt = self.pipeline.build_system_prompt(request.system_prompt, state.task_id)
            _emit(callbacks.on_status, "thinking")
            try:
                turn = await self._stream_turn(state, request.model, system_prompt, tools, callbacks, cancel_event)
            except ContextOverflowError as e:
                await self._recover_from_overflow(state, str(e), callbacks)
                continue
            except LLMError as e:
                await self._record_unexpected_finish(state, FinishReason.ERROR.value, str(e))
                continue

            _check_cancelled(cancel_event)

            if turn.reason == FinishReason.CONTEXT_OVERFLOW:
                await self._recover_from_overflow(state, turn.error or "", callbacks)
                continue
            if turn.reason not in _STOP_CANDIDATE_REASONS:
                await self._record_unexpected_finish(
                    state, turn.reason.value, turn.error or "model returned no usable finish reason"
                )
                continue

            state.unknown_finish_count = 0
            state.unknown_finish_signature = None
            state.compacted_since_success = False
            state.last_finish_reason = turn.reason.value
            if turn.usage:
                state.last_request_tokens = int(
                    turn.usage.get("prompt_tokens") or turn.usage.get("total_tokens") or 0
                )

            if turn.tool_calls:
                await self._run_tool_calls(state, turn, callbacks, cancel_event)
                continue

            if turn.text:
                await self._append(state, assistant_message(turn.text))
                state.round_text.append(turn.text)

            context = CompletionHookContext(
                task_id=state.task_id,
                full_text="\n\n".join(t for t in state.round_text if t),
                tool_summaries=tuple(state.tool_summaries),
                loop_state=state.view(),
                iteration=state.iteration,
                start_time=start_time,
                cancel_event=cancel_event,
            )
            _emit(callbacks.on_status, "running completion hooks")
            decision = await self.pipeline.run(context)

            if isinstance(decision, Continue):
                log.info(
                    "Continuing with next iteration",
                    task_id=state.task_id,
                    iteration=state.iteration + 1,
                    messages=len(decision.messages),
                )
                state.start_next_iteration(decision.messages)
                continue

            return self._finish(
                state,
                decision.reason or StopReason.COMPLETE,
                decision.message,
                full_text=context.full_text,
            )

    async def _stream_turn(
        self,
        state: LoopState,
        model: str,
        system_prompt: str,
        tools: list[ToolDefinition],
        callbacks: LoopCallbacks,
        cancel_event: asyncio.Event | None,
    ) -> _Turn:
        chunks: list[str] = []
        calls: list[ToolCallPart] = []
        finish: FinishEvent | None = None

        stream = self.provider.stream(
            list(state.messages),
            model=model,
            system_prompt=system_prompt or None,
            tools=tools or None,
        )
        async with aclosing(stream):
            async for event in stream:
                _check_cancelled(cancel_event)
                if isinstance(event, TextDelta):
                    chunks.append(event.text)
                    _emit(callbacks.on_chunk, event.text)
                elif isinstance(event, ToolCallEvent):
                    calls.append(ToolCallPart(event.call_id, event.tool_name, dict(event.arguments)))
                elif isinstance(event, FinishEvent):
                    finish = event
                    break

        if finish is None:
            return _Turn("".join(chunks), calls, FinishReason.UNKNOWN, {}, "stream ended without a finish signal")

        reason = finish.reason if isinstance(finish.reason, FinishReason) else FinishReason.parse(finish.reason)
        if reason == FinishReason.STOP and calls:
            reason = FinishReason.TOOL_CALLS
        return _Turn("".join(chunks), calls, reason, dict(finish.usage or {}), finish.error)

    async def _run_tool_calls(
        self,
        state: LoopState,
        turn: _Turn,
        callbacks: LoopCallbacks,
        cancel_event: asyncio.Event | None,
    ) -> None:
        await self._append(state, assistant_message(turn.text, turn.tool_calls))
        if turn.text:
            state.round_text.append(turn.text)
        _check_cancelled(cancel_event)

        observed: dict[str, ToolSummary] = {}

        def on_tool_result(tool_name: str, result: ToolResult, call_id: str) -> None:
            observed[call_id] = ToolSummary(
                tool_name=tool_name,
                call_id=call_id,
                command=result.metadata.get("command"),
                success=result.success,
                output=result.content,
                error=result.error,
            )

        semaphore = asyncio.Semaphore(max(1, self.config.loop.max_parallel_tools))

        async def run_one(call: ToolCallPart) -> ToolResult:
            async with semaphore:
                return await self.executor.execute(
                    call.tool_name,
                    call.arguments,
                    ToolContext(
                        task_id=state.task_id,
                        call_id=call.call_id,
                        cancel_event=cancel_event,
                        on_tool_result=on_tool_result,
                    ),
                )

        _emit(callbacks.on_status, "running tools")
        results = await asyncio.gather(*(run_one(call) for call in turn.tool_calls))
        _check_cancelled(cancel_event)

        # Appended in call order regardless of completion order.
        for call, result in zip(turn.tool_calls, results):
            summary = observed.get(call.call_id) or ToolSummary(
                tool_name=call.tool_name,
                call_id=call.call_id,
                success=result.success,
                output=result.content,
                error=result.error,
            )
            state.tool_summaries.append(summary)
            message = tool_message(
                ToolResultPart(
                    call_id=call.call_id,
                    tool_name=call.tool_name,
                    output=result.render(),
                    is_error=not result.success,
                )
            )
            await self._append(state, message)
            _emit(callbacks.on_tool_message, message)

    def _near_context_limit(self, state: LoopState) -> bool:
        if self.compactor is None or state.last_request_tokens <= 0:
            return False
        return should_compress(
            state.last_request_tokens,
            self.config.model.context_window,
            self.compactor.config,
        )

    async def _compact_ahead_of_turn(self, state: LoopState, callbacks: LoopCallbacks) -> None:
        """Compact once the last prompt crossed the compression threshold.

        An ineffective result leaves the history untouched; overflow
        recovery still applies if the next request is rejected.
        """
        _emit(callbacks.on_status, "compacting context")
        result = await self.compactor.compact(state.messages, last_request_tokens=state.last_request_tokens)
        state.last_request_tokens = 0
        if not result.is_effective:
            log.info("Nothing to compact ahead of turn", task_id=state.task_id)
            return
        state.messages = create_compressed_messages(result)
        log.info(
            "Compacted context ahead of turn",
            task_id=state.task_id,
            messages=len(state.messages),
            ratio=result.compression_ratio,
        )

    async def _recover_from_overflow(self, state: LoopState, detail: str, callbacks: LoopCallbacks) -> None:
        log.warning("Context overflow", task_id=state.task_id, detail=detail[:200])
        if state.compacted_since_success or self.compactor is None:
            raise CompactionIneffectiveError()

        _emit(callbacks.on_status, "compacting context")
        result = await self.compactor.compact(state.messages, last_request_tokens=state.last_request_tokens)
        if not result.is_effective:
            raise CompactionIneffectiveError()

        state.messages = create_compressed_messages(result)
        state.compacted_since_success = True
        state.last_request_tokens = 0
        log.info(
            "Retrying with compacted context",
            task_id=state.task_id,
            messages=len(state.messages),
            ratio=result.compression_ratio,
        )

    async def _record_unexpected_finish(self, state: LoopState, kind: str, message: str) -> None:
        signature = f"{kind}:{message}"
        if signature == state.unknown_finish_signature:
            state.unknown_finish_count += 1
        else:
            state.unknown_finish_signature = signature
            state.unknown_finish_count = 1
        state.last_finish_reason = kind

        retries = self.config.loop.max_unknown_finish_retries
        if state.unknown_finish_count > retries:
            raise UnknownFinishReasonError(kind, message, state.unknown_finish_count)

        log.warning(
            "Unexpected model finish, retrying",
            task_id=state.task_id,
            kind=kind,
            attempt=state.unknown_finish_count,
            max_retries=retries,
            error=message,
        )
        backoff = self.config.loop.retry_backoff_seconds
        if backoff > 0:
            await asyncio.sleep(backoff * state.unknown_finish_count)

    async def _append(self, state: LoopState, message: TurnMessage) -> None:
        state.messages.append(message)
        if self.message_store is not None:
            await self.message_store.append(state.task_id, message)

    def _finish(
        self,
        state: LoopState,
        reason: StopReason,
        message: str | None,
        full_text: str | None = None,
    ) -> LoopResult:
        success = reason not in UNSUCCESSFUL_STOP_REASONS
        log.info(
            "Agent loop finished",
            task_id=state.task_id,
            reason=reason.value,
            success=success,
            iterations=state.iteration,
            turns=state.turn_count,
        )
        return LoopResult(
            success=success,
            full_text=full_text if full_text is not None else "\n\n".join(t for t in state.round_text if t),
            stop_reason=reason,
            stop_message=message,
            iterations=state.iteration,
            turns=state.turn_count,
            messages=list(state.messages),
        )


__all__ = [
    "AgentLoop",
    "LoopCallbacks",
    "LoopRequest",
    "LoopResult",
    "LoopState",
    "LoopStateView",
]
