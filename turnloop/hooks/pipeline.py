"""Ordered completion-hook pipeline."""

import asyncio

from turnloop.exceptions import HookRegistrationError, HookTimeoutError, LoopCancelledError
from turnloop.hooks.base import (
    CompletionHook,
    CompletionHookContext,
    Continue,
    HookResult,
    Skip,
    Stop,
)
from turnloop.logging import get_logger

log = get_logger(__name__)

DEFAULT_HOOK_TIMEOUT_SECONDS = 30.0


class HookPipeline:
    """Runs hooks in ascending priority until one returns Stop or Continue.

    Ties keep registration order. A hook that raises or exceeds the timeout
    counts as Skip. When every hook skips the result is ``Stop()``.
    """

    def __init__(self, timeout_seconds: float = DEFAULT_HOOK_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds
        self._hooks: list[CompletionHook] = []

    def register(self, hook: CompletionHook) -> None:
        name = str(getattr(hook, "name", "") or "").strip()
        if not name:
            raise HookRegistrationError("Hook must have a name")
        if any(existing.name == name for existing in self._hooks):
            raise HookRegistrationError(f"Hook already registered: {name}")
        self._hooks.append(hook)
        # list.sort is stable
        self._hooks.sort(key=lambda h: h.priority)
        log.info("Registered completion hook", hook=name, priority=hook.priority)

    def unregister(self, name: str) -> None:
        before = len(self._hooks)
        self._hooks = [h for h in self._hooks if h.name != name]
        if len(self._hooks) != before:
            log.info("Unregistered completion hook", hook=name)

    def registered_hooks(self) -> list[tuple[str, int]]:
        return [(h.name, h.priority) for h in self._hooks]

    def get(self, name: str) -> CompletionHook | None:
        return next((h for h in self._hooks if h.name == name), None)

    def clear(self) -> None:
        self._hooks = []
        log.info("Cleared completion hooks")

    def build_system_prompt(self, base: str | None, task_id: str) -> str:
        """Join the base prompt with every hook's addendum for ``task_id``."""
        parts = [base] if base else []
        for hook in self._hooks:
            try:
                addendum = hook.system_prompt_addendum(task_id)
            except Exception as e:
                log.error("Hook system prompt failed", hook=hook.name, error=str(e))
                continue
            if addendum:
                parts.append(addendum)
        return "\n\n".join(parts)

    @staticmethod
    def _check_cancelled(context: CompletionHookContext) -> None:
        if context.cancelled:
            raise LoopCancelledError()

    async def run(self, context: CompletionHookContext) -> Stop | Continue:
        log.info(
            "Starting completion hook pipeline",
            task_id=context.task_id,
            iteration=context.iteration,
            hook_count=len(self._hooks),
        )

        for hook in list(self._hooks):
            self._check_cancelled(context)

            try:
                if not hook.should_run(context):
                    log.debug("Skipping hook", hook=hook.name, reason="should_run returned false")
                    continue
            except Exception as e:
                log.error("Hook should_run raised", hook=hook.name, error=str(e))
                continue

            log.info("Running hook", hook=hook.name)
            try:
                result: HookResult = await asyncio.wait_for(
                    hook.run(context), timeout=self.timeout_seconds
                )
            except asyncio.TimeoutError:
                error = HookTimeoutError(hook.name, self.timeout_seconds)
                log.error("Hook timed out", hook=hook.name, error=str(error))
                self._check_cancelled(context)
                continue
            except LoopCancelledError:
                raise
            except Exception as e:
                log.error("Hook raised", hook=hook.name, error=str(e))
                self._check_cancelled(context)
                continue

            self._check_cancelled(context)

            if isinstance(result, Continue):
                if not result.messages:
                    log.warning("Hook requested continue without messages", hook=hook.name)
                log.info("Hook requested continue", hook=hook.name, messages=len(result.messages))
                return result
            if isinstance(result, Stop):
                log.info("Hook requested stop", hook=hook.name, reason=result.reason)
                return result
            if not isinstance(result, Skip):
                log.warning("Hook returned unexpected result", hook=hook.name, result=repr(result))

        log.info("All hooks processed, defaulting to stop")
        return Stop()
