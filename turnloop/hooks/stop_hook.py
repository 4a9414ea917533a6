"""Stop hook: user-configured shell commands that may veto stopping.

Each command receives a JSON payload on stdin. Exit code 2 blocks with
stderr as the reason; exit code 0 with JSON stdout such as
``{"decision": "block", "reason": "..."}`` blocks as well. Any other outcome
lets the run stop.
"""

import asyncio
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from turnloop.hooks.base import (
    CompletionHook,
    CompletionHookContext,
    Continue,
    HookResult,
    Skip,
    is_nested_task,
)
from turnloop.logging import get_logger
from turnloop.messages import user_message
from turnloop.store.message_store import MessageStore

log = get_logger(__name__)

HOOK_BLOCK_EXIT_CODE = 2
DEFAULT_TIMEOUT_SECONDS = 60.0
PROJECT_DIR_ENV = "TURNLOOP_PROJECT_DIR"


@dataclass
class StopCommandResult:
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""


@dataclass
class StopCommandOutcome:
    blocked: bool = False
    reason: str | None = None


def _parse_json_output(stdout: str) -> dict[str, Any] | None:
    trimmed = stdout.strip()
    if not (trimmed.startswith("{") and trimmed.endswith("}")):
        return None
    try:
        data = json.loads(trimmed)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


class StopCommandRunner:
    """Runs stop commands concurrently and folds their verdicts."""

    def __init__(
        self,
        commands: list[str],
        cwd: Path | str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.commands = [c for c in (str(cmd).strip() for cmd in commands) if c]
        self.cwd = Path(cwd or Path.cwd()).resolve()
        self.timeout_seconds = timeout_seconds

    async def _execute(self, command: str, payload: str) -> StopCommandResult:
        env = os.environ.copy()
        env[PROJECT_DIR_ENV] = str(self.cwd)
        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.cwd),
            env=env,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(payload.encode("utf-8")), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            log.warning("Stop command timed out", command=command, timeout=self.timeout_seconds)
            return StopCommandResult(command, exit_code=-1, stderr="timed out")
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        return StopCommandResult(
            command,
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def run(self, payload: dict[str, Any]) -> StopCommandOutcome:
        outcome = StopCommandOutcome()
        if not self.commands:
            return outcome

        data = json.dumps(payload)
        results = await asyncio.gather(
            *(self._execute(cmd, data) for cmd in self.commands), return_exceptions=True
        )

        reasons: list[str] = []
        for command, result in zip(self.commands, results):
            if isinstance(result, BaseException):
                log.error("Stop command failed to run", command=command, error=str(result))
                continue
            if result.exit_code == HOOK_BLOCK_EXIT_CODE:
                outcome.blocked = True
                reasons.append(result.stderr.strip() or "Stop hook blocked execution.")
            elif result.exit_code == 0:
                output = _parse_json_output(result.stdout)
                if output and output.get("decision") in ("block", "deny"):
                    outcome.blocked = True
                    reason = str(output.get("reason") or "").strip()
                    if reason:
                        reasons.append(reason)
            else:
                log.warning(
                    "Stop command exited non-zero",
                    command=command,
                    exit_code=result.exit_code,
                    stderr=result.stderr.strip()[:500],
                )

        if reasons:
            outcome.reason = "\n".join(reasons)
        return outcome


class StopHook(CompletionHook):
    name = "stop-hook"
    priority = 10

    def __init__(self, runner: StopCommandRunner, message_store: MessageStore | None = None):
        self.runner = runner
        self.message_store = message_store
        self._active: dict[str, bool] = {}

    def should_run(self, context: CompletionHookContext) -> bool:
        return bool(context.task_id) and not is_nested_task(context.task_id)

    def is_active(self, task_id: str) -> bool:
        """True after a block, until the commands let the task stop."""
        return self._active.get(task_id, False)

    async def run(self, context: CompletionHookContext) -> HookResult:
        task_id = context.task_id
        log.info("Running stop hook", task_id=task_id)
        payload = {
            "hook_event_name": "Stop",
            "task_id": task_id,
            "stop_hook_active": self.is_active(task_id),
            "cwd": str(self.runner.cwd),
        }

        try:
            outcome = await self.runner.run(payload)
        except Exception as e:
            log.error("Stop hook failed", task_id=task_id, error=str(e))
            return Skip()

        if not outcome.blocked:
            self._active.pop(task_id, None)
            log.info("Stop hook passed", task_id=task_id)
            return Skip()

        self._active[task_id] = True
        log.info("Stop hook blocked stopping", task_id=task_id, reason=outcome.reason)
        if not outcome.reason:
            return Continue(())

        message = user_message(outcome.reason)
        if self.message_store is not None:
            await self.message_store.append(task_id, message)
        return Continue((*context.loop_state.messages, message))
