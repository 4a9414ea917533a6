"""Shell tool for executing commands."""

import asyncio
import os
from pathlib import Path
from typing import Any

from turnloop.config import Config, get_config
from turnloop.logging import get_logger
from turnloop.tools.registry import Tool, ToolResult, is_blocked_shell_command

log = get_logger(__name__)

MAX_OUTPUT_CHARS = 10000


class ShellTool(Tool):
    """Execute shell commands in the task workspace."""

    name = "shell"
    description = (
        "Execute a shell command in the project directory and return its output. "
        "Use it to run tests, linters and type checkers."
    )
    timeout_seconds = 120.0
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute",
            },
            "timeout": {
                "type": "number",
                "description": "Timeout in seconds (optional, default from config)",
            },
        },
        "required": ["command"],
    }

    def __init__(self, config: Config | None = None):
        self.config = config or get_config()
        self.timeout_seconds = float(self.config.tools.shell.timeout or 120)

    def _is_command_safe(self, command: str) -> tuple[bool, str]:
        """Check if command is safe to execute.

        Returns:
            Tuple of (is_safe, reason)
        """
        blocked, matched = is_blocked_shell_command(command, self.config.tools.shell.blocked)
        if blocked:
            if matched == "empty_command":
                return False, "Command is empty"
            if matched == "unparseable_command":
                return False, "Command is not parseable"
            return False, f"Command matches blocked pattern: {matched}"
        return True, ""

    async def execute(self, command: str, timeout: int | None = None, **kwargs: Any) -> ToolResult:
        """Execute a shell command.

        Args:
            command: Shell command to execute
            timeout: Optional timeout override

        Returns:
            ToolResult with command output; metadata carries command and exit_code
        """
        metadata: dict[str, Any] = {"command": command}

        is_safe, reason = self._is_command_safe(command)
        if not is_safe:
            log.warning("Blocked unsafe command", command=command, reason=reason)
            return ToolResult(success=False, error=f"Command blocked: {reason}", metadata=metadata)

        if timeout is None:
            timeout = self.config.tools.shell.timeout
        timeout = max(1, int(timeout))

        abort_event = kwargs.get("_abort_event")
        if isinstance(abort_event, asyncio.Event) and abort_event.is_set():
            return ToolResult(success=False, error="Command aborted", metadata=metadata)

        workspace = kwargs.get("_workspace")
        cwd = str(Path(workspace)) if workspace else None

        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

        log.info("Executing shell command", command=command, timeout=timeout, cwd=cwd)
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
            )
        except OSError as e:
            log.error("Shell command failed to start", command=command, error=str(e))
            return ToolResult(success=False, error=str(e), metadata=metadata)

        communicate_task = asyncio.create_task(process.communicate())
        abort_wait_task: asyncio.Task[bool] | None = None
        if isinstance(abort_event, asyncio.Event):
            abort_wait_task = asyncio.create_task(abort_event.wait())
        try:
            wait_tasks: set[asyncio.Task[Any]] = {communicate_task}
            if abort_wait_task is not None:
                wait_tasks.add(abort_wait_task)
            done, _ = await asyncio.wait(
                wait_tasks,
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if communicate_task in done:
                stdout, stderr = await communicate_task
            else:
                await self._kill(process, communicate_task)
                if abort_wait_task is not None and abort_wait_task in done:
                    return ToolResult(success=False, error="Command aborted", metadata=metadata)
                return ToolResult(
                    success=False,
                    error=f"Command timed out after {timeout}s",
                    metadata=metadata,
                )
        except asyncio.CancelledError:
            await self._kill(process, communicate_task)
            raise
        finally:
            if abort_wait_task is not None and not abort_wait_task.done():
                abort_wait_task.cancel()
                try:
                    await abort_wait_task
                except asyncio.CancelledError:
                    pass

        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()

        output = stdout_text
        if stderr_text:
            output += f"\n[stderr] {stderr_text}"

        if len(output) > MAX_OUTPUT_CHARS:
            output = output[:MAX_OUTPUT_CHARS] + f"\n... [truncated, {len(output)} total chars]"

        metadata["exit_code"] = process.returncode
        success = process.returncode == 0
        return ToolResult(
            success=success,
            content=output or "[no output]",
            error=None if success else f"Command exited with code {process.returncode}",
            metadata=metadata,
        )

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process, communicate_task: asyncio.Task[Any]) -> None:
        if process.returncode is None:
            process.kill()
            await process.wait()
        communicate_task.cancel()
        try:
            await communicate_task
        except asyncio.CancelledError:
            pass
