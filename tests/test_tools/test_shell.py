import asyncio
from pathlib import Path

import pytest

from turnloop.config import Config
from turnloop.tools.shell import ShellTool


@pytest.mark.asyncio
async def test_shell_runs_in_workspace_and_reports_exit_code(tmp_path: Path):
    (tmp_path / "marker.txt").write_text("x", encoding="utf-8")
    tool = ShellTool(config=Config())

    result = await tool.execute(command="ls", _workspace=tmp_path)

    assert result.success is True
    assert "marker.txt" in result.content
    assert result.metadata == {"command": "ls", "exit_code": 0}


@pytest.mark.asyncio
async def test_shell_non_zero_exit_is_failure(tmp_path: Path):
    tool = ShellTool(config=Config())

    result = await tool.execute(command="echo broken >&2; exit 3", _workspace=tmp_path)

    assert result.success is False
    assert result.error == "Command exited with code 3"
    assert "[stderr] broken" in result.content
    assert result.metadata["exit_code"] == 3


@pytest.mark.asyncio
async def test_shell_blocks_dangerous_commands(tmp_path: Path):
    tool = ShellTool(config=Config())

    result = await tool.execute(command="rm -rf /", _workspace=tmp_path)

    assert result.success is False
    assert result.error.startswith("Command blocked:")


@pytest.mark.asyncio
async def test_shell_times_out(tmp_path: Path):
    tool = ShellTool(config=Config())

    result = await tool.execute(command="sleep 5", timeout=1, _workspace=tmp_path)

    assert result.success is False
    assert result.error == "Command timed out after 1s"


@pytest.mark.asyncio
async def test_shell_abort_event_kills_command(tmp_path: Path):
    tool = ShellTool(config=Config())
    abort = asyncio.Event()

    async def trigger():
        await asyncio.sleep(0.1)
        abort.set()

    trigger_task = asyncio.create_task(trigger())
    result = await tool.execute(command="sleep 5", _workspace=tmp_path, _abort_event=abort)
    await trigger_task

    assert result.success is False
    assert result.error == "Command aborted"
