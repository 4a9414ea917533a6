import json
from pathlib import Path

import pytest

from turnloop.config import Config, RalphConfig
from turnloop.hooks.base import (
    CompletionHookContext,
    Continue,
    LoopStateView,
    Stop,
    StopReason,
    ToolSummary,
)
from turnloop.hooks.ralph import CONTEXT_NAMESPACE, IterationStateFile, RalphLoopHook
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
from turnloop.store.file_changes import FileChangeTracker
from turnloop.store.task_settings import TaskSettingsResolver

START = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = START + 10):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _hook(tmp_path: Path, clock: FakeClock | None = None, **overrides) -> RalphLoopHook:
    settings = TaskSettingsResolver(Config())
    settings.set_autonomy("task-1", True)
    return RalphLoopHook(
        ArtifactStore(tmp_path / "artifacts"),
        FileChangeTracker(),
        settings,
        config=RalphConfig(**overrides),
        instructions=InstructionLoader(personal_dir=tmp_path / "no-personal"),
        clock=clock or FakeClock(),
    )


def _context(
    text: str,
    iteration: int = 1,
    summaries: tuple[ToolSummary, ...] = (),
    messages: tuple[TurnMessage, ...] | None = None,
    task_id: str = "task-1",
) -> CompletionHookContext:
    history = messages if messages is not None else (user_message("add a function"), assistant_message(text))
    return CompletionHookContext(
        task_id=task_id,
        full_text=text,
        tool_summaries=summaries,
        loop_state=LoopStateView(task_id=task_id, messages=history, iteration=iteration, turn_count=iteration),
        iteration=iteration,
        start_time=START,
    )


def _shell(command: str, success: bool = True, error: str | None = None) -> ToolSummary:
    return ToolSummary(tool_name="shell", call_id=command, command=command, success=success, error=error)


def test_blocked_marker_stops_with_captured_reason(tmp_path: Path):
    hook = _hook(tmp_path, require_passing_tests=True)

    evaluation = hook.evaluate(
        _context("I cannot continue.\n<ralph>BLOCKED: missing API key</ralph>\n<ralph>COMPLETE</ralph>")
    )

    assert evaluation.should_stop is True
    assert evaluation.stop_reason == StopReason.BLOCKED
    assert evaluation.stop_message == "missing API key"


def test_success_marker_without_test_run_continues(tmp_path: Path):
    hook = _hook(tmp_path, require_passing_tests=True)

    evaluation = hook.evaluate(
        _context("All done <ralph>COMPLETE</ralph>", summaries=(_shell("ls -la"),))
    )

    assert evaluation.should_stop is False
    assert evaluation.stop_reason == StopReason.UNKNOWN
    assert evaluation.completion_promise_matched is True
    assert evaluation.unmet == ["tests"]


def test_success_marker_with_passing_tests_completes(tmp_path: Path):
    hook = _hook(tmp_path, require_passing_tests=True, require_lint=True)

    evaluation = hook.evaluate(
        _context(
            "<ralph>COMPLETE</ralph>",
            summaries=(_shell("cd app && CI=1 npm test"), _shell("ruff check .")),
        )
    )

    assert evaluation.should_stop is True
    assert evaluation.stop_reason == StopReason.COMPLETE


def test_failing_test_command_blocks_completion(tmp_path: Path):
    hook = _hook(tmp_path, require_passing_tests=True, require_no_errors=False)

    evaluation = hook.evaluate(
        _context(
            "<ralph>COMPLETE</ralph>",
            summaries=(_shell("pytest -q"), _shell("pytest -q", success=False, error="exit 1")),
        )
    )

    assert evaluation.should_stop is False
    assert evaluation.unmet == ["tests"]


def test_tool_errors_block_completion_when_no_errors_required(tmp_path: Path):
    hook = _hook(tmp_path)

    evaluation = hook.evaluate(
        _context("<ralph>COMPLETE</ralph>", summaries=(_shell("make", success=False, error="boom"),))
    )

    assert evaluation.should_stop is False
    assert evaluation.errors == ["boom"]
    assert evaluation.unmet == ["no errors"]


def test_iteration_budget_wins_over_success_marker(tmp_path: Path):
    hook = _hook(tmp_path, max_iterations=6)

    evaluation = hook.evaluate(_context("<ralph>COMPLETE</ralph>", iteration=7))

    assert evaluation.should_stop is True
    assert evaluation.stop_reason == StopReason.MAX_ITERATIONS


def test_iteration_budget_reached_exactly_stops(tmp_path: Path):
    hook = _hook(tmp_path, max_iterations=3)

    evaluation = hook.evaluate(_context("still working", iteration=3))

    assert evaluation.stop_reason == StopReason.MAX_ITERATIONS


def test_wall_time_budget_checked_first(tmp_path: Path):
    hook = _hook(tmp_path, clock=FakeClock(START + 120), max_wall_time_seconds=60, max_iterations=1)

    evaluation = hook.evaluate(_context("<ralph>BLOCKED: x</ralph>", iteration=5))

    assert evaluation.stop_reason == StopReason.MAX_WALL_TIME


def test_no_marker_continues(tmp_path: Path):
    hook = _hook(tmp_path)

    evaluation = hook.evaluate(_context("Working on it."))

    assert evaluation.should_stop is False
    assert evaluation.stop_reason == StopReason.UNKNOWN
    assert evaluation.completion_promise_matched is False


def test_evaluation_is_idempotent(tmp_path: Path):
    hook = _hook(tmp_path, require_passing_tests=True)
    context = _context("<ralph>COMPLETE</ralph>", summaries=(_shell("pytest"),))

    first = hook.evaluate(context)
    second = hook.evaluate(context)

    assert first == second
    assert first.stop_reason == StopReason.COMPLETE


def test_invalid_regex_is_ignored(tmp_path: Path):
    hook = _hook(tmp_path, success_regex="(unclosed", blocked_regex="[bad")

    evaluation = hook.evaluate(_context("(unclosed"))

    assert evaluation.should_stop is False
    assert evaluation.completion_promise_matched is False


@pytest.mark.asyncio
async def test_custom_marker_scenario_completes(tmp_path: Path):
    hook = _hook(tmp_path, success_regex="<complete/>", require_no_errors=True)

    result = await hook.run(_context("Done.\n<complete/>"))

    assert result == Stop(StopReason.COMPLETE, None)


@pytest.mark.asyncio
async def test_run_persists_summary_and_state_file(tmp_path: Path):
    clock = FakeClock()
    hook = _hook(tmp_path, clock=clock)
    hook.file_changes.record("task-1", "src/app.py", "created")
    artifacts = hook.artifacts

    await hook.run(_context("Working. <ralph>BLOCKED: need credentials</ralph>"))

    summary = await artifacts.read_file(CONTEXT_NAMESPACE, "task-1", "ralph-summary.md")
    assert summary is not None
    assert summary.startswith("# Ralph Loop Summary\n\n## Objective\nadd a function")
    assert "## Iteration 1" in summary
    assert "Stop candidate: blocked" in summary
    assert "Stop message: need credentials" in summary
    assert "### Files Changed\n- src/app.py" in summary
    assert "### Last Output (truncated)" in summary

    raw = await artifacts.read_file(CONTEXT_NAMESPACE, "task-1", "ralph-iteration.json")
    data = json.loads(raw)
    assert data["taskId"] == "task-1"
    assert data["startedAt"] == int(START * 1000)
    assert data["updatedAt"] == int(clock.now * 1000)
    assert data["iteration"] == 1
    assert data["stopReason"] == "blocked"
    assert data["stopMessage"] == "need credentials"
    assert data["completionPromiseMatched"] is False
    assert data["errors"] == []
    assert IterationStateFile.model_validate(data).stop_reason == StopReason.BLOCKED


@pytest.mark.asyncio
async def test_continue_builds_fresh_context_and_appends_sections(tmp_path: Path):
    hook = _hook(tmp_path)
    await hook.artifacts.write_file(CONTEXT_NAMESPACE, "task-1", "ralph-feedback.md", "Use type hints.")

    first = await hook.run(_context("First attempt.", summaries=(_shell("ls"),)))

    assert isinstance(first, Continue)
    assert len(first.messages) == 1
    fresh = first.messages[0]
    assert fresh.role == "user"
    assert fresh.text.startswith("## Task\n\nadd a function")
    assert "## Ralph Summary" in fresh.text
    assert "## Ralph Feedback\n\nUse type hints." in fresh.text

    second = await hook.run(_context("Second attempt.", iteration=2, messages=first.messages))

    assert isinstance(second, Continue)
    assert second.messages[0].text.startswith("## Task\n\nadd a function")
    summary = await hook.artifacts.read_file(CONTEXT_NAMESPACE, "task-1", "ralph-summary.md")
    assert summary.count("## Objective") == 1
    assert "## Iteration 1" in summary
    assert "## Iteration 2" in summary
    assert "### Feedback\nUse type hints." in summary
    assert summary.index("## Iteration 1") < summary.index("## Iteration 2")


@pytest.mark.asyncio
async def test_objective_recovered_from_summary_for_new_hook_instance(tmp_path: Path):
    hook = _hook(tmp_path)
    first = await hook.run(_context("First attempt."))

    restarted = _hook(tmp_path)
    second = await restarted.run(_context("Second attempt.", iteration=2, messages=first.messages))

    assert second.messages[0].text.startswith("## Task\n\nadd a function")


@pytest.mark.asyncio
async def test_context_carry_tail_has_no_orphaned_tool_results(tmp_path: Path):
    hook = _hook(tmp_path, include_last_n_messages=2)
    call = ToolCallPart("call-1", "shell", {"command": "ls"})
    history = (
        user_message("add a function"),
        assistant_message("", [call]),
        tool_message(ToolResultPart("call-1", "shell", "a.py")),
        assistant_message("Listed files."),
    )

    result = await hook.run(_context("Listed files.", messages=history))

    assert isinstance(result, Continue)
    assert orphaned_tool_results(result.messages) == []
    assert result.messages[-1].text.startswith("## Task")
    assert [m.role for m in result.messages] == ["assistant", "user"]


@pytest.mark.asyncio
async def test_attachments_of_original_request_carried_forward(tmp_path: Path):
    hook = _hook(tmp_path)
    attachment = {"type": "image", "path": "screenshot.png"}
    history = (user_message("fix the layout", attachments=[attachment]),)

    result = await hook.run(_context("Looking.", messages=history))

    assert result.messages[-1].attachments == [attachment]


def test_should_run_requires_autonomy(tmp_path: Path):
    hook = _hook(tmp_path)

    assert hook.should_run(_context("x")) is True
    assert hook.should_run(_context("x", task_id="other")) is False

    hook.settings.set_autonomy("other", True)
    assert hook.should_run(_context("x", task_id="other")) is True


def test_system_prompt_addendum_lists_markers_and_criteria(tmp_path: Path):
    hook = _hook(tmp_path, require_passing_tests=True)

    addendum = hook.system_prompt_addendum("task-1")

    assert addendum is not None
    assert addendum.startswith("Ralph Loop mode is enabled.")
    assert "<ralph>COMPLETE</ralph>" in addendum
    assert "<ralph>BLOCKED: reason</ralph>" in addendum
    assert "- Run tests and ensure they pass before completion." in addendum
    assert hook.system_prompt_addendum("not-autonomous") is None


def test_configure_task_overrides_one_task_only(tmp_path: Path):
    hook = _hook(tmp_path)

    updated = hook.configure_task("task-1", max_iterations=2, require_lint=True)

    assert updated.max_iterations == 2
    assert hook.config_for("task-1").require_lint is True
    assert hook.config_for("task-2").max_iterations == 6
    with pytest.raises(ValueError):
        hook.configure_task("task-1", not_a_setting=True)

    hook.reset_task("task-1")
    assert hook.config_for("task-1").max_iterations == 6


def test_command_matching_uses_each_shell_segment(tmp_path: Path):
    hook = _hook(tmp_path)
    patterns = hook._patterns(hook.config.command_patterns.test)

    assert hook.command_matches("cd web && npm run test:unit", patterns) is True
    assert hook.command_matches("sudo pytest -x", patterns) is True
    assert hook.command_matches("echo pytest", patterns) is False
    assert hook.command_matches(None, patterns) is False
