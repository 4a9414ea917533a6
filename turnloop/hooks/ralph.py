"""Autonomous iteration ("Ralph Loop") completion hook.

On every stop candidate of an autonomy-enabled task the hook decides whether
the model has really finished. A completion marker alone is never trusted:
configured checks (tests, lint, typecheck, no tool errors) must be backed by
tool evidence from the same round. Every evaluation appends a section to the
progress summary and overwrites the iteration state file. When another round
is needed the history is replaced by a single fresh-context user message.
"""

import re
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from turnloop.config import RalphConfig, get_config
from turnloop.exceptions import LoopCancelledError
from turnloop.hooks.base import (
    CompletionHook,
    CompletionHookContext,
    Continue,
    HookResult,
    Stop,
    StopReason,
    ToolSummary,
)
from turnloop.instructions import InstructionLoader, get_instruction_loader
from turnloop.logging import get_logger
from turnloop.messages import TurnMessage, orphaned_tool_results
from turnloop.store.artifacts import ArtifactStore
from turnloop.store.file_changes import FileChangeTracker
from turnloop.store.task_settings import TaskSettingsResolver
from turnloop.tools.registry import shell_segment_texts

log = get_logger(__name__)

CONTEXT_NAMESPACE = "context"
SUMMARY_TITLE = "# Ralph Loop Summary"

_OBJECTIVE_RE = re.compile(r"^## Objective\n(.*?)(?=^## Iteration \d+|\Z)", re.MULTILINE | re.DOTALL)


class IterationStateFile(BaseModel):
    """JSON snapshot written after every evaluation; timestamps in epoch ms."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    task_id: str
    started_at: int
    updated_at: int
    iteration: int
    stop_reason: StopReason
    stop_message: str | None = None
    completion_promise_matched: bool = False
    errors: list[str] = []


@dataclass
class RalphEvaluation:
    should_stop: bool
    stop_reason: StopReason
    stop_message: str | None = None
    completion_promise_matched: bool = False
    errors: list[str] = field(default_factory=list)
    unmet: list[str] = field(default_factory=list)


def _compile(pattern: str, flags: int = 0) -> re.Pattern[str] | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        log.warning("Invalid Ralph regex, ignoring", pattern=pattern, error=str(e))
        return None


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}..."


def collect_errors(summaries: tuple[ToolSummary, ...] | list[ToolSummary]) -> list[str]:
    errors: list[str] = []
    for summary in summaries:
        if summary.success is False or summary.error:
            errors.append(summary.error or f"{summary.tool_name} failed")
    return errors


class RalphLoopHook(CompletionHook):
    name = "ralph-loop"
    priority = 20

    def __init__(
        self,
        artifacts: ArtifactStore,
        file_changes: FileChangeTracker,
        settings: TaskSettingsResolver,
        config: RalphConfig | None = None,
        instructions: InstructionLoader | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.artifacts = artifacts
        self.file_changes = file_changes
        self.settings = settings
        self.config = config or get_config().ralph
        self.instructions = instructions or get_instruction_loader()
        self._clock = clock
        self._task_configs: dict[str, RalphConfig] = {}
        self._objectives: dict[str, str] = {}
        self._attachments: dict[str, list[dict[str, Any]]] = {}
        self._pattern_cache: dict[tuple[str, ...], list[re.Pattern[str]]] = {}

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure_task(self, task_id: str, **fields: Any) -> RalphConfig:
        """Override Ralph settings for one task; unknown fields raise."""
        base = self.config_for(task_id).model_dump()
        unknown = set(fields) - set(base)
        if unknown:
            raise ValueError(f"Unknown Ralph settings: {', '.join(sorted(unknown))}")
        base.update(fields)
        updated = RalphConfig.model_validate(base)
        self._task_configs[task_id] = updated
        return updated

    def reset_task(self, task_id: str) -> None:
        self._task_configs.pop(task_id, None)
        self._objectives.pop(task_id, None)
        self._attachments.pop(task_id, None)

    def config_for(self, task_id: str) -> RalphConfig:
        return self._task_configs.get(task_id, self.config)

    def should_run(self, context: CompletionHookContext) -> bool:
        return bool(context.task_id) and self.settings.is_autonomy_enabled(context.task_id)

    def system_prompt_addendum(self, task_id: str) -> str | None:
        if not task_id or not self.settings.is_autonomy_enabled(task_id):
            return None
        return self.build_system_prompt(self.config_for(task_id))

    def build_system_prompt(self, config: RalphConfig) -> str:
        rules: list[str] = []
        if config.require_passing_tests:
            rules.append("- Run tests and ensure they pass before completion.")
        if config.require_lint:
            rules.append("- Run lint and fix all lint errors before completion.")
        if config.require_typecheck:
            rules.append("- Run typecheck and fix all type errors before completion.")
        if config.require_no_errors:
            rules.append("- Do not declare completion if any tool or execution errors occurred.")
        if rules:
            stop_criteria = "\n".join(["Stop criteria:", *rules])
        else:
            stop_criteria = "Stop criteria: No additional automated checks required."

        promise = self.instructions.render(
            "ralph_completion_promise.md",
            success_marker=config.success_marker,
            blocked_marker=config.blocked_marker,
        )
        return self.instructions.render(
            "ralph_system_prompt.md",
            completion_promise=promise,
            stop_criteria=stop_criteria,
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _patterns(self, raw: list[str]) -> list[re.Pattern[str]]:
        key = tuple(raw)
        cached = self._pattern_cache.get(key)
        if cached is None:
            cached = [p for p in (_compile(item) for item in raw) if p is not None]
            self._pattern_cache[key] = cached
        return cached

    @staticmethod
    def command_matches(command: str | None, patterns: list[re.Pattern[str]]) -> bool:
        """True if any shell segment of ``command`` matches any pattern."""
        if not command:
            return False
        segments = shell_segment_texts(command)
        return any(p.match(segment) for segment in segments for p in patterns)

    def check_satisfied(self, summaries: tuple[ToolSummary, ...], raw_patterns: list[str]) -> bool:
        """At least one matching command ran and every matching command succeeded."""
        patterns = self._patterns(raw_patterns)
        matched = [s for s in summaries if self.command_matches(s.command, patterns)]
        return bool(matched) and all(s.success and not s.error for s in matched)

    def evaluate(self, context: CompletionHookContext) -> RalphEvaluation:
        """Pure stop decision for one stop candidate."""
        config = self.config_for(context.task_id)
        text = context.full_text or ""
        errors = collect_errors(context.tool_summaries)

        success_re = _compile(config.success_regex, re.IGNORECASE)
        blocked_re = _compile(config.blocked_regex, re.IGNORECASE)
        matched = bool(success_re and success_re.search(text))

        elapsed = self._clock() - context.start_time
        if elapsed > config.max_wall_time_seconds:
            return RalphEvaluation(
                True, StopReason.MAX_WALL_TIME, "Reached max wall time", matched, errors
            )

        if context.iteration >= config.max_iterations:
            return RalphEvaluation(
                True, StopReason.MAX_ITERATIONS, "Reached max iterations", matched, errors
            )

        blocked = blocked_re.search(text) if blocked_re else None
        if blocked:
            reason = (blocked.group(1) if blocked.groups() else "") or ""
            return RalphEvaluation(True, StopReason.BLOCKED, reason.strip() or "Blocked", False, errors)

        if not matched:
            return RalphEvaluation(False, StopReason.UNKNOWN, None, False, errors)

        unmet: list[str] = []
        if config.require_no_errors and errors:
            unmet.append("no errors")
        patterns = config.command_patterns
        if config.require_passing_tests and not self.check_satisfied(context.tool_summaries, patterns.test):
            unmet.append("tests")
        if config.require_lint and not self.check_satisfied(context.tool_summaries, patterns.lint):
            unmet.append("lint")
        if config.require_typecheck and not self.check_satisfied(
            context.tool_summaries, patterns.typecheck
        ):
            unmet.append("typecheck")

        if unmet:
            return RalphEvaluation(False, StopReason.UNKNOWN, None, True, errors, unmet)
        return RalphEvaluation(True, StopReason.COMPLETE, None, True, errors)

    # ------------------------------------------------------------------
    # Hook entry point
    # ------------------------------------------------------------------

    async def run(self, context: CompletionHookContext) -> HookResult:
        config = self.config_for(context.task_id)
        evaluation = self.evaluate(context)
        log.info(
            "Ralph evaluation",
            task_id=context.task_id,
            iteration=context.iteration,
            stop=evaluation.should_stop,
            reason=evaluation.stop_reason.value,
            marker=evaluation.completion_promise_matched,
            unmet=evaluation.unmet,
        )

        if context.cancelled:
            raise LoopCancelledError()

        objective = await self._resolve_objective(context, config)
        await self._persist_iteration_artifacts(context, config, evaluation, objective)

        if evaluation.should_stop:
            self._objectives.pop(context.task_id, None)
            self._attachments.pop(context.task_id, None)
            return Stop(evaluation.stop_reason, evaluation.stop_message)

        if context.cancelled:
            raise LoopCancelledError()

        messages = await self._build_iteration_messages(context, config, objective)
        return Continue(tuple(messages))

    async def _resolve_objective(self, context: CompletionHookContext, config: RalphConfig) -> str:
        task_id = context.task_id
        if context.iteration > 1 and task_id in self._objectives:
            return self._objectives[task_id]

        view = context.loop_state
        # the run's originating request; later user messages may be hook feedback
        if view.request_text:
            self._objectives[task_id] = view.request_text
            self._attachments[task_id] = list(view.attachments)
            return view.request_text

        if context.iteration > 1:
            summary = await self.artifacts.read_file(CONTEXT_NAMESPACE, task_id, config.summary_file_name)
            parsed = self.parse_objective(summary or "")
            if parsed:
                self._objectives[task_id] = parsed
                return parsed
        last_user = next(
            (m for m in reversed(view.messages) if m.role == "user" and m.text.strip()),
            None,
        )
        self._objectives[task_id] = last_user.text.strip() if last_user else ""
        self._attachments[task_id] = list(last_user.attachments or []) if last_user else []
        return self._objectives[task_id]

    @staticmethod
    def parse_objective(summary: str) -> str:
        match = _OBJECTIVE_RE.search(summary)
        return match.group(1).strip() if match else ""

    def render_iteration_section(
        self,
        context: CompletionHookContext,
        config: RalphConfig,
        evaluation: RalphEvaluation,
        feedback: str | None,
    ) -> str:
        changes = self.file_changes.get_changes(context.task_id)
        files = list(dict.fromkeys(change.file_path for change in changes))

        tool_lines: list[str] = []
        for tool in context.tool_summaries:
            status = "failed" if tool.success is False or tool.error else "ok"
            command = f" ({tool.command})" if tool.command else ""
            tool_lines.append(f"- {tool.tool_name}{command}: {status}")

        lines = [
            f"## Iteration {context.iteration}",
            f"Updated: {datetime.now(UTC).isoformat()}",
            f"Stop candidate: {evaluation.stop_reason.value}",
            f"Completion marker: {'matched' if evaluation.completion_promise_matched else 'not found'}",
        ]
        if evaluation.stop_message:
            lines.append(f"Stop message: {evaluation.stop_message}")
        if evaluation.unmet:
            lines.append(f"Unmet criteria: {', '.join(evaluation.unmet)}")
        lines += [
            "",
            "### Files Changed",
            "\n".join(f"- {f}" for f in files) if files else "None",
            "",
            "### Tool Results",
            "\n".join(tool_lines) if tool_lines else "None",
            "",
            "### Errors",
            "\n".join(f"- {e}" for e in evaluation.errors) if evaluation.errors else "None",
            "",
            "### Last Output (truncated)",
            _truncate(context.full_text or "", config.output_truncate_chars),
        ]
        if feedback:
            lines += ["", "### Feedback", feedback.strip()]
        return "\n".join(lines)

    async def _persist_iteration_artifacts(
        self,
        context: CompletionHookContext,
        config: RalphConfig,
        evaluation: RalphEvaluation,
        objective: str,
    ) -> None:
        task_id = context.task_id
        summary = await self.artifacts.read_file(CONTEXT_NAMESPACE, task_id, config.summary_file_name)
        feedback = await self.artifacts.read_file(CONTEXT_NAMESPACE, task_id, config.feedback_file_name)

        section = self.render_iteration_section(context, config, evaluation, feedback)
        if not summary or not summary.strip():
            content = "\n".join([SUMMARY_TITLE, "", "## Objective", objective, "", section])
        else:
            content = f"{summary.rstrip()}\n\n{section}"
        await self.artifacts.write_file(CONTEXT_NAMESPACE, task_id, config.summary_file_name, content)

        state = IterationStateFile(
            task_id=task_id,
            started_at=int(context.start_time * 1000),
            updated_at=int(self._clock() * 1000),
            iteration=context.iteration,
            stop_reason=evaluation.stop_reason,
            stop_message=evaluation.stop_message,
            completion_promise_matched=evaluation.completion_promise_matched,
            errors=evaluation.errors,
        )
        await self.artifacts.write_file(
            CONTEXT_NAMESPACE,
            task_id,
            config.state_file_name,
            state.model_dump_json(by_alias=True, indent=2),
        )

    async def _build_iteration_messages(
        self,
        context: CompletionHookContext,
        config: RalphConfig,
        objective: str,
    ) -> list[TurnMessage]:
        task_id = context.task_id
        summary = await self.artifacts.read_file(CONTEXT_NAMESPACE, task_id, config.summary_file_name)
        feedback = await self.artifacts.read_file(CONTEXT_NAMESPACE, task_id, config.feedback_file_name)

        sections = ["## Task", objective]
        if summary:
            sections += ["## Ralph Summary", summary]
        if feedback:
            sections += ["## Ralph Feedback", feedback]

        tail: list[TurnMessage] = []
        if config.include_last_n_messages > 0:
            tail = list(context.loop_state.messages[-config.include_last_n_messages:])
            while tail and orphaned_tool_results(tail):
                tail = tail[1:]

        attachments = self._attachments.get(task_id) or None
        fresh = TurnMessage(role="user", content="\n\n".join(sections), attachments=attachments)
        return [*tail, fresh]
