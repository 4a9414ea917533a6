"""Completion hooks run on stop-candidate turns."""

from turnloop.hooks.base import (
    CompletionHook,
    CompletionHookContext,
    Continue,
    HookResult,
    LoopStateView,
    Skip,
    Stop,
    StopReason,
    ToolSummary,
)
from turnloop.hooks.pipeline import HookPipeline
from turnloop.hooks.ralph import IterationStateFile, RalphLoopHook
from turnloop.hooks.review import AutoReviewHook, ModelReviewer, Reviewer
from turnloop.hooks.stop_hook import StopCommandRunner, StopHook

__all__ = [
    "AutoReviewHook",
    "CompletionHook",
    "CompletionHookContext",
    "Continue",
    "HookPipeline",
    "HookResult",
    "IterationStateFile",
    "LoopStateView",
    "ModelReviewer",
    "RalphLoopHook",
    "Reviewer",
    "Skip",
    "Stop",
    "StopCommandRunner",
    "StopHook",
    "StopReason",
    "ToolSummary",
]
