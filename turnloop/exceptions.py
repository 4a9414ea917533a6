"""Custom exceptions for turnloop."""


class TurnLoopError(Exception):
    """Base exception for turnloop."""

    pass


class ConfigurationError(TurnLoopError):
    """Configuration-related errors."""

    pass


class LLMError(TurnLoopError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ContextOverflowError(LLMError):
    """The model rejected the request because the prompt exceeds its context window."""

    def __init__(self, message: str = "Context window exceeded"):
        super().__init__(message)


class ToolError(TurnLoopError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolBlockedError(ToolError):
    """Tool execution blocked by policy."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"Tool '{tool_name}' blocked: {reason}")
        self.tool_name = tool_name
        self.reason = reason


class HookError(TurnLoopError):
    """Completion hook errors."""

    pass


class HookTimeoutError(HookError):
    """A completion hook exceeded its time budget."""

    def __init__(self, hook_name: str, timeout_seconds: float):
        super().__init__(f"Hook {hook_name} timed out after {timeout_seconds:g}s")
        self.hook_name = hook_name
        self.timeout_seconds = timeout_seconds


class HookRegistrationError(HookError):
    """Invalid hook registration (duplicate or unnamed hook)."""

    pass


class LoopError(TurnLoopError):
    """Agent loop errors that end a run."""

    pass


class LoopCancelledError(LoopError):
    """The run observed a cancellation signal."""

    def __init__(self, message: str = "Aborted"):
        super().__init__(message)


class UnknownFinishReasonError(LoopError):
    """The model kept failing with the same unrecognized finish reason."""

    def __init__(self, kind: str, message: str, attempts: int):
        super().__init__(f"Unexpected error in agent loop ({kind}): {message}")
        self.kind = kind
        self.attempts = attempts


class CompactionIneffectiveError(LoopError):
    """Automatic compaction could not shrink an overflowing history."""

    def __init__(
        self,
        message: str = "Automatic compaction failed; please run /compact or reduce context.",
    ):
        super().__init__(message)
