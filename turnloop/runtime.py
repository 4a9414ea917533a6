"""Process-level wiring: one pipeline with its hooks, shared by every loop."""

from dataclasses import dataclass
from pathlib import Path

from turnloop.agent import AgentLoop
from turnloop.compaction import CompressionConfig, ContextCompactor, model_summarizer
from turnloop.config import Config, get_config
from turnloop.hooks.pipeline import HookPipeline
from turnloop.hooks.ralph import RalphLoopHook
from turnloop.hooks.review import AutoReviewHook, ModelReviewer
from turnloop.hooks.stop_hook import StopCommandRunner, StopHook
from turnloop.instructions import InstructionLoader, get_instruction_loader
from turnloop.llm import LLMProvider, get_provider
from turnloop.logging import get_logger
from turnloop.store.artifacts import ArtifactStore
from turnloop.store.file_changes import FileChangeTracker
from turnloop.store.message_store import MessageStore
from turnloop.store.task_settings import TaskSettingsResolver
from turnloop.tools.executor import ToolExecutor
from turnloop.tools.read import ReadTool
from turnloop.tools.registry import ToolRegistry
from turnloop.tools.shell import ShellTool
from turnloop.tools.write import WriteTool

log = get_logger(__name__)


def build_pipeline(
    config: Config,
    artifacts: ArtifactStore,
    file_changes: FileChangeTracker,
    settings: TaskSettingsResolver,
    provider: LLMProvider,
    message_store: MessageStore | None = None,
    workspace: Path | str | None = None,
    instructions: InstructionLoader | None = None,
) -> HookPipeline:
    """Create the pipeline with the stop (10), ralph (20) and review (30) hooks."""
    instructions = instructions or get_instruction_loader()
    pipeline = HookPipeline(timeout_seconds=config.hooks.timeout_seconds)

    runner = StopCommandRunner(
        config.hooks.stop_commands,
        cwd=workspace,
        # commands must finish inside the pipeline's per-hook deadline
        timeout_seconds=min(config.hooks.stop_command_timeout_seconds, config.hooks.timeout_seconds),
    )
    pipeline.register(StopHook(runner, message_store=message_store))
    pipeline.register(
        RalphLoopHook(
            artifacts,
            file_changes,
            settings,
            config=config.ralph,
            instructions=instructions,
        )
    )
    reviewer = ModelReviewer(provider, file_changes, workspace=workspace, instructions=instructions)
    pipeline.register(
        AutoReviewHook(reviewer, message_store=message_store, enabled=config.hooks.auto_review)
    )
    return pipeline


def build_registry(
    config: Config,
    file_changes: FileChangeTracker,
    workspace: Path | str | None = None,
) -> ToolRegistry:
    registry = ToolRegistry(workspace=workspace, config=config)
    available = {
        "shell": lambda: ShellTool(config=config),
        "read": ReadTool,
        "write": lambda: WriteTool(file_changes=file_changes),
    }
    for name in config.tools.enabled:
        factory = available.get(name)
        if factory is None:
            log.warning("Unknown tool in config, ignoring", tool=name)
            continue
        registry.register(factory())
    return registry


@dataclass
class Runtime:
    """Collaborators shared by every loop of the process."""

    config: Config
    provider: LLMProvider
    registry: ToolRegistry
    executor: ToolExecutor
    pipeline: HookPipeline
    compactor: ContextCompactor
    message_store: MessageStore
    artifacts: ArtifactStore
    file_changes: FileChangeTracker
    settings: TaskSettingsResolver

    def create_loop(self) -> AgentLoop:
        return AgentLoop(
            self.provider,
            self.executor,
            self.pipeline,
            compactor=self.compactor,
            message_store=self.message_store,
            config=self.config,
        )

    async def close(self) -> None:
        await self.message_store.close()
        close = getattr(self.provider, "close", None)
        if close is not None:
            await close()


def build_runtime(
    config: Config | None = None,
    provider: LLMProvider | None = None,
    workspace: Path | str | None = None,
) -> Runtime:
    config = config or get_config()
    provider = provider or get_provider()
    workspace = Path(workspace or Path.cwd()).resolve()
    instructions = InstructionLoader(workspace=workspace)

    message_store = MessageStore(config.resolved_messages_db())
    artifacts = ArtifactStore(config.resolved_artifacts_dir())
    file_changes = FileChangeTracker()
    settings = TaskSettingsResolver(config)

    registry = build_registry(config, file_changes, workspace)
    pipeline = build_pipeline(
        config,
        artifacts,
        file_changes,
        settings,
        provider,
        message_store=message_store,
        workspace=workspace,
        instructions=instructions,
    )
    compactor = ContextCompactor(
        CompressionConfig.from_config(config.compaction),
        summarizer=model_summarizer(provider, instructions, config.compaction.summary_max_tokens),
    )
    log.info(
        "Runtime ready",
        workspace=str(workspace),
        tools=registry.list_tools(),
        hooks=[name for name, _ in pipeline.registered_hooks()],
    )
    return Runtime(
        config=config,
        provider=provider,
        registry=registry,
        executor=ToolExecutor(registry),
        pipeline=pipeline,
        compactor=compactor,
        message_store=message_store,
        artifacts=artifacts,
        file_changes=file_changes,
        settings=settings,
    )
