"""Configuration management for turnloop."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.turnloop/config.yaml").expanduser()
DEFAULT_DATA_DIR = Path("~/.turnloop").expanduser()
LOCAL_CONFIG_FILENAME = "turnloop.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "ollama"
    model: str = "qwen3:32b"
    base_url: str = ""
    api_key: str = ""
    temperature: float = 0.7
    max_tokens: int = 8192
    context_window: int = 65536


class LoopConfig(BaseModel):
    """Agent loop bounds."""

    max_turns: int = 100
    max_unknown_finish_retries: int = 3
    retry_backoff_seconds: float = 0.5
    max_parallel_tools: int = 8


class CompactionConfig(BaseModel):
    """Context compaction configuration."""

    preserve_recent_messages: int = 6
    compression_threshold: float = 0.8
    summary_max_tokens: int = 2048


class HooksConfig(BaseModel):
    """Completion hook pipeline configuration."""

    timeout_seconds: float = 30.0
    stop_commands: list[str] = Field(default_factory=list)
    stop_command_timeout_seconds: float = 60.0
    auto_review: bool = False


class RalphCommandPatterns(BaseModel):
    """Regexes that classify executed shell commands as test/lint/typecheck runs."""

    test: list[str] = [
        r"^bun\s+run\s+test(\b|:)",
        r"^npm\s+(run\s+)?test(\b|:)",
        r"^yarn\s+test(\b|:)",
        r"^pnpm\s+test(\b|:)",
        r"^vitest(\b|\s)",
        r"^jest(\b|\s)",
        r"^pytest(\b|\s)",
        r"^python3?\s+-m\s+pytest(\b|\s)",
        r"^uv\s+run\s+pytest(\b|\s)",
        r"^tox(\b|\s)",
        r"^cargo\s+test(\b|\s)",
        r"^go\s+test(\b|\s)",
    ]
    lint: list[str] = [
        r"^bun\s+run\s+lint(\b|:)",
        r"^npm\s+(run\s+)?lint(\b|:)",
        r"^yarn\s+lint(\b|:)",
        r"^pnpm\s+lint(\b|:)",
        r"^eslint(\b|\s)",
        r"^biome(\b|\s)",
        r"^ruff(\b|\s)",
        r"^flake8(\b|\s)",
        r"^pylint(\b|\s)",
        r"^cargo\s+clippy(\b|\s)",
    ]
    typecheck: list[str] = [
        r"^bun\s+run\s+tsc(\b|:)",
        r"^npm\s+run\s+typecheck(\b|:)",
        r"^tsc(\b|\s)",
        r"^mypy(\b|\s)",
        r"^pyright(\b|\s)",
    ]


class RalphConfig(BaseModel):
    """Autonomous iteration ("Ralph Loop") defaults."""

    enabled: bool = False
    max_iterations: int = 6
    max_wall_time_seconds: float = 60 * 60
    require_passing_tests: bool = False
    require_lint: bool = False
    require_typecheck: bool = False
    require_no_errors: bool = True
    success_regex: str = "<ralph>COMPLETE</ralph>"
    blocked_regex: str = "<ralph>BLOCKED:(.*?)</ralph>"
    success_marker: str = "<ralph>COMPLETE</ralph>"
    blocked_marker: str = "<ralph>BLOCKED: reason</ralph>"
    summary_file_name: str = "ralph-summary.md"
    feedback_file_name: str = "ralph-feedback.md"
    state_file_name: str = "ralph-iteration.json"
    include_last_n_messages: int = 0
    output_truncate_chars: int = 1200
    command_patterns: RalphCommandPatterns = Field(default_factory=RalphCommandPatterns)


class ShellToolConfig(BaseModel):
    """Shell tool configuration."""

    timeout: int = 120
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = ["shell", "read", "write"]
    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)


class StorageConfig(BaseModel):
    """Where messages and task artifacts live."""

    data_dir: str = str(DEFAULT_DATA_DIR)
    messages_db: str = "messages.db"
    artifacts_dir: str = "tasks"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for turnloop."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    hooks: HooksConfig = Field(default_factory=HooksConfig)
    ralph: RalphConfig = Field(default_factory=RalphConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="TURNLOOP_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment wins over values loaded from YAML (passed as init kwargs).
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration; environment variables are applied by BaseSettings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_data_dir(self) -> Path:
        """Absolute data directory."""
        return Path(self.storage.data_dir).expanduser().resolve()

    def resolved_messages_db(self) -> Path:
        raw = Path(self.storage.messages_db).expanduser()
        if raw.is_absolute():
            return raw
        return self.resolved_data_dir() / raw

    def resolved_artifacts_dir(self) -> Path:
        raw = Path(self.storage.artifacts_dir).expanduser()
        if raw.is_absolute():
            return raw
        return self.resolved_data_dir() / raw


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
