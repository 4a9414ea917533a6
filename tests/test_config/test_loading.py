from pathlib import Path

import turnloop.config as config_module
from turnloop.config import Config


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  model: llama3.2\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "turnloop.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  model: qwen3:8b\n"
            "loop:\n"
            "  max_turns: 12\n"
            "hooks:\n"
            "  stop_commands:\n"
            "    - ./scripts/check.sh\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.model == "qwen3:8b"
    assert cfg.loop.max_turns == 12
    assert cfg.hooks.stop_commands == ["./scripts/check.sh"]


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("ralph:\n  enabled: true\n  max_iterations: 3\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.ralph.enabled is True
    assert cfg.ralph.max_iterations == 3
    assert cfg.ralph.require_no_errors is True


def test_missing_config_uses_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")

    cfg = Config.load()

    assert cfg.loop.max_unknown_finish_retries == 3
    assert cfg.hooks.timeout_seconds == 30.0
    assert cfg.tools.enabled == ["shell", "read", "write"]
    assert "rm -rf /" in cfg.tools.shell.blocked


def test_env_vars_override_yaml_with_nesting(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "turnloop.yaml").write_text(
        "loop:\n  max_turns: 12\nmodel:\n  model: qwen3:8b\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("TURNLOOP_LOOP__MAX_TURNS", "40")
    monkeypatch.setenv("TURNLOOP_HOOKS__AUTO_REVIEW", "true")

    cfg = Config.load()

    assert cfg.loop.max_turns == 40
    assert cfg.hooks.auto_review is True
    assert cfg.model.model == "qwen3:8b"


def test_resolved_storage_paths(tmp_path: Path):
    cfg = Config()
    cfg.storage.data_dir = str(tmp_path / "data")

    assert cfg.resolved_messages_db() == (tmp_path / "data" / "messages.db").resolve()
    assert cfg.resolved_artifacts_dir() == (tmp_path / "data" / "tasks").resolve()

    cfg.storage.artifacts_dir = str(tmp_path / "elsewhere")
    assert cfg.resolved_artifacts_dir() == tmp_path / "elsewhere"


def test_save_round_trips(tmp_path: Path):
    config_path = tmp_path / "saved-config.yaml"
    cfg = Config()
    cfg.ralph.success_regex = r"<done\s*/>"
    cfg.ralph.command_patterns.test = [r"^make\s+check\b"]

    cfg.save(config_path)
    reloaded = Config.from_yaml(config_path)

    assert reloaded.ralph.success_regex == r"<done\s*/>"
    assert reloaded.ralph.command_patterns.test == [r"^make\s+check\b"]
