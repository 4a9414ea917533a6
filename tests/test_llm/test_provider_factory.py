import pytest

import turnloop.config as config_module
import turnloop.llm as llm_module
from turnloop.config import Config, set_config
from turnloop.llm import FinishReason, OllamaProvider, create_provider, get_provider, set_provider


def test_create_provider_supports_ollama():
    provider = create_provider(
        provider="ollama",
        model="llama3.2",
        base_url="http://localhost:11434/",
    )
    assert isinstance(provider, OllamaProvider)
    assert provider.model == "llama3.2"
    assert provider.base_url == "http://localhost:11434"


def test_create_provider_defaults_base_url():
    provider = create_provider(provider="ollama", model="qwen3:8b")
    assert provider.base_url == llm_module.OLLAMA_NATIVE_BASE_URL


def test_create_provider_rejects_unsupported_provider():
    with pytest.raises(ValueError):
        create_provider(provider="cohere", model="command-r")


def test_get_provider_builds_from_global_config(monkeypatch):
    monkeypatch.setattr(config_module, "_config", None)
    cfg = Config()
    cfg.model.model = "qwen3:8b"
    cfg.model.context_window = 32768
    set_config(cfg)
    set_provider(None)
    try:
        provider = get_provider()
        assert isinstance(provider, OllamaProvider)
        assert provider.model == "qwen3:8b"
        assert provider.context_window == 32768
        assert get_provider() is provider
    finally:
        set_provider(None)


def test_finish_reason_parse_normalizes_and_flags_unknown():
    assert FinishReason.parse("stop") is FinishReason.STOP
    assert FinishReason.parse("tool_calls") is FinishReason.TOOL_CALLS
    assert FinishReason.parse("TOOL-USE") is FinishReason.TOOL_CALLS
    assert FinishReason.parse("content_filter") is FinishReason.CONTENT_FILTER
    assert FinishReason.parse("") is FinishReason.UNKNOWN
    assert FinishReason.parse("load") is FinishReason.UNKNOWN
