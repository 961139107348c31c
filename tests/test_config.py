import pytest

from call_engine.config import SessionConfig, conversation_log_url, default_provider

_ENV = [
    "OPENAI_API_KEY",
    "OPENAI_REALTIME_MODEL",
    "OPENAI_REALTIME_VOICE",
    "GEMINI_API_KEY",
    "GOOGLE_API_KEY",
    "GEMINI_LIVE_MODEL",
    "GEMINI_LIVE_VOICE",
    "CALL_SYSTEM_INSTRUCTION",
    "CALL_GREETING",
    "CALL_ENABLED_TOOLS",
    "CALL_PROVIDER",
    "CONVERSATION_LOG_URL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


def test_provider_defaults():
    openai = SessionConfig.for_provider("openai")
    assert (openai.model, openai.voice) == ("gpt-realtime", "alloy")
    assert (openai.input_sample_rate, openai.output_sample_rate) == (24000, 24000)
    assert openai.api_key is None
    assert openai.greeting == "Hello"

    gemini = SessionConfig.for_provider("gemini")
    assert gemini.voice == "Zephyr"
    assert (gemini.input_sample_rate, gemini.output_sample_rate) == (16000, 24000)


def test_environment_and_overrides(monkeypatch):
    monkeypatch.setenv("GOOGLE_API_KEY", "google-key")
    monkeypatch.setenv("GEMINI_LIVE_VOICE", "Puck")
    monkeypatch.setenv("CALL_ENABLED_TOOLS", "lookup, book ,")
    monkeypatch.setenv("CALL_GREETING", "")

    config = SessionConfig.for_provider("gemini", voice=None, model="gemini-live-test")
    assert config.api_key == "google-key"
    assert config.voice == "Puck"
    assert config.model == "gemini-live-test"
    assert config.enabled_tools == ["lookup", "book"]
    assert config.greeting is None


def test_unknown_provider_is_rejected():
    with pytest.raises(ValueError):
        SessionConfig.for_provider("acme")


def test_process_level_settings(monkeypatch):
    assert default_provider() == "openai"
    assert conversation_log_url() is None
    monkeypatch.setenv("CALL_PROVIDER", "Gemini")
    monkeypatch.setenv("CONVERSATION_LOG_URL", "http://db.local/api")
    assert default_provider() == "gemini"
    assert conversation_log_url() == "http://db.local/api"
