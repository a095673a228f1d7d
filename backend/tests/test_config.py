"""
Tests for environment-driven settings.
"""

import pytest

from app.config import VoiceSettings, load_settings, mask_key

ENV_VARS = [
    "ANSWER_SERVICE_URL",
    "RENDER_ENDPOINT",
    "OPENAI_API_KEY",
    "CAPTURE_MODE",
    "MAX_POLLS",
    "POLL_PAUSE_SECONDS",
    "ANSWER_TIMEOUT_SECONDS",
    "WEBHOOK_BASE_URL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadSettings:

    def test_defaults(self):
        settings = load_settings()

        assert settings.capture_mode == "speech"
        assert settings.max_polls == 40
        assert settings.poll_budget_seconds == 40
        assert settings.answer_timeout_seconds == 7.0
        assert settings.pending_ttl.total_seconds() == 300

    def test_render_endpoint_alias(self, monkeypatch):
        monkeypatch.setenv("RENDER_ENDPOINT", "https://answers.example/ask")
        assert load_settings().answer_service_url == "https://answers.example/ask"

    def test_webhook_base_url_trailing_slash_is_stripped(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_BASE_URL", "https://voice.example/")
        assert load_settings().webhook_base_url == "https://voice.example"

    def test_bad_integer_raises(self, monkeypatch):
        monkeypatch.setenv("MAX_POLLS", "forty")
        with pytest.raises(RuntimeError, match="MAX_POLLS"):
            load_settings()

    def test_bad_capture_mode_raises(self, monkeypatch):
        monkeypatch.setenv("CAPTURE_MODE", "dtmf")
        with pytest.raises(RuntimeError, match="CAPTURE_MODE"):
            load_settings()

    def test_short_poll_budget_only_warns(self, caplog):
        settings = VoiceSettings(max_polls=3, answer_timeout_seconds=7.0)
        settings.validate()
        assert "Poll budget" in caplog.text


def test_mask_key():
    assert mask_key(None) == "(not set)"
    assert mask_key("abc") == "****"
    assert mask_key("sk-test-1234") == "****1234"
