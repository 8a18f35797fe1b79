"""Tests for environment-driven settings."""
import pytest
from pydantic import ValidationError

from convo_agent.infrastructure.config import Settings


class TestSettings:
    """Defaults, environment overrides and validation."""

    def test_defaults(self):
        settings = Settings()

        assert settings.max_context_tokens == 32000
        assert settings.compress_after_tokens == 16000
        assert settings.summarize_after_messages == 50
        assert settings.max_memories == 10000
        assert settings.durable_store_path is None

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("CONVO_AGENT_PORT", "9001")
        monkeypatch.setenv("CONVO_AGENT_BACKGROUND_SIDE_EFFECTS", "false")
        monkeypatch.setenv("CONVO_AGENT_APPROVAL_REQUIRED_TOOLS", "delete_file, send_email,")

        settings = Settings.from_env(log_level="DEBUG")

        assert settings.port == 9001
        assert settings.background_side_effects is False
        assert settings.log_level == "DEBUG"
        assert settings.approval_tool_names == {"delete_file", "send_email"}

    def test_compression_threshold_must_be_below_budget(self):
        with pytest.raises(ValidationError):
            Settings(max_context_tokens=1000, compress_after_tokens=1000)

    def test_non_positive_limits_rejected(self):
        with pytest.raises(ValidationError):
            Settings(max_memories=0)
