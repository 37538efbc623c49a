"""Tests for environment-driven configuration."""

import pytest

from stancestream.app.core.config import CacheSettings, DebateSettings, load_settings
from stancestream.app.core.errors import ConfigurationError


class TestLoadSettings:
    def test_defaults(self, monkeypatch):
        for name in ("DEBATE_ROUNDS", "CACHE_SIMILARITY_THRESHOLD", "STORE_BACKEND", "CACHE_TTL"):
            monkeypatch.delenv(name, raising=False)
        settings = load_settings()
        assert settings.debate.rounds == 5
        assert settings.debate.min_agent_delay == 2.0
        assert settings.debate.pacing_interval == 1.2
        assert settings.cache.similarity_threshold == 0.85
        assert settings.store_backend == "memory"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("DEBATE_ROUNDS", "3")
        monkeypatch.setenv("CACHE_TTL", "120")
        monkeypatch.setenv("DEBATE_DEFAULT_AGENTS", "alpha, beta")
        settings = load_settings()
        assert settings.debate.rounds == 3
        assert settings.cache.ttl_seconds == 120
        assert settings.debate.default_agents == ["alpha", "beta"]

    def test_malformed_numbers_fall_back(self, monkeypatch):
        monkeypatch.setenv("DEBATE_ROUNDS", "many")
        monkeypatch.setenv("DEBATE_PACING_SEC", "soon")
        settings = load_settings()
        assert settings.debate.rounds == 5
        assert settings.debate.pacing_interval == 1.2

    def test_unknown_backend_is_rejected(self, monkeypatch):
        monkeypatch.setenv("STORE_BACKEND", "cassandra")
        with pytest.raises(ConfigurationError):
            load_settings()


class TestValidation:
    @pytest.mark.parametrize("threshold", [0.0, 1.5, -0.1])
    def test_threshold_out_of_range(self, threshold):
        with pytest.raises(ConfigurationError):
            CacheSettings(similarity_threshold=threshold).validate()

    def test_rounds_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            DebateSettings(rounds=0).validate()

    def test_poll_slice_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            DebateSettings(poll_slice=0).validate()
