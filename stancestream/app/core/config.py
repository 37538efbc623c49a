"""
Runtime configuration for the debate backend.

Every tunable is read from the process environment (optionally seeded
from a ``.env`` file by the application factory). Values are parsed
defensively: a malformed number falls back to its default instead of
crashing the server at import time. Only combinations that would make
the scheduler or the cache meaningless raise ``ConfigurationError``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from .errors import ConfigurationError


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: List[str]) -> List[str]:
    value = os.getenv(name)
    if not value:
        return list(default)
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or list(default)


@dataclass
class DebateSettings:
    """Pacing and sizing knobs for the turn scheduler."""

    rounds: int = 5
    min_agent_delay: float = 2.0
    pacing_interval: float = 1.2
    poll_slice: float = 0.2
    start_cooldown: float = 0.1
    memory_window: int = 3
    transcript_window: int = 50
    temperature: float = 0.8
    max_tokens: int = 150
    default_topic: str = "climate change policy"
    default_agents: List[str] = field(default_factory=lambda: ["senatorbot", "reformerbot"])

    @classmethod
    def from_env(cls) -> "DebateSettings":
        return cls(
            rounds=_env_int("DEBATE_ROUNDS", 5),
            min_agent_delay=_env_float("DEBATE_MIN_AGENT_DELAY_SEC", 2.0),
            pacing_interval=_env_float("DEBATE_PACING_SEC", 1.2),
            poll_slice=_env_float("DEBATE_POLL_SLICE_SEC", 0.2),
            start_cooldown=_env_float("DEBATE_START_COOLDOWN_SEC", 0.1),
            memory_window=_env_int("DEBATE_MEMORY_WINDOW", 3),
            transcript_window=_env_int("DEBATE_TRANSCRIPT_WINDOW", 50),
            temperature=_env_float("DEBATE_TEMPERATURE", 0.8),
            max_tokens=_env_int("DEBATE_MAX_TOKENS", 150),
            default_topic=os.getenv("DEBATE_DEFAULT_TOPIC", "climate change policy"),
            default_agents=_env_list("DEBATE_DEFAULT_AGENTS", ["senatorbot", "reformerbot"]),
        )

    def validate(self) -> None:
        if self.rounds < 1:
            raise ConfigurationError(f"DEBATE_ROUNDS must be at least 1, got {self.rounds}")
        if self.poll_slice <= 0:
            raise ConfigurationError(f"DEBATE_POLL_SLICE_SEC must be positive, got {self.poll_slice}")
        if self.min_agent_delay < 0 or self.pacing_interval < 0 or self.start_cooldown < 0:
            raise ConfigurationError("Debate delays must not be negative")
        if self.memory_window < 0 or self.transcript_window < 1:
            raise ConfigurationError("Debate memory/transcript windows are out of range")


@dataclass
class CacheSettings:
    """Semantic cache thresholds, TTL and cost estimation constants."""

    similarity_threshold: float = 0.85
    ttl_seconds: int = 3600
    max_prompt_length: int = 8000
    embedding_cache_size: int = 1000
    search_limit: int = 1
    estimated_tokens_per_response: int = 100
    cost_per_1k_tokens: float = 0.002
    token_estimation_ratio: int = 4
    default_topic: str = "general"

    @classmethod
    def from_env(cls) -> "CacheSettings":
        return cls(
            similarity_threshold=_env_float("CACHE_SIMILARITY_THRESHOLD", 0.85),
            ttl_seconds=_env_int("CACHE_TTL", 3600),
            max_prompt_length=_env_int("CACHE_MAX_PROMPT_LENGTH", 8000),
            embedding_cache_size=_env_int("CACHE_EMBEDDING_CACHE_SIZE", 1000),
            search_limit=_env_int("CACHE_SEARCH_LIMIT", 1),
            estimated_tokens_per_response=_env_int("CACHE_EST_TOKENS_PER_RESPONSE", 100),
            cost_per_1k_tokens=_env_float("CACHE_COST_PER_1K_TOKENS", 0.002),
            token_estimation_ratio=_env_int("CACHE_TOKEN_ESTIMATION_RATIO", 4),
        )

    def validate(self) -> None:
        if not 0.0 < self.similarity_threshold <= 1.0:
            raise ConfigurationError(
                f"CACHE_SIMILARITY_THRESHOLD must be in (0, 1], got {self.similarity_threshold}"
            )
        if self.ttl_seconds < 1:
            raise ConfigurationError(f"CACHE_TTL must be positive, got {self.ttl_seconds}")
        if self.max_prompt_length < 1 or self.embedding_cache_size < 1 or self.search_limit < 1:
            raise ConfigurationError("Cache sizes must be positive")
        if self.token_estimation_ratio < 1:
            raise ConfigurationError("CACHE_TOKEN_ESTIMATION_RATIO must be positive")


@dataclass
class Settings:
    debate: DebateSettings = field(default_factory=DebateSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    store_backend: str = "memory"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


def load_settings() -> Settings:
    """Build and validate settings from the current environment."""
    settings = Settings(
        debate=DebateSettings.from_env(),
        cache=CacheSettings.from_env(),
        store_backend=(os.getenv("STORE_BACKEND") or "memory").strip().lower(),
        cors_origins=_env_list("CORS_ALLOW_ORIGINS", ["*"]),
    )
    settings.debate.validate()
    settings.cache.validate()
    if settings.store_backend not in {"memory", "mysql"}:
        raise ConfigurationError(f"Unknown STORE_BACKEND '{settings.store_backend}'")
    return settings


def configure_logging(level: Optional[str] = None) -> None:
    """Apply LOG_LEVEL to the root logger once."""
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if _env_bool("LOG_QUIET_ACCESS", False):
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
