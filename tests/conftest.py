"""Shared fixtures and test doubles for the debate backend tests."""

import re
from typing import Dict, List, Optional

import pytest

from stancestream.app.core.config import CacheSettings, DebateSettings
from stancestream.app.core.errors import EmbeddingError, GenerationError
from stancestream.app.core.semantic_cache import SemanticCache
from stancestream.app.core.stores import InMemoryAppendLog, InMemoryProfileStore, InMemoryVectorStore
from stancestream.app.debate.generation import MessagePipeline
from stancestream.app.debate.profiles import SEED_PROFILES
from stancestream.app.debate.scheduler import TurnScheduler
from stancestream.app.debate.session import SessionRegistry

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class BagOfWordsEmbedder:
    """Deterministic embedding: token counts over a vocabulary grown on demand.

    Each new token gets the next free dimension, so two texts only share
    weight on tokens they actually share.
    """

    def __init__(self, dim: int = 1024):
        self.dim = dim
        self.vocab: Dict[str, int] = {}
        self.calls: List[str] = []
        self.fail = False

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingError("embedding backend unavailable")
        vector = [0.0] * self.dim
        for token in _TOKEN_RE.findall(text.lower()):
            idx = self.vocab.setdefault(token, len(self.vocab) % self.dim)
            vector[idx] += 1.0
        return vector


class ScriptedGenerator:
    """Generation double returning numbered statements, optionally failing."""

    def __init__(self, fail_every: int = 0, always_fail: bool = False, fail_for: Optional[str] = None):
        self.fail_every = fail_every
        self.always_fail = always_fail
        self.fail_for = fail_for
        self.calls: List[Dict[str, object]] = []

    async def generate(self, system_prompt: str, user_prompt: str, temperature: float, max_tokens: int) -> str:
        self.calls.append(
            {"system": system_prompt, "user": user_prompt, "temperature": temperature, "max_tokens": max_tokens}
        )
        count = len(self.calls)
        if self.always_fail:
            raise GenerationError("model offline")
        if self.fail_every and count % self.fail_every == 0:
            raise GenerationError("intermittent failure")
        if self.fail_for and f"You are {self.fail_for}," in system_prompt:
            raise GenerationError(f"{self.fail_for} cannot speak")
        return f"Statement number {count} with fresh evidence."


class RecordingChannel:
    def __init__(self):
        self.events: List[Dict[str, object]] = []

    async def broadcast(self, event):
        self.events.append(event)

    def of_type(self, event_type: str) -> List[Dict[str, object]]:
        return [event for event in self.events if event.get("type") == event_type]


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def embedder():
    return BagOfWordsEmbedder()


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def vector_store():
    return InMemoryVectorStore()


@pytest.fixture
def append_log():
    return InMemoryAppendLog()


@pytest.fixture
def profile_store():
    return InMemoryProfileStore(SEED_PROFILES)


@pytest.fixture
def cache_settings():
    return CacheSettings()


@pytest.fixture
def semantic_cache(embedder, vector_store, cache_settings):
    return SemanticCache(embedder, vector_store, cache_settings)


@pytest.fixture
def fast_settings():
    return DebateSettings(
        rounds=5,
        min_agent_delay=0.0,
        pacing_interval=0.0,
        poll_slice=0.01,
        start_cooldown=0.0,
    )


@pytest.fixture
def make_scheduler(embedder, vector_store, append_log, profile_store, channel, fast_settings):
    """Build a scheduler around the shared doubles."""

    def _make(generator=None, settings=None, threshold=CacheSettings().similarity_threshold, log=None):
        settings = settings or fast_settings
        log = append_log if log is None else log
        generator = generator or ScriptedGenerator()
        cache = SemanticCache(embedder, vector_store, CacheSettings(similarity_threshold=threshold))
        pipeline = MessagePipeline(cache, generator, profile_store, log, settings)
        registry = SessionRegistry(settings.start_cooldown)
        return TurnScheduler(pipeline, registry, log, channel, profile_store, settings)

    return _make


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_generator():
    return ScriptedGenerator
