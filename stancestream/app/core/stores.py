"""
Storage and service contracts consumed by the debate core, plus the
in-memory implementations used by default and in tests.

The core never talks to a concrete database: it is handed a vector
store (semantic cache entries), an append log (debate transcripts and
per-agent memory streams), a profile store, a push channel and the two
model services. MySQL-backed implementations live in ``mysql_stores``.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Protocol, Sequence

import numpy as np


class VectorMatch(NamedTuple):
    key: str
    distance: float
    payload: Dict[str, Any]


@dataclass
class LogEntry:
    entry_id: str
    timestamp: float
    fields: Dict[str, Any] = field(default_factory=dict)


class GenerationService(Protocol):
    async def generate(self, system_prompt: str, user_prompt: str, temperature: float, max_tokens: int) -> str: ...


class EmbeddingService(Protocol):
    async def embed(self, text: str) -> List[float]: ...


class VectorStore(Protocol):
    async def search_nearest(self, topic: str, vector: Sequence[float], k: int) -> List[VectorMatch]: ...

    async def upsert(self, key: str, payload: Dict[str, Any], ttl: int) -> None: ...

    async def count(self) -> int: ...


class AppendLog(Protocol):
    async def append(self, stream_key: str, fields: Dict[str, Any]) -> str: ...

    async def read_recent(self, stream_key: str, count: int) -> List[LogEntry]: ...

    async def delete(self, stream_key: str) -> None: ...


class ProfileStore(Protocol):
    async def get(self, agent_id: str) -> Optional[Dict[str, Any]]: ...

    async def set(self, agent_id: str, profile: Dict[str, Any]) -> None: ...

    async def list_ids(self) -> List[str]: ...


class PushChannel(Protocol):
    async def broadcast(self, event: Dict[str, Any]) -> None: ...


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine distance in [0, 2]; zero vectors are maximally distant."""
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.shape != vb.shape:
        return 1.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 1.0
    return float(1.0 - np.dot(va, vb) / denom)


class InMemoryVectorStore:
    """Topic-tagged vector entries with per-entry TTL expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, tuple[float, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]:
            self._entries.pop(key, None)

    async def search_nearest(self, topic: str, vector: Sequence[float], k: int) -> List[VectorMatch]:
        async with self._lock:
            self._purge_expired()
            candidates = [
                (key, payload)
                for key, (_, payload) in self._entries.items()
                if payload.get("topic") == topic and payload.get("vector") is not None
            ]
        matches = [
            VectorMatch(key, cosine_distance(vector, payload["vector"]), copy.deepcopy(payload))
            for key, payload in candidates
        ]
        matches.sort(key=lambda match: match.distance)
        return matches[: max(0, k)]

    async def upsert(self, key: str, payload: Dict[str, Any], ttl: int) -> None:
        async with self._lock:
            self._entries[key] = (self._clock() + float(ttl), copy.deepcopy(payload))

    async def count(self) -> int:
        async with self._lock:
            self._purge_expired()
            return len(self._entries)


class InMemoryAppendLog:
    """Append-only streams keyed by name, entries ordered by insertion."""

    def __init__(self) -> None:
        self._streams: Dict[str, List[LogEntry]] = {}
        self._seq = itertools.count(1)

    async def append(self, stream_key: str, fields: Dict[str, Any]) -> str:
        now = time.time()
        entry_id = f"{int(now * 1000)}-{next(self._seq)}"
        self._streams.setdefault(stream_key, []).append(LogEntry(entry_id, now, dict(fields)))
        return entry_id

    async def read_recent(self, stream_key: str, count: int) -> List[LogEntry]:
        """Return up to ``count`` newest entries, oldest first."""
        if count <= 0:
            return []
        entries = self._streams.get(stream_key) or []
        return [LogEntry(e.entry_id, e.timestamp, dict(e.fields)) for e in entries[-count:]]

    async def delete(self, stream_key: str) -> None:
        self._streams.pop(stream_key, None)


class InMemoryProfileStore:
    def __init__(self, profiles: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self._profiles: Dict[str, Dict[str, Any]] = copy.deepcopy(profiles or {})

    async def get(self, agent_id: str) -> Optional[Dict[str, Any]]:
        profile = self._profiles.get(agent_id)
        return copy.deepcopy(profile) if profile is not None else None

    async def set(self, agent_id: str, profile: Dict[str, Any]) -> None:
        self._profiles[agent_id] = copy.deepcopy(profile)

    async def list_ids(self) -> List[str]:
        return sorted(self._profiles)


def transcript_key(debate_id: str) -> str:
    return f"debate:{debate_id}:messages"


def memory_key(debate_id: str, agent_id: str) -> str:
    return f"debate:{debate_id}:agent:{agent_id}:memory"


def stance_history_key(debate_id: str, agent_id: str, stance_key: str) -> str:
    return f"debate:{debate_id}:agent:{agent_id}:stance:{stance_key}"
