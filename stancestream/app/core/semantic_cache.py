"""
Semantic response cache for generated debate statements.

A prompt is embedded together with its topic and compared against
previously generated (prompt, response) pairs stored under the same
topic. When the closest stored prompt is similar enough, its response is
reused instead of calling the generation service again.

Key points:

* The cache key is a pure function of the topic and the whitespace
  normalised prompt, so the same logical request always lands on the
  same entry and a second ``store`` overwrites the first.
* Similarity search is restricted to one topic bucket; identical prompts
  under different topics never match each other.
* Any failure while embedding or searching is reported as a miss. The
  caller always gets to fall back to fresh generation.
* Hit/miss counters are updated under a single lock so concurrently
  running debates cannot lose updates; ``hits + misses`` always equals
  ``total_requests``.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .config import CacheSettings
from .embedding_cache import EmbeddingCache
from .stores import EmbeddingService, VectorStore

logger = logging.getLogger("semantic_cache")

# Approximate per-token prices (input, output) used for the cost-saved estimate.
_INPUT_COST_PER_TOKEN = 0.15 / 1_000_000
_OUTPUT_COST_PER_TOKEN = 0.60 / 1_000_000


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class CacheHit:
    response: str
    similarity: float
    key: str
    original_prompt: str = ""
    cost_saved: float = 0.0


@dataclass
class CacheMetrics:
    total_requests: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    average_similarity: float = 0.0
    total_tokens_saved: int = 0
    estimated_cost_saved: float = 0.0
    created_at: str = field(default_factory=_utc_now)
    last_updated: str = field(default_factory=_utc_now)

    @property
    def hit_ratio(self) -> float:
        return self.cache_hits / self.total_requests if self.total_requests else 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["hit_ratio"] = self.hit_ratio
        return data


class SemanticCache:
    """Topic-scoped similarity cache in front of the generation service."""

    def __init__(
        self,
        embedder: EmbeddingService,
        vector_store: VectorStore,
        settings: Optional[CacheSettings] = None,
        embedding_cache: Optional[EmbeddingCache] = None,
    ) -> None:
        self.settings = settings or CacheSettings()
        self.embedder = embedder
        self.vector_store = vector_store
        self.embedding_cache = embedding_cache or EmbeddingCache(self.settings.embedding_cache_size)
        self._metrics = CacheMetrics()
        self._metrics_lock = asyncio.Lock()

    @staticmethod
    def normalize_prompt(prompt: str) -> str:
        return " ".join((prompt or "").split())

    def resolve_topic(self, topic: Optional[str]) -> str:
        cleaned = (topic or "").strip()
        return cleaned or self.settings.default_topic

    def create_cache_key(self, prompt: str, topic: Optional[str] = None) -> str:
        contextual = f"{self.resolve_topic(topic)}::{self.normalize_prompt(prompt)}"
        digest = hashlib.sha256(contextual.encode("utf-8")).hexdigest()
        return f"cache:prompt:{digest[:16]}"

    def _embedding_text(self, prompt: str, topic: str) -> str:
        text = f"Topic: {topic}. {self.normalize_prompt(prompt)}"
        return text[: self.settings.max_prompt_length]

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text or "") / self.settings.token_estimation_ratio)

    @staticmethod
    def estimate_cost_saved(prompt: str) -> float:
        tokens = math.ceil(len(prompt or "") / 4)
        return tokens * _INPUT_COST_PER_TOKEN + tokens * _OUTPUT_COST_PER_TOKEN

    async def embed(self, text: str) -> List[float]:
        cached = self.embedding_cache.lookup(text)
        if cached is not None:
            logger.debug("Embedding cache hit (%s entries)", len(self.embedding_cache))
            return cached
        vector = await self.embedder.embed(text)
        self.embedding_cache.store(text, vector)
        return list(vector)

    async def lookup(self, prompt: str, topic: Optional[str] = None) -> Optional[CacheHit]:
        """Return a ``CacheHit`` for a similar stored prompt, or ``None`` on a miss."""
        started = time.perf_counter()
        resolved_topic = self.resolve_topic(topic)
        if not self.normalize_prompt(prompt):
            logger.warning("Cache lookup with empty prompt (topic=%s)", resolved_topic)
            await self._record_miss()
            return None

        try:
            vector = await self.embed(self._embedding_text(prompt, resolved_topic))
            matches = await self.vector_store.search_nearest(resolved_topic, vector, self.settings.search_limit)
        except Exception:
            logger.warning("Cache lookup failed, treating as miss (topic=%s)", resolved_topic, exc_info=True)
            await self._record_miss()
            return None

        if matches:
            best = matches[0]
            similarity = max(0.0, min(1.0, 1.0 - float(best.distance)))
            response = best.payload.get("response")
            if similarity >= self.settings.similarity_threshold and isinstance(response, str):
                await self._record_hit(similarity)
                logger.info(
                    "Cache HIT similarity=%.3f topic=%s in %.1fms",
                    similarity,
                    resolved_topic,
                    (time.perf_counter() - started) * 1000,
                )
                return CacheHit(
                    response=response,
                    similarity=similarity,
                    key=best.key,
                    original_prompt=str(best.payload.get("original_prompt") or ""),
                    cost_saved=self.estimate_cost_saved(prompt),
                )

        await self._record_miss()
        logger.info("Cache MISS topic=%s in %.1fms", resolved_topic, (time.perf_counter() - started) * 1000)
        return None

    async def store(self, prompt: str, response: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Embed ``prompt`` and persist the (prompt, response) pair with the configured TTL.

        The topic is taken from ``metadata["topic"]``. Storing twice under the
        same derived key replaces the earlier entry. Errors propagate.
        """
        meta = dict(metadata or {})
        topic = self.resolve_topic(meta.get("topic"))
        meta["topic"] = topic
        key = self.create_cache_key(prompt, topic)
        contextual = self._embedding_text(prompt, topic)
        vector = await self.embed(contextual)
        payload = {
            "content": contextual,
            "original_prompt": prompt,
            "topic": topic,
            "response": response,
            "vector": list(vector),
            "created_at": _utc_now(),
            "ttl": self.settings.ttl_seconds,
            "metadata": meta,
            "tokens_saved": self.estimate_tokens(response),
        }
        await self.vector_store.upsert(key, payload, self.settings.ttl_seconds)
        logger.info("Response cached with key %s (topic=%s)", key, topic)
        return key

    async def _record_hit(self, similarity: float) -> None:
        async with self._metrics_lock:
            m = self._metrics
            m.total_requests += 1
            m.cache_hits += 1
            m.total_tokens_saved += self.settings.estimated_tokens_per_response
            m.estimated_cost_saved = (m.total_tokens_saved / 1000) * self.settings.cost_per_1k_tokens
            m.average_similarity = ((m.average_similarity * (m.cache_hits - 1)) + similarity) / m.cache_hits
            m.last_updated = _utc_now()

    async def _record_miss(self) -> None:
        async with self._metrics_lock:
            self._metrics.total_requests += 1
            self._metrics.cache_misses += 1
            self._metrics.last_updated = _utc_now()

    async def metrics_snapshot(self) -> CacheMetrics:
        async with self._metrics_lock:
            return CacheMetrics(**asdict(self._metrics))

    async def stats(self) -> Dict[str, Any]:
        metrics = (await self.metrics_snapshot()).to_dict()
        try:
            total_entries: Optional[int] = await self.vector_store.count()
        except Exception:
            logger.warning("Could not count cache entries", exc_info=True)
            total_entries = None
        metrics.update(
            {
                "total_cache_entries": total_entries,
                "cache_efficiency": metrics["hit_ratio"],
                "similarity_threshold": self.settings.similarity_threshold,
                "ttl_seconds": self.settings.ttl_seconds,
                "embedding_cache": self.embedding_cache.stats(),
            }
        )
        return metrics

    def clear_embeddings(self) -> None:
        self.embedding_cache.clear()
        logger.info("Embedding cache cleared")
