"""In-process embedding cache keyed by a content hash of the embedded text."""

from __future__ import annotations

import hashlib
import logging
from collections import OrderedDict
from typing import Dict, List, Optional

logger = logging.getLogger("embedding_cache")


def text_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


class EmbeddingCache:
    """Bounded map from text hash to embedding vector.

    Eviction is first-in-first-out: a lookup hit does not refresh an
    entry's position, so the oldest stored embedding is always the one
    dropped when the cache is full.
    """

    def __init__(self, max_size: int = 1000) -> None:
        self.max_size = max(1, int(max_size))
        self._cache: OrderedDict[str, List[float]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._cache)

    def lookup(self, text: str) -> Optional[List[float]]:
        key = text_hash(text)
        vector = self._cache.get(key)
        if vector is None:
            self.misses += 1
            return None
        self.hits += 1
        return list(vector)

    def store(self, text: str, vector: List[float]) -> None:
        key = text_hash(text)
        if key in self._cache:
            self._cache[key] = list(vector)
            return
        if len(self._cache) >= self.max_size:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug("Embedding cache full (%s), evicted %s", self.max_size, evicted)
        self._cache[key] = list(vector)

    def clear(self) -> None:
        self._cache.clear()

    def stats(self) -> Dict[str, float]:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_ratio": (self.hits / total) if total else 0.0,
            "size": len(self._cache),
            "capacity": self.max_size,
        }
