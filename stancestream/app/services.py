"""
Composition root: builds the stores, model services, cache, pipeline
and scheduler from ``Settings`` and hands them to the API layer.

Every collaborator can be overridden, which is how tests run the whole
application against in-memory stores and scripted model doubles.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .api.websocket import manager as websocket_manager
from .core.config import Settings, load_settings
from .core.embedding_cache import EmbeddingCache
from .core.ollama_client import OllamaEmbeddingService, OllamaGenerationService
from .core.semantic_cache import SemanticCache
from .core.stores import (
    AppendLog,
    EmbeddingService,
    GenerationService,
    InMemoryAppendLog,
    InMemoryProfileStore,
    InMemoryVectorStore,
    ProfileStore,
    PushChannel,
    VectorStore,
)
from .debate.generation import MessagePipeline
from .debate.scheduler import TurnScheduler
from .debate.session import SessionRegistry


@dataclass
class Services:
    settings: Settings
    vector_store: VectorStore
    append_log: AppendLog
    profile_store: ProfileStore
    channel: PushChannel
    cache: SemanticCache
    pipeline: MessagePipeline
    registry: SessionRegistry
    scheduler: TurnScheduler


def build_services(
    settings: Optional[Settings] = None,
    *,
    generator: Optional[GenerationService] = None,
    embedder: Optional[EmbeddingService] = None,
    channel: Optional[PushChannel] = None,
    vector_store: Optional[VectorStore] = None,
    append_log: Optional[AppendLog] = None,
    profile_store: Optional[ProfileStore] = None,
) -> Services:
    settings = settings or load_settings()

    if settings.store_backend == "mysql":
        from .core.mysql_stores import MySQLAppendLog, MySQLProfileStore, MySQLVectorStore

        vector_store = vector_store or MySQLVectorStore()
        append_log = append_log or MySQLAppendLog()
        profile_store = profile_store or MySQLProfileStore()
    else:
        vector_store = vector_store or InMemoryVectorStore()
        append_log = append_log or InMemoryAppendLog()
        profile_store = profile_store or InMemoryProfileStore()

    channel = channel or websocket_manager
    cache = SemanticCache(
        embedder or OllamaEmbeddingService(),
        vector_store,
        settings.cache,
        EmbeddingCache(settings.cache.embedding_cache_size),
    )
    pipeline = MessagePipeline(cache, generator or OllamaGenerationService(), profile_store, append_log, settings.debate)
    registry = SessionRegistry(settings.debate.start_cooldown)
    scheduler = TurnScheduler(pipeline, registry, append_log, channel, profile_store, settings.debate)
    return Services(
        settings=settings,
        vector_store=vector_store,
        append_log=append_log,
        profile_store=profile_store,
        channel=channel,
        cache=cache,
        pipeline=pipeline,
        registry=registry,
        scheduler=scheduler,
    )
