"""
Message generation pipeline.

Builds the prompt for one agent turn from the agent's profile, its
private memory stream and the turn number, consults the semantic cache
and only calls the generation service on a miss. The pipeline keeps no
state of its own and never raises for a failed generation: it returns
the fixed apology text with ``error_kind`` set, so the scheduler can
count the turn as degraded. The one exception is ``TurnCancelled``,
raised when the owning session is stopped while the cache lookup was
in flight; that must unwind the turn instead of spending a generation
call.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..core.config import DebateSettings
from ..core.errors import ErrorKind, GenerationError, TurnCancelled
from ..core.semantic_cache import SemanticCache
from ..core.stores import AppendLog, GenerationService, LogEntry, ProfileStore, memory_key, transcript_key
from ..models.schemas import AgentProfileModel
from .profiles import load_profile

logger = logging.getLogger("debate_generation")

FALLBACK_MESSAGE = (
    "I apologize, but I'm having trouble formulating a response right now. "
    "Let me gather my thoughts on {topic}."
)


@dataclass
class GenerationResult:
    message: str
    agent_name: str
    turn_number: int = 1
    cache_hit: bool = False
    similarity: float = 0.0
    cost_saved: float = 0.0
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.error_kind is not None

    def cache_info(self) -> Dict[str, Any]:
        return {
            "cache_hit": self.cache_hit,
            "similarity": round(self.similarity, 4),
            "cost_saved": self.cost_saved,
        }


def format_memory(entries: List[LogEntry]) -> str:
    lines = []
    for idx, entry in enumerate(entries, start=1):
        content = str(entry.fields.get("content") or "").strip()
        if content:
            lines.append(f"Memory {idx}: {content}")
    return "\n".join(lines)


def stance_signature(profile: AgentProfileModel) -> str:
    """Short digest of the profile's stance values, stable for equal stances."""
    raw = "|".join(f"{key}:{value:.3f}" for key, value in sorted(profile.stance.items()))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:12]


def cache_topic_for(agent_id: str, profile: AgentProfileModel, topic: str, turn_number: int) -> str:
    """Cache bucket for one agent turn.

    Scoped to the agent, its current stances and the turn number so a
    later turn can never be answered with an earlier statement from the
    same debate.
    """
    return f"{agent_id}:{topic}:stance-{stance_signature(profile)}:turn{turn_number}"


def build_prompt(profile: AgentProfileModel, memory_context: str, topic: str, turn_number: int) -> str:
    """Render the system prompt for one turn.

    The text depends only on its inputs so that an identical request
    maps onto the same cache entry.
    """
    stances = ", ".join(f"{key}: {value:.2f}" for key, value in sorted(profile.stance.items()))
    beliefs = ", ".join(profile.biases) or "none stated"
    parts = [
        f"You are {profile.name}, a {profile.tone} {profile.role}.",
        f"Core beliefs: {beliefs}.",
        f"Current stances: {stances or 'undecided'}",
        f"Debate topic: {topic}.",
        f"Turn: {turn_number}",
        "",
    ]
    if memory_context:
        parts.extend(["Previously, you said:", memory_context, ""])
    parts.extend(
        [
            f'Reply with a short statement (1-2 sentences) to continue the debate on "{topic}".',
            f"Stay focused on this topic and keep your perspective as {profile.name}.",
            f"Avoid repeating previous arguments. Speak as a {profile.tone} {profile.role}.",
        ]
    )
    return "\n".join(parts)


class MessagePipeline:
    def __init__(
        self,
        cache: SemanticCache,
        generator: GenerationService,
        profiles: ProfileStore,
        log: AppendLog,
        settings: Optional[DebateSettings] = None,
    ) -> None:
        self.cache = cache
        self.generator = generator
        self.profiles = profiles
        self.log = log
        self.settings = settings or DebateSettings()

    async def _turn_number(self, debate_id: str, participant_count: int) -> int:
        transcript = await self.log.read_recent(transcript_key(debate_id), self.settings.transcript_window)
        return len(transcript) // max(1, participant_count) + 1

    async def generate(
        self,
        agent_id: str,
        debate_id: str,
        topic: str,
        participant_count: int = 2,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> GenerationResult:
        agent_name = agent_id
        turn_number = 1
        try:
            profile = await load_profile(self.profiles, agent_id)
            if profile is None:
                raise GenerationError(f"Agent profile not found for {agent_id}", {"agent_id": agent_id})
            agent_name = profile.name

            memories = await self.log.read_recent(memory_key(debate_id, agent_id), self.settings.memory_window)
            turn_number = await self._turn_number(debate_id, participant_count)
            prompt = build_prompt(profile, format_memory(memories), topic, turn_number)
            cache_topic = cache_topic_for(agent_id, profile, topic, turn_number)

            hit = await self.cache.lookup(prompt, cache_topic)
            if cancel_event is not None and cancel_event.is_set():
                raise TurnCancelled(debate_id)
            if hit is not None:
                logger.info("Using cached response for %s (%.1f%% similarity)", agent_id, hit.similarity * 100)
                return GenerationResult(
                    message=hit.response,
                    agent_name=agent_name,
                    turn_number=turn_number,
                    cache_hit=True,
                    similarity=hit.similarity,
                    cost_saved=hit.cost_saved,
                )

            text = await self.generator.generate(
                prompt,
                f'Continue the debate on "{topic}" considering the recent discussion.',
                self.settings.temperature,
                self.settings.max_tokens,
            )
            message = (text or "").strip()
            if not message:
                raise GenerationError("Generation service returned an empty response", {"agent_id": agent_id})

            try:
                await self.cache.store(
                    prompt,
                    message,
                    {
                        "agent_id": agent_id,
                        "debate_id": debate_id,
                        "topic": cache_topic,
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    },
                )
            except Exception:
                logger.warning("Failed to cache response for %s", agent_id, exc_info=True)

            return GenerationResult(message=message, agent_name=agent_name, turn_number=turn_number)
        except TurnCancelled:
            raise
        except Exception as exc:
            logger.warning("Generation failed for %s in %s: %s", agent_id, debate_id, exc, exc_info=True)
            return GenerationResult(
                message=FALLBACK_MESSAGE.format(topic=topic),
                agent_name=agent_name,
                turn_number=turn_number,
                error_kind=getattr(exc, "kind", ErrorKind.TRANSIENT),
                error=str(exc),
            )
