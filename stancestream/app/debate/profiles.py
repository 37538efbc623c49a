"""
Agent profiles and stance evolution.

Profiles live in the profile store as plain dictionaries validated by
``AgentProfileModel``. The two default debaters are written at startup
when the store does not already hold them, so a fresh deployment can
run a debate without any setup.

After every successful turn the speaker's stance on the debate topic
drifts: evidence-backed arguments from the other participants pull it
up or down by a fixed step, otherwise it wanders by a small random
amount. A ``stubborn`` tone halves the movement.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from ..core.stores import AppendLog, LogEntry, ProfileStore, stance_history_key, transcript_key
from ..models.schemas import AgentProfileModel

logger = logging.getLogger("debate_profiles")

DEFAULT_STANCE = 0.5
STANCE_STEP = 0.15
STANCE_JITTER = 0.05
STUBBORN_FACTOR = 0.5
TRANSCRIPT_WINDOW = 20

SEED_PROFILES: Dict[str, Dict[str, Any]] = {
    "senatorbot": {
        "name": "SenatorBot",
        "role": "moderate senator",
        "tone": "measured",
        "biases": ["fiscal responsibility", "bipartisan compromise", "pragmatic solutions"],
        "stance": {
            "climate_policy": 0.4,
            "healthcare_policy": 0.5,
            "ai_policy": 0.5,
            "tax_policy": 0.4,
        },
    },
    "reformerbot": {
        "name": "ReformerBot",
        "role": "progressive reformer",
        "tone": "passionate",
        "biases": ["climate justice", "rapid decarbonization", "transformative change"],
        "stance": {
            "climate_policy": 0.8,
            "healthcare_policy": 0.8,
            "ai_policy": 0.6,
            "tax_policy": 0.7,
        },
    },
}

_TOPIC_MAPPINGS = {
    "environmental regulations and green energy": "climate_policy",
    "climate policy": "climate_policy",
    "climate change": "climate_policy",
    "artificial intelligence governance and ethics": "ai_policy",
    "ai regulation": "ai_policy",
    "universal healthcare and medical access": "healthcare_policy",
    "healthcare reform": "healthcare_policy",
    "healthcare": "healthcare_policy",
    "border security and refugee assistance": "immigration_policy",
    "immigration policy": "immigration_policy",
    "immigration": "immigration_policy",
    "public education and student debt": "education_policy",
    "education reform": "education_policy",
    "education": "education_policy",
    "progressive taxation and wealth redistribution": "tax_policy",
    "tax policy": "tax_policy",
    "taxation": "tax_policy",
    "data protection and surveillance": "privacy_policy",
    "digital privacy": "privacy_policy",
    "privacy": "privacy_policy",
    "space colonization and research funding": "space_policy",
    "space exploration": "space_policy",
    "space": "space_policy",
}

# Checked in order; the first keyword contained in the topic wins.
_KEYWORD_FALLBACKS = [
    (("climate", "environment"), "climate_policy"),
    (("healthcare", "medical"), "healthcare_policy"),
    (("education", "school"), "education_policy"),
    (("immigration", "border"), "immigration_policy"),
    (("tax", "wealth"), "tax_policy"),
    (("ai", "artificial"), "ai_policy"),
    (("privacy", "data"), "privacy_policy"),
    (("space",), "space_policy"),
]

_STRONG_INDICATORS = ("evidence", "data", "research", "study", "proven")
_SUPPORTIVE = ("benefit", "improve")
_OPPOSING = ("harmful", "dangerous")


def topic_to_stance_key(topic: str) -> str:
    """Map a free-text debate topic to the stance key stored on profiles."""
    lowered = (topic or "").strip().lower()
    if lowered in _TOPIC_MAPPINGS:
        return _TOPIC_MAPPINGS[lowered]
    for keywords, key in _KEYWORD_FALLBACKS:
        if any(word in lowered for word in keywords):
            return key
    return "general_policy"


STANCE_KEYS = frozenset(
    set(_TOPIC_MAPPINGS.values()) | {key for _, key in _KEYWORD_FALLBACKS} | {"general_policy"}
)


def resolve_stance_key(value: str) -> str:
    """Accept either a stance key such as ``tax_policy`` or a free-text topic."""
    cleaned = (value or "").strip().lower()
    return cleaned if cleaned in STANCE_KEYS else topic_to_stance_key(cleaned)


@dataclass
class StanceChange:
    stance_key: str
    old: float
    new: float

    @property
    def change(self) -> float:
        return self.new - self.old

    def to_dict(self) -> Dict[str, Any]:
        return {"stance_key": self.stance_key, "old": self.old, "new": self.new, "change": self.change}


async def seed_profiles(store: ProfileStore) -> List[str]:
    """Write the default profiles that are missing from ``store``."""
    created: List[str] = []
    for agent_id, profile in SEED_PROFILES.items():
        if await store.get(agent_id) is None:
            await store.set(agent_id, AgentProfileModel(**profile).model_dump())
            created.append(agent_id)
    if created:
        logger.info("Seeded agent profiles: %s", ", ".join(created))
    return created


async def load_profile(store: ProfileStore, agent_id: str) -> Optional[AgentProfileModel]:
    raw = await store.get(agent_id)
    if raw is None:
        return None
    return AgentProfileModel(**raw)


def stance_shift_from_messages(agent_id: str, entries: Iterable[LogEntry], rng: random.Random) -> float:
    supporting = 0
    opposing = 0
    for entry in entries:
        if entry.fields.get("agent_id") == agent_id:
            continue
        text = str(entry.fields.get("message") or "").lower()
        if not any(word in text for word in _STRONG_INDICATORS):
            continue
        if any(word in text for word in _SUPPORTIVE):
            supporting += 1
        elif any(word in text for word in _OPPOSING):
            opposing += 1
    if supporting > opposing:
        return STANCE_STEP
    if opposing > supporting:
        return -STANCE_STEP
    return rng.uniform(-STANCE_JITTER, STANCE_JITTER)


async def evolve_stance(
    profiles: ProfileStore,
    log: AppendLog,
    agent_id: str,
    debate_id: str,
    topic: str,
    rng: Optional[random.Random] = None,
) -> StanceChange:
    """Shift ``agent_id``'s stance on ``topic`` based on the recent transcript and persist it.

    The new value is written to the profile and appended to the
    per-debate stance history stream for that agent and stance key.
    """
    profile = await load_profile(profiles, agent_id)
    if profile is None:
        raise LookupError(f"Agent profile not found for {agent_id}")
    stance_key = topic_to_stance_key(topic)
    old = profile.stance.get(stance_key, DEFAULT_STANCE)

    entries = await log.read_recent(transcript_key(debate_id), TRANSCRIPT_WINDOW)
    shift = stance_shift_from_messages(agent_id, entries, rng or random.Random())
    if profile.tone.strip().lower() == "stubborn":
        shift *= STUBBORN_FACTOR
    new = max(0.0, min(1.0, old + shift))

    profile.stance[stance_key] = new
    await profiles.set(agent_id, profile.model_dump())
    try:
        await log.append(
            stance_history_key(debate_id, agent_id, stance_key),
            {"stance_key": stance_key, "value": new, "timestamp": datetime.now(timezone.utc).isoformat()},
        )
    except Exception:
        logger.warning("Failed to record stance history for %s in %s", agent_id, debate_id, exc_info=True)
    logger.debug("%s stance on %s: %.3f -> %.3f", agent_id, stance_key, old, new)
    return StanceChange(stance_key, old, new)
