"""
Pydantic data models for the debate backend.

AgentProfileModel is the shape persisted in the profile store and read
by the generation pipeline. The request models validate the bodies of
the debate and agent REST endpoints; anything the scheduler itself must
enforce (distinct participants, sanitised ids) is checked again there,
since the scheduler can be driven without going through HTTP.

Note: Pydantic v2 is used throughout this project.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class AgentProfileModel(BaseModel):
    """Persona of a debating agent.

    Attributes:
        name: Display name used in prompts and broadcasts.
        role: Role description, e.g. "moderate senator".
        tone: Speaking tone; a ``stubborn`` tone halves stance shifts.
        biases: Core beliefs injected into the prompt.
        stance: Mapping of stance key (see ``topic_to_stance_key``) to a
            position in [0, 1]. Out-of-range values are clamped.
    """

    name: str = Field(..., description="Display name of the agent")
    role: str = Field(default="debater", description="Role of the agent")
    tone: str = Field(default="measured", description="Speaking tone")
    biases: List[str] = Field(default_factory=list, description="Core beliefs")
    stance: Dict[str, float] = Field(default_factory=dict, description="Per-topic stance in [0, 1]")

    model_config = ConfigDict(extra="ignore")

    @field_validator("stance")
    def clamp_stance(cls, v: Dict[str, float]) -> Dict[str, float]:
        return {str(key): _clamp_unit(value) for key, value in v.items()}


class StartDebateRequest(BaseModel):
    debate_id: Optional[str] = Field(default=None, alias="debateId")
    topic: Optional[str] = Field(default=None, max_length=5000)
    agents: Optional[List[str]] = Field(default=None)

    model_config = ConfigDict(populate_by_name=True)


class StartMultipleRequest(BaseModel):
    topics: List[str] = Field(default_factory=list)
    agents: Optional[List[str]] = Field(default=None)

    @field_validator("topics")
    def require_topics(cls, v: List[str]) -> List[str]:
        topics = [str(item) for item in v if str(item or "").strip()]
        if not topics:
            raise ValueError("At least one topic is required")
        return topics


class ProfileUpdateRequest(BaseModel):
    """Partial profile update; only provided fields are changed."""

    name: Optional[str] = None
    role: Optional[str] = None
    tone: Optional[str] = None
    biases: Optional[List[str]] = None
    stance: Optional[Dict[str, float]] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("stance")
    def clamp_stance(cls, v: Optional[Dict[str, float]]) -> Optional[Dict[str, float]]:
        if v is None:
            return v
        return {str(key): _clamp_unit(value) for key, value in v.items()}
