"""
REST routes for debate sessions and agents.

Debates run in the background on the turn scheduler and stream their
events over the ``/ws/debate`` WebSocket. These routes start and stop
sessions, list what is running and expose the persisted transcripts,
memories and agent profiles. Domain errors raised by the scheduler are
turned into JSON error responses by the handler registered in
``main.create_app``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, status

from ..core.stores import memory_key, stance_history_key, transcript_key
from ..debate.profiles import load_profile, resolve_stance_key
from ..models.schemas import AgentProfileModel, ProfileUpdateRequest, StartDebateRequest, StartMultipleRequest
from ..services import Services

router = APIRouter(prefix="/api", tags=["debate"])

# Set by the application factory at startup
services: Optional[Services] = None


def _services() -> Services:
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Debate services not ready")
    return services


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.post("/debate/start")
async def start_debate(request: StartDebateRequest) -> Dict[str, Any]:
    svc = _services()
    session = await svc.scheduler.start_session(
        topic=request.topic,
        participants=request.agents,
        session_id=request.debate_id,
    )
    return {
        "success": True,
        "debate_id": session.session_id,
        "topic": session.topic,
        "agents": session.participants,
        "status": session.status.value,
        "timestamp": _now(),
    }


@router.post("/debate/{debate_id}/stop")
async def stop_debate(debate_id: str) -> Dict[str, Any]:
    session = await _services().scheduler.stop_session(debate_id)
    return {
        "success": True,
        "debate_id": debate_id,
        "message_count": session.message_count,
        "timestamp": _now(),
    }


@router.post("/debates/stop-all")
async def stop_all_debates() -> Dict[str, Any]:
    stopped = await _services().scheduler.stop_all()
    return {"success": True, "stopped_debates": stopped, "count": len(stopped), "timestamp": _now()}


@router.get("/debates/active")
async def active_debates() -> Dict[str, Any]:
    scheduler = _services().scheduler
    debates = scheduler.get_active_sessions()
    return {
        "active_debates": debates,
        "total": len(debates),
        "metrics": scheduler.metrics_snapshot(),
        "timestamp": _now(),
    }


@router.post("/debates/start-multiple")
async def start_multiple_debates(request: StartMultipleRequest) -> Dict[str, Any]:
    sessions = await _services().scheduler.start_many(request.topics, request.agents)
    return {
        "success": True,
        "debates": [{"debate_id": s.session_id, "topic": s.topic, "agents": s.participants} for s in sessions],
        "count": len(sessions),
        "timestamp": _now(),
    }


@router.get("/debate/{debate_id}/messages")
async def debate_messages(debate_id: str, limit: int = Query(default=20, ge=1, le=500)) -> Dict[str, Any]:
    entries = await _services().append_log.read_recent(transcript_key(debate_id), limit)
    messages = [{"id": entry.entry_id, **entry.fields} for entry in entries]
    return {"debate_id": debate_id, "messages": messages, "count": len(messages)}


@router.get("/agents")
async def list_agents() -> Dict[str, Any]:
    store = _services().profile_store
    agents = []
    for agent_id in await store.list_ids():
        profile = await load_profile(store, agent_id)
        if profile is None:
            continue
        agents.append({"id": agent_id, "name": profile.name, "role": profile.role, "tone": profile.tone})
    return {"agents": agents, "total_agents": len(agents), "timestamp": _now()}


@router.get("/agent/{agent_id}/profile")
async def agent_profile(agent_id: str) -> Dict[str, Any]:
    profile = await load_profile(_services().profile_store, agent_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")
    return {"id": agent_id, **profile.model_dump()}


@router.post("/agent/{agent_id}/update")
async def update_agent(agent_id: str, request: ProfileUpdateRequest) -> Dict[str, Any]:
    store = _services().profile_store
    current = await load_profile(store, agent_id)
    if current is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")
    changes = request.model_dump(exclude_none=True)
    if "stance" in changes:
        changes["stance"] = {**current.stance, **changes["stance"]}
    updated = AgentProfileModel(**{**current.model_dump(), **changes})
    await store.set(agent_id, updated.model_dump())
    return {"success": True, "id": agent_id, "profile": updated.model_dump()}


@router.get("/agent/{agent_id}/memory/{debate_id}")
async def agent_memory(agent_id: str, debate_id: str, limit: int = Query(default=10, ge=1, le=200)) -> Dict[str, Any]:
    entries = await _services().append_log.read_recent(memory_key(debate_id, agent_id), limit)
    memories = [{"id": entry.entry_id, **entry.fields} for entry in entries]
    return {"agent_id": agent_id, "debate_id": debate_id, "memories": memories, "count": len(memories)}


@router.get("/agent/{agent_id}/stance/{debate_id}/{topic}")
async def agent_stance_history(
    agent_id: str, debate_id: str, topic: str, limit: int = Query(default=100, ge=1, le=1000)
) -> Dict[str, Any]:
    """Stance values recorded for ``agent_id`` in one debate, oldest first.

    ``topic`` may be a stance key (``climate_policy``) or a free-text topic.
    """
    stance_key = resolve_stance_key(topic)
    entries = await _services().append_log.read_recent(stance_history_key(debate_id, agent_id, stance_key), limit)
    history = [{"timestamp": entry.fields.get("timestamp"), "value": entry.fields.get("value")} for entry in entries]
    return {
        "agent_id": agent_id,
        "debate_id": debate_id,
        "stance_key": stance_key,
        "history": history,
        "count": len(history),
    }
