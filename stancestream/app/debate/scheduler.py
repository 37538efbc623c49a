"""
Turn scheduler for concurrent debate sessions.

Each session runs as one asyncio task that drives turns strictly one at
a time. Speaking rights rotate through the participant list. A turn for
an agent that spoke less than ``min_agent_delay`` seconds ago is
deferred (the loop waits out the remainder and retries the same agent),
and a candidate that was the last persisted speaker is skipped, so no
agent ever produces two consecutive successful turns.

Stopping is cooperative. ``stop_session`` removes the session from the
registry and sets its cancel event; the loop checks for that before
every turn, after the cache lookup, before persisting, and throughout
every wait (waits are polled in ``poll_slice`` slices). Nothing is
written for a session after its stop has been observed.

The loop is bounded by an attempt ceiling of ``rounds * participants``
generation attempts. Successful and failed generations both count.
Deferrals and skips draw on a separate budget of the same size; once
that budget is spent, further deferrals count as attempts too, so the
loop always terminates.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from ..core.config import DebateSettings
from ..core.errors import InvalidParticipantsError, SessionNotFoundError, TurnCancelled
from ..core.stores import AppendLog, ProfileStore, PushChannel, memory_key, transcript_key
from .generation import GenerationResult, MessagePipeline
from .profiles import StanceChange, evolve_stance, topic_to_stance_key
from .session import Session, SessionRegistry, SessionStatus, TurnAttempt, TurnOutcome

logger = logging.getLogger("debate_scheduler")

MAX_INPUT_LENGTH = 1000
_TAG_RE = re.compile(r"<[^>]*>")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")


def sanitize_input(value: Any) -> str:
    """Strip markup and control characters and cap the length."""
    if value is None:
        return ""
    text = _TAG_RE.sub("", str(value))
    text = _CONTROL_RE.sub(" ", text)
    return text.strip()[:MAX_INPUT_LENGTH]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class DebateMetrics:
    sessions_started: int = 0
    messages_generated: int = 0
    generation_errors: int = 0
    cache_hits: int = 0

    def to_dict(self, concurrent_sessions: int) -> Dict[str, Any]:
        data = asdict(self)
        data["concurrent_sessions"] = concurrent_sessions
        return data


class TurnScheduler:
    def __init__(
        self,
        pipeline: MessagePipeline,
        registry: SessionRegistry,
        log: AppendLog,
        channel: PushChannel,
        profiles: ProfileStore,
        settings: Optional[DebateSettings] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.pipeline = pipeline
        self.registry = registry
        self.log = log
        self.channel = channel
        self.profiles = profiles
        self.settings = settings or DebateSettings()
        self.metrics = DebateMetrics()
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    def _validate_participants(self, participants: Optional[Sequence[str]]) -> List[str]:
        raw = list(participants) if participants else list(self.settings.default_agents)
        agents: List[str] = []
        for item in raw:
            agent_id = sanitize_input(item)
            if not agent_id:
                raise InvalidParticipantsError("Agent ids must be non-empty strings")
            agents.append(agent_id)
        if len(set(agents)) != len(agents):
            raise InvalidParticipantsError("Agent ids must be distinct", {"agents": agents})
        if len(agents) < 2:
            raise InvalidParticipantsError("A debate needs at least two agents", {"agents": agents})
        return agents

    async def start_session(
        self,
        topic: Optional[str] = None,
        participants: Optional[Sequence[str]] = None,
        session_id: Optional[str] = None,
        enforce_cooldown: bool = True,
    ) -> Session:
        requested_id = sanitize_input(session_id)
        if not requested_id or requested_id == "live_debate":
            requested_id = f"debate_{_now_ms()}"
        agents = self._validate_participants(participants)
        session = Session(
            session_id=requested_id,
            topic=sanitize_input(topic) or self.settings.default_topic,
            participants=agents,
        )
        await self.registry.register(session, enforce_cooldown=enforce_cooldown)
        self.metrics.sessions_started += 1
        logger.info("Starting debate %s on %r with %s", session.session_id, session.topic, ", ".join(agents))

        await self._broadcast(
            {
                "type": "debate_started",
                "debate_id": session.session_id,
                "topic": session.topic,
                "agents": agents,
                "timestamp": _utc_now(),
            }
        )
        session.task = asyncio.create_task(self._run(session), name=f"debate:{session.session_id}")
        return session

    async def start_many(self, topics: Sequence[str], participants: Optional[Sequence[str]] = None) -> List[Session]:
        agents = self._validate_participants(participants)
        base = _now_ms()
        sessions = []
        for idx, topic in enumerate(topics):
            session = await self.start_session(
                topic=topic,
                participants=agents,
                session_id=f"multi_debate_{base}_{idx}",
                enforce_cooldown=False,
            )
            sessions.append(session)
        return sessions

    async def stop_session(self, session_id: str) -> Session:
        session = await self.registry.remove(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        session.cancel()
        session.status = SessionStatus.STOPPED
        logger.info("Stopped debate %s after %s messages", session_id, session.message_count)
        await self._broadcast(
            {
                "type": "debate_stopped",
                "debate_id": session_id,
                "message_count": session.message_count,
                "timestamp": _utc_now(),
            }
        )
        return session

    async def stop_all(self) -> List[str]:
        sessions = await self.registry.drain()
        for session in sessions:
            session.cancel()
            session.status = SessionStatus.STOPPED
        stopped = [session.session_id for session in sessions]
        logger.info("Stopped %s debates", len(stopped))
        await self._broadcast(
            {
                "type": "all_debates_stopped",
                "stopped_debates": stopped,
                "count": len(stopped),
                "timestamp": _utc_now(),
            }
        )
        return stopped

    def get_active_sessions(self) -> List[Dict[str, Any]]:
        return [session.to_dict() for session in self.registry.list()]

    def metrics_snapshot(self) -> Dict[str, Any]:
        return self.metrics.to_dict(len(self.registry))

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop every session and wait for the loops to unwind."""
        tasks = [s.task for s in self.registry.list() if s.task is not None and not s.task.done()]
        await self.stop_all()
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def _is_live(self, session: Session) -> bool:
        return not session.cancelled and self.registry.is_current(session)

    async def _sleep_unless_cancelled(self, session: Session, seconds: float) -> bool:
        """Wait ``seconds``; return False as soon as the session is no longer live."""
        deadline = time.monotonic() + max(0.0, seconds)
        while True:
            if not self._is_live(session):
                return False
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return True
            try:
                await asyncio.wait_for(
                    session.cancel_event.wait(),
                    timeout=min(self.settings.poll_slice, remaining),
                )
            except asyncio.TimeoutError:
                continue
            return False

    def _remaining_delay(self, session: Session, agent_id: str) -> float:
        last = session.last_spoke.get(agent_id)
        if last is None:
            return 0.0
        return max(0.0, self.settings.min_agent_delay - (time.monotonic() - last))

    async def _spoke_last(self, session: Session, agent_id: str) -> bool:
        """True when ``agent_id`` wrote the newest transcript entry.

        The persisted transcript wins over the in-memory last speaker, so an
        entry written by another process is honoured; the in-memory value
        covers an empty or unreadable transcript.
        """
        try:
            recent = await self.log.read_recent(transcript_key(session.session_id), 2)
        except Exception:
            logger.warning("Could not read transcript of %s", session.session_id, exc_info=True)
            recent = []
        if recent:
            return recent[-1].fields.get("agent_id") == agent_id
        return session.last_speaker == agent_id

    async def _persist(self, session: Session, agent_id: str, result: GenerationResult) -> bool:
        fields = {
            "agent_id": agent_id,
            "agent_name": result.agent_name,
            "message": result.message,
            "cached": "true" if result.cache_hit else "false",
            "similarity": f"{result.similarity:.4f}",
            "timestamp": _utc_now(),
        }
        try:
            await self.log.append(transcript_key(session.session_id), fields)
        except Exception:
            logger.warning("Failed to persist message of %s in %s", agent_id, session.session_id, exc_info=True)
            return False
        try:
            await self.log.append(
                memory_key(session.session_id, agent_id),
                {"type": "statement", "content": result.message},
            )
        except Exception:
            logger.warning("Failed to update memory of %s in %s", agent_id, session.session_id, exc_info=True)
        return True

    async def _evolve_stance(self, session: Session, agent_id: str) -> StanceChange:
        try:
            return await evolve_stance(self.profiles, self.log, agent_id, session.session_id, session.topic, self._rng)
        except Exception:
            logger.warning("Stance evolution failed for %s", agent_id, exc_info=True)
            return StanceChange(topic_to_stance_key(session.topic), 0.5, 0.5)

    async def _run(self, session: Session) -> None:
        n = len(session.participants)
        total_turns = self.settings.rounds * n
        attempts = 0
        completed = 0
        deferrals = 0
        session.status = SessionStatus.RUNNING
        try:
            await self.log.delete(transcript_key(session.session_id))
            while attempts < total_turns:
                if not self._is_live(session):
                    break
                agent_id = session.participants[session.current_index]

                wait = self._remaining_delay(session, agent_id)
                skip = wait <= 0 and await self._spoke_last(session, agent_id)
                if wait > 0 or skip:
                    deferrals += 1
                    if deferrals > total_turns:
                        attempts += 1
                    turn = TurnAttempt(attempts, completed, agent_id, TurnOutcome.DEFERRED)
                    if skip:
                        logger.warning("%s spoke last in %s, advancing turn (%s)", agent_id, session.session_id, turn)
                        session.advance()
                        continue
                    logger.debug("Deferring %s for %.2fs (%s)", agent_id, wait, turn)
                    if not await self._sleep_unless_cancelled(session, wait):
                        break
                    continue

                attempts += 1
                try:
                    result = await self.pipeline.generate(
                        agent_id,
                        session.session_id,
                        session.topic,
                        participant_count=n,
                        cancel_event=session.cancel_event,
                    )
                except TurnCancelled:
                    break
                if not self._is_live(session):
                    break

                if result.degraded or not await self._persist(session, agent_id, result):
                    turn = TurnAttempt(attempts, completed, agent_id, TurnOutcome.ERROR)
                    logger.warning("Turn failed for %s in %s (%s)", agent_id, session.session_id, turn)
                    session.error_count += 1
                    self.metrics.generation_errors += 1
                    session.advance()
                    await self._broadcast(
                        {
                            "type": "error",
                            "debate_id": session.session_id,
                            "agent_id": agent_id,
                            "error_kind": (result.error_kind.value if result.error_kind else "transient"),
                            "message": result.error or "Failed to persist message",
                            "timestamp": _utc_now(),
                        }
                    )
                    continue

                completed += 1
                session.message_count += 1
                session.last_speaker = agent_id
                session.last_spoke[agent_id] = time.monotonic()
                session.advance()
                self.metrics.messages_generated += 1
                if result.cache_hit:
                    self.metrics.cache_hits += 1
                logger.debug("%s: %s", session.session_id, TurnAttempt(attempts, completed, agent_id, TurnOutcome.SUCCESS))

                stance = await self._evolve_stance(session, agent_id)
                if not self._is_live(session):
                    break
                await self._broadcast_turn(session, agent_id, result, stance)

                if completed < total_turns and not await self._sleep_unless_cancelled(
                    session, self.settings.pacing_interval
                ):
                    break

            if self._is_live(session):
                session.status = SessionStatus.COMPLETED
                logger.info(
                    "Debate %s completed: %s/%s turns succeeded",
                    session.session_id,
                    completed,
                    total_turns,
                )
                await self._broadcast(
                    {
                        "type": "debate_ended",
                        "debate_id": session.session_id,
                        "topic": session.topic,
                        "message_count": completed,
                        "error_count": session.error_count,
                        "timestamp": _utc_now(),
                    }
                )
            else:
                session.status = SessionStatus.STOPPED
        except Exception as exc:
            session.status = SessionStatus.STOPPED
            logger.exception("Debate loop for %s failed", session.session_id)
            await self._broadcast(
                {
                    "type": "error",
                    "debate_id": session.session_id,
                    "error_kind": "transient",
                    "message": str(exc),
                    "timestamp": _utc_now(),
                }
            )
        finally:
            await self.registry.remove(session.session_id, expected=session)
            await self._broadcast(
                {
                    "type": "metrics_updated",
                    "metrics": self.metrics_snapshot(),
                    "timestamp": _utc_now(),
                }
            )

    async def _broadcast_turn(
        self,
        session: Session,
        agent_id: str,
        result: GenerationResult,
        stance: StanceChange,
    ) -> None:
        timestamp = _utc_now()
        if result.cache_hit:
            await self._broadcast(
                {
                    "type": "cache_hit",
                    "debate_id": session.session_id,
                    "agent_id": agent_id,
                    "similarity": result.similarity,
                    "cost_saved": result.cost_saved,
                    "timestamp": timestamp,
                }
            )
        await self._broadcast(
            {
                "type": "new_message",
                "debate_id": session.session_id,
                "agent_id": agent_id,
                "agent_name": result.agent_name,
                "message": result.message,
                "turn": result.turn_number,
                "stance": {"topic": session.topic, "value": stance.new, "change": stance.change},
                "cache_info": result.cache_info(),
                "metrics": {
                    "total_messages": self.metrics.messages_generated,
                    "active_debates": len(self.registry),
                    "this_debate_messages": session.message_count,
                },
                "timestamp": timestamp,
            }
        )
        await self._broadcast(
            {
                "type": "stance_update",
                "debate_id": session.session_id,
                "agent_id": agent_id,
                "stance_key": stance.stance_key,
                "old": stance.old,
                "new": stance.new,
                "change": stance.change,
                "timestamp": timestamp,
            }
        )

    async def _broadcast(self, event: Dict[str, Any]) -> None:
        try:
            await self.channel.broadcast(event)
        except Exception:
            logger.warning("Broadcast of %s event failed", event.get("type"), exc_info=True)
