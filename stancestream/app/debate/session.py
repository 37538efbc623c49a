"""
Debate sessions and the process-wide session registry.

The registry is the only mutable structure shared between concurrently
running debate loops. All writes go through one ``asyncio.Lock``; reads
are plain dictionary lookups on the event loop thread.

Removal can be made conditional on object identity. A loop that exits
late (after its session was stopped and a new session reused the same
id) must not remove the newer entry.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..core.errors import SessionConflictError, StartCooldownError


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    STOPPED = "stopped"
    COMPLETED = "completed"


class TurnOutcome(str, Enum):
    SUCCESS = "success"
    DEFERRED = "deferred"
    ERROR = "error"


@dataclass
class Session:
    session_id: str
    topic: str
    participants: List[str]
    status: SessionStatus = SessionStatus.PENDING
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    current_index: int = 0
    last_speaker: Optional[str] = None
    message_count: int = 0
    error_count: int = 0
    fact_checks: int = 0
    # agent_id -> monotonic time of the agent's last persisted message in this session
    last_spoke: Dict[str, float] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def is_active(self) -> bool:
        return self.status in (SessionStatus.PENDING, SessionStatus.RUNNING)

    def cancel(self) -> None:
        self.cancel_event.set()

    def advance(self) -> None:
        self.current_index = (self.current_index + 1) % len(self.participants)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "debate_id": self.session_id,
            "topic": self.topic,
            "agents": list(self.participants),
            "status": self.status.value,
            "message_count": self.message_count,
            "error_count": self.error_count,
            "fact_checks": self.fact_checks,
            "current_agent": self.participants[self.current_index] if self.participants else None,
            "last_speaker": self.last_speaker,
            "start_time": datetime.fromtimestamp(self.started_at, timezone.utc).isoformat(),
        }


@dataclass
class TurnAttempt:
    """One iteration of a session's scheduling loop."""

    attempted: int
    completed: int
    agent_id: str
    outcome: TurnOutcome


class SessionRegistry:
    def __init__(self, start_cooldown: float = 0.1, clock: Callable[[], float] = time.monotonic) -> None:
        self.start_cooldown = max(0.0, float(start_cooldown))
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._last_start: Optional[float] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    async def register(self, session: Session, enforce_cooldown: bool = True) -> None:
        """Insert ``session``.

        Raises ``StartCooldownError`` when the previous start was less
        than ``start_cooldown`` seconds ago, and ``SessionConflictError``
        when the id is held by a session that is still active.
        """
        async with self._lock:
            now = self._clock()
            if enforce_cooldown and self._last_start is not None:
                elapsed = now - self._last_start
                if elapsed < self.start_cooldown:
                    raise StartCooldownError(self.start_cooldown - elapsed)
            existing = self._sessions.get(session.session_id)
            if existing is not None and existing.is_active:
                raise SessionConflictError(session.session_id, {"existing_status": existing.status.value})
            self._sessions[session.session_id] = session
            self._last_start = now

    async def remove(self, session_id: str, expected: Optional[Session] = None) -> Optional[Session]:
        """Remove and return the entry for ``session_id``.

        With ``expected`` set, the entry is only removed if it is that
        exact session object.
        """
        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None or (expected is not None and current is not expected):
                return None
            return self._sessions.pop(session_id)

    async def drain(self) -> List[Session]:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            return sessions

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def is_current(self, session: Session) -> bool:
        return self._sessions.get(session.session_id) is session

    def list(self) -> List[Session]:
        return list(self._sessions.values())
