"""
Error taxonomy for the debate backend.

Every failure the core raises carries an ``ErrorKind`` so the HTTP
layer and the scheduler can tell a degraded-but-continuing condition
(``transient``) from a caller mistake (``conflict``, ``validation``,
``rate_limited``) or a self-corrected state problem
(``invariant_violation``).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    CONFLICT = "conflict"
    INVARIANT_VIOLATION = "invariant_violation"
    RATE_LIMITED = "rate_limited"
    VALIDATION = "validation"


class DebateServiceError(RuntimeError):
    """Base class for errors raised by the debate core."""

    kind: ErrorKind = ErrorKind.TRANSIENT
    code: str = "DEBATE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details: Dict[str, Any] = dict(details or {})


class ConfigurationError(DebateServiceError):
    kind = ErrorKind.VALIDATION
    code = "CONFIGURATION_ERROR"


class SessionConflictError(DebateServiceError):
    """Raised when a session id is already registered and running."""

    kind = ErrorKind.CONFLICT
    code = "DEBATE_ALREADY_RUNNING"

    def __init__(self, session_id: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"Debate {session_id} is already running", details)
        self.session_id = session_id


class SessionNotFoundError(DebateServiceError):
    kind = ErrorKind.VALIDATION
    code = "DEBATE_NOT_FOUND"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"No active debate found for {session_id}")
        self.session_id = session_id


class StartCooldownError(DebateServiceError):
    """Raised when session starts arrive faster than the global cooldown allows."""

    kind = ErrorKind.RATE_LIMITED
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"Please wait {retry_after * 1000:.0f}ms between debate starts")
        self.retry_after = max(0.0, float(retry_after))


class InvalidParticipantsError(DebateServiceError):
    kind = ErrorKind.VALIDATION
    code = "VALIDATION_ERROR"


class GenerationError(DebateServiceError):
    kind = ErrorKind.TRANSIENT
    code = "GENERATION_ERROR"


class EmbeddingError(DebateServiceError):
    kind = ErrorKind.TRANSIENT
    code = "EMBEDDING_ERROR"


class TurnCancelled(Exception):
    """Raised inside a turn when the owning session was stopped mid-flight."""
