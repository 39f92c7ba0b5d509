"""Error taxonomy of the research loop.

Provider errors live next to the provider contract and are re-exported here
so callers can import every loop-facing error from one place. Budget and
loop-detection stops are not exceptions; they surface as ``StopReason``.
"""

from __future__ import annotations

from fin_research.providers.base import (
    InvalidArgumentsError,
    ProviderError,
    ProviderTimeoutError,
    UnsupportedCapabilityError,
)

__all__ = [
    "CacheError",
    "InvalidArgumentsError",
    "PersistenceError",
    "PlanningError",
    "ProviderError",
    "ProviderTimeoutError",
    "ResearchError",
    "SessionBusyError",
    "SessionNotFoundError",
    "SessionNotResumableError",
    "UnsupportedCapabilityError",
]


class ResearchError(RuntimeError):
    """Base class for research loop errors surfaced to callers."""


class PersistenceError(ResearchError):
    """Session store write or read failed; fatal to the running loop."""


class SessionNotFoundError(ResearchError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionBusyError(ResearchError):
    """Another loop currently holds the session lease."""

    def __init__(self, session_id: str, owner: str | None = None) -> None:
        held_by = f" (held by {owner})" if owner else ""
        super().__init__(f"Session {session_id} is already being researched{held_by}.")
        self.session_id = session_id
        self.owner = owner


class SessionNotResumableError(ResearchError):
    def __init__(self, session_id: str, status: str) -> None:
        super().__init__(f"Session {session_id} is {status}; only active sessions can be resumed.")
        self.session_id = session_id
        self.status = status


class PlanningError(ResearchError):
    """Planner could not form any task for the query."""


class CacheError(ResearchError):
    """Cache I/O problem; never escapes the cache."""
