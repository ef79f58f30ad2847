"""Live sessions in this process, keyed by session id."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Iterator, Optional

from apps.tutor.errors import SessionLimitError

if TYPE_CHECKING:
    from apps.tutor.orchestrator import TutorSession

log = logging.getLogger("tutor_engine.registry")


class SessionRegistry:
    def __init__(self, max_sessions: int = 200) -> None:
        self.max_sessions = max_sessions
        self._sessions: dict[str, "TutorSession"] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator["TutorSession"]:
        return iter(list(self._sessions.values()))

    @property
    def is_full(self) -> bool:
        return len(self._sessions) >= self.max_sessions

    def add(self, session: "TutorSession") -> None:
        if session.session_id in self._sessions:
            return
        if self.is_full:
            log.warning("event=session_limit_reached current=%d max=%d", len(self._sessions), self.max_sessions)
            raise SessionLimitError(f"session limit reached ({self.max_sessions} active sessions)")
        self._sessions[session.session_id] = session
        log.info("event=session_registered session=%s active=%d", session.session_id, len(self._sessions))

    def get(self, session_id: str) -> Optional["TutorSession"]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            log.info("event=session_unregistered session=%s active=%d", session_id, len(self._sessions))

    async def close_all(self) -> None:
        """Close every live session; one failing close does not stop the others."""
        sessions = list(self._sessions.values())
        if not sessions:
            return
        log.info("event=closing_sessions count=%d", len(sessions))
        results = await asyncio.gather(*(s.close() for s in sessions), return_exceptions=True)
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                log.error("event=session_close_error session=%s error=%s", session.session_id, result)
