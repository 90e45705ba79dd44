"""
Session Registry — process-wide lookup of live voice sessions by id.
Safe to call from any thread; entries are added when a session starts
running and removed during its teardown.
"""
from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Optional

import structlog

if TYPE_CHECKING:
    from voice.orchestrator import SessionOrchestrator

logger = structlog.get_logger()


class DuplicateSessionError(Exception):
    """Raised when a session id is registered twice."""


class SessionRegistry:

    def __init__(self):
        self._sessions: dict[str, SessionOrchestrator] = {}
        self._lock = threading.Lock()

    def register(self, orchestrator: SessionOrchestrator) -> None:
        with self._lock:
            if orchestrator.session_id in self._sessions:
                raise DuplicateSessionError(f"Session already registered: {orchestrator.session_id}")
            self._sessions[orchestrator.session_id] = orchestrator
            count = len(self._sessions)
        logger.debug("session_registered", session_id=orchestrator.session_id, active=count)

    def unregister(self, session_id: str) -> Optional[SessionOrchestrator]:
        with self._lock:
            orchestrator = self._sessions.pop(session_id, None)
        if orchestrator is not None:
            logger.debug("session_unregistered", session_id=session_id)
        return orchestrator

    def get(self, session_id: str) -> Optional[SessionOrchestrator]:
        with self._lock:
            return self._sessions.get(session_id)

    def all(self) -> list[SessionOrchestrator]:
        with self._lock:
            return list(self._sessions.values())

    def snapshot(self) -> list[dict[str, Any]]:
        return [o.session.to_dict() for o in self.all()]

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
