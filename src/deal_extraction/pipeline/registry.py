"""
Session registry: session id -> live PipelineSession.

An explicit object injected into the service (no module globals). Terminal
sessions idle longer than the TTL are evicted together with their progress
channel and clarification records.
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta

import structlog

from ..errors import SessionNotFoundError
from .clarifications import ClarificationManager
from .events import ProgressEventBridge
from .session import PipelineSession

logger = structlog.get_logger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 3600.0


class SessionRegistry:
    """
    Thread-safe map of live sessions.

    Args:
        events: Bridge owning the sessions' progress channels
        clarifications: Manager holding the sessions' clarification records
        ttl_seconds: Idle time after which a terminal session is evicted
    """

    def __init__(
        self,
        events: ProgressEventBridge,
        clarifications: ClarificationManager,
        ttl_seconds: float = DEFAULT_SESSION_TTL_SECONDS,
    ):
        self.events = events
        self.clarifications = clarifications
        self.ttl = timedelta(seconds=ttl_seconds)
        self._sessions: dict[str, PipelineSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def create(self, session: PipelineSession) -> PipelineSession:
        """Register a new session; ids must be unique."""
        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session {session.session_id} is already registered")
            self._sessions[session.session_id] = session
        logger.debug('registry.session_created', session_id=session.session_id)
        return session

    def get(self, session_id: str) -> PipelineSession:
        """
        Raises:
            SessionNotFoundError: If the id is unknown or evicted
        """
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(
                f"Pipeline session not found: {session_id}",
                context={'session_id': session_id},
            )
        return session

    def list_sessions(self, deal_id: str | None = None) -> list[PipelineSession]:
        with self._lock:
            sessions = list(self._sessions.values())
        if deal_id is not None:
            sessions = [s for s in sessions if s.deal_id == deal_id]
        return sessions

    def remove(self, session_id: str) -> bool:
        """Drop a session with its channel and clarifications."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self.events.remove(session_id)
        self.clarifications.remove_session(session_id)
        logger.debug('registry.session_removed', session_id=session_id)
        return True

    def evict_expired(self, now: datetime | None = None) -> list[str]:
        """
        Remove terminal sessions idle longer than the TTL.

        Returns:
            Evicted session ids
        """
        now = now or datetime.now()
        with self._lock:
            expired = [
                sid
                for sid, session in self._sessions.items()
                if session.is_terminal and now - session.updated_at > self.ttl
            ]
        for session_id in expired:
            self.remove(session_id)
        if expired:
            logger.info('registry.sessions_evicted', count=len(expired))
        return expired

    async def run_eviction_loop(self, interval_seconds: float) -> None:
        """Evict expired sessions every interval until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.evict_expired()
            except Exception:
                logger.exception('registry.eviction_failed')
