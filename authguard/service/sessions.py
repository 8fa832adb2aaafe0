from __future__ import annotations

import secrets
import threading
from datetime import datetime, timedelta
from typing import Optional

from authguard.logging import get_logger
from authguard.service.clock import Clock, SystemClock
from authguard.service.errors import (
    EntropySourceUnavailableError,
    InvalidOrExpiredSessionError,
)
from authguard.service.models import Session
from authguard.service.tokens import TokenSource, generate_token

logger = get_logger(__name__)

# 32 bytes -> 256 bits, comfortably above the 128-bit floor for session ids
SESSION_ID_BYTES = 32
_MAX_ID_ATTEMPTS = 3


class SessionStore:
    """In-process session table keyed by opaque, unguessable identifiers.

    Every operation runs under a single lock so that concurrent callers observe
    a linearizable history. Expired entries are removed when read, and
    ``sweep`` purges the rest so abandoned logins do not accumulate.
    """

    def __init__(
        self,
        *,
        clock: Optional[Clock] = None,
        token_source: TokenSource = secrets.token_urlsafe,
    ) -> None:
        self._clock = clock or SystemClock()
        self._token_source = token_source
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _new_id(self) -> str:
        for _ in range(_MAX_ID_ATTEMPTS):
            session_id = generate_token(SESSION_ID_BYTES, self._token_source)
            if session_id not in self._sessions:
                return session_id
            logger.warning("session_id_collision")
        raise EntropySourceUnavailableError("session id generator keeps colliding")

    def create_session(self, user_id: str, duration: timedelta) -> str:
        if duration <= timedelta(0):
            raise ValueError("session duration must be positive")
        with self._lock:
            now = self._clock.now()
            session_id = self._new_id()
            self._sessions[session_id] = Session(
                id=session_id,
                user_id=user_id,
                created_at=now,
                expires_at=now + duration,
            )
        logger.info("session_created", user_id=user_id, expires_in=duration.total_seconds())
        return session_id

    def _get_live(self, session_id: str, now: datetime) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise InvalidOrExpiredSessionError("invalid or expired session")
        if session.is_expired(now):
            del self._sessions[session_id]
            logger.debug("session_expired", user_id=session.user_id)
            raise InvalidOrExpiredSessionError("invalid or expired session")
        return session

    def validate_session(self, session_id: str) -> str:
        """Return the bound user id; expiry is never extended here."""
        with self._lock:
            return self._get_live(session_id, self._clock.now()).user_id

    def renew_session(self, session_id: str, duration: timedelta) -> Session:
        """Explicitly extend a live session to ``now + duration``."""
        if duration <= timedelta(0):
            raise ValueError("session duration must be positive")
        with self._lock:
            now = self._clock.now()
            session = self._get_live(session_id, now)
            session.expires_at = now + duration
            return Session(**vars(session))

    def end_session(self, session_id: str) -> None:
        with self._lock:
            removed = self._sessions.pop(session_id, None)
        if removed is not None:
            logger.info("session_ended", user_id=removed.user_id)

    def end_user_sessions(self, user_id: str) -> int:
        with self._lock:
            doomed = [sid for sid, s in self._sessions.items() if s.user_id == user_id]
            for sid in doomed:
                del self._sessions[sid]
        if doomed:
            logger.info("user_sessions_ended", user_id=user_id, count=len(doomed))
        return len(doomed)

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Purge expired sessions. Returns the number removed."""
        with self._lock:
            cutoff = now or self._clock.now()
            expired = [sid for sid, s in self._sessions.items() if s.is_expired(cutoff)]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.debug("sessions_swept", count=len(expired))
        return len(expired)
