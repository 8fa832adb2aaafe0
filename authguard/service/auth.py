from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Optional, Protocol

from authguard.config import Settings
from authguard.logging import get_logger, log_login_attempt
from authguard.service.clock import Clock, SystemClock
from authguard.service.email import EmailService
from authguard.service.models import LoginResult, PasswordResetToken
from authguard.service.login_errors import (
    classify_failed_login,
    guidance_for,
    rate_limited_error,
)
from authguard.service.password_reset import PasswordResetCoordinator
from authguard.service.passwords import (
    PasswordHasher,
    PasswordPolicy,
    validate_password_strength,
)
from authguard.service.rate_limit import TokenBucketLimiter
from authguard.service.sessions import SessionStore

logger = get_logger(__name__)


class UserDirectory(Protocol):
    """External user store; registration and profiles live there, not here."""

    def verify_credentials(self, identity: str, password: str) -> Optional[str]: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def get_email(self, user_id: str) -> Optional[str]: ...


class AuthService:
    """Login, logout and password-reset flows on top of the auth components."""

    def __init__(
        self,
        directory: UserDirectory,
        sessions: SessionStore,
        limiter: TokenBucketLimiter,
        resets: PasswordResetCoordinator,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        hasher: Optional[PasswordHasher] = None,
        email: Optional[EmailService] = None,
    ) -> None:
        self.directory = directory
        self.sessions = sessions
        self.limiter = limiter
        self.resets = resets
        self.settings = settings
        self.email = email
        self.policy = PasswordPolicy.from_settings(settings)
        self._clock = clock or SystemClock()
        self._hasher = hasher or PasswordHasher()
        self._session_ttl = timedelta(minutes=settings.session_ttl_minutes)
        self._failure_window = timedelta(minutes=settings.failure_window_minutes)
        self._state_lock = threading.Lock()
        # identity -> (failure count, window start)
        self._failures: dict[str, tuple[int, datetime]] = {}

    def _record_failure(self, identity: str) -> int:
        now = self._clock.now()
        with self._state_lock:
            current = self._failures.get(identity)
            count, window_start = 1, now
            if current:
                prev_count, prev_start = current
                if now - prev_start < self._failure_window:
                    count, window_start = prev_count + 1, prev_start
            self._failures[identity] = (count, window_start)
        return count

    def failure_count(self, identity: str) -> int:
        now = self._clock.now()
        with self._state_lock:
            current = self._failures.get(identity)
        if not current or now - current[1] >= self._failure_window:
            return 0
        return current[0]

    def login(self, identity: str, password: str, *, client_key: str) -> LoginResult:
        """Rate-limit, check credentials externally, then issue a session."""
        if not self.limiter.allow(client_key):
            error = rate_limited_error()
            log_login_attempt(identity, False, client_key=client_key, reason="rate_limited")
            return LoginResult(ok=False, error=error, guidance=guidance_for(error))

        user_id = self.directory.verify_credentials(identity, password)
        if user_id is None:
            attempts = self._record_failure(identity)
            error = classify_failed_login(attempts)
            log_login_attempt(
                identity, False, client_key=client_key, reason="bad_credentials", attempts=attempts
            )
            return LoginResult(ok=False, error=error, guidance=guidance_for(error))

        with self._state_lock:
            self._failures.pop(identity, None)
        session_id = self.sessions.create_session(user_id, self._session_ttl)
        log_login_attempt(identity, True, client_key=client_key, user_id=user_id)
        return LoginResult(ok=True, user_id=user_id, session_id=session_id)

    def authenticate(self, session_id: str) -> str:
        return self.sessions.validate_session(session_id)

    def logout(self, session_id: str) -> None:
        self.sessions.end_session(session_id)

    def request_password_reset(self, user_id: str) -> PasswordResetToken:
        reset = self.resets.issue(user_id)
        address = self.directory.get_email(user_id)
        if self.email and address:
            reset_url = f"{self.settings.app_base_url}/?reset_token={reset.token}"
            if not self.email.send_password_reset(
                address, reset_url, self.settings.reset_token_ttl_minutes
            ):
                logger.warning("password_reset_email_failed", user_id=user_id)
        return reset

    def complete_password_reset(self, token: str, new_password: str) -> str:
        """Consume ``token``, store the new hash and end every session of the user."""
        validate_password_strength(new_password, self.policy)
        user_id = self.resets.redeem(token)
        self.directory.set_password_hash(user_id, self._hasher.hash(new_password))
        revoked = self.sessions.end_user_sessions(user_id)
        logger.info("password_reset_completed", user_id=user_id, sessions_revoked=revoked)
        return user_id

    def cleanup_expired_state(self) -> int:
        """Forget failure counters whose window has closed."""
        now = self._clock.now()
        with self._state_lock:
            stale = [
                identity
                for identity, (_, start) in self._failures.items()
                if now - start >= self._failure_window
            ]
            for identity in stale:
                del self._failures[identity]
        return len(stale)
