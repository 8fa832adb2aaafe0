from __future__ import annotations

import hmac
import secrets
import threading
from datetime import timedelta
from typing import Optional, Protocol

from authguard.logging import get_logger
from authguard.service.clock import Clock, SystemClock
from authguard.service.errors import InvalidTokenError, TokenExpiredError
from authguard.service.models import PasswordResetToken
from authguard.service.tokens import TokenSource, generate_token

logger = get_logger(__name__)

# 32 bytes -> 256 bits of entropy
RESET_TOKEN_BYTES = 32
DEFAULT_RESET_TTL = timedelta(minutes=15)


class ResetTokenStore(Protocol):
    def save(self, token: PasswordResetToken) -> None: ...

    def get(self, token: str) -> Optional[PasswordResetToken]: ...

    def invalidate(self, token: str) -> None: ...

    def consume(self, token: str) -> Optional[PasswordResetToken]:
        """Remove and return the token in one atomic step."""
        ...


class InMemoryResetTokenStore:
    """Dev/test store. Production deployments plug in a persistent one."""

    def __init__(self) -> None:
        self._tokens: dict[str, PasswordResetToken] = {}
        self._lock = threading.Lock()

    def save(self, token: PasswordResetToken) -> None:
        with self._lock:
            self._tokens[token.token] = token

    def get(self, token: str) -> Optional[PasswordResetToken]:
        with self._lock:
            return self._tokens.get(token)

    def invalidate(self, token: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)

    def consume(self, token: str) -> Optional[PasswordResetToken]:
        with self._lock:
            return self._tokens.pop(token, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)


class PasswordResetCoordinator:
    """Issues and checks password-reset tokens.

    The coordinator holds no token state. ``generate_reset_token`` and
    ``validate_reset_token`` are the primitive operations; ``issue`` and
    ``redeem`` additionally talk to the injected ``ResetTokenStore``, which is
    where single-use enforcement lives.
    """

    def __init__(
        self,
        store: Optional[ResetTokenStore] = None,
        *,
        clock: Optional[Clock] = None,
        ttl: timedelta = DEFAULT_RESET_TTL,
        token_source: TokenSource = secrets.token_urlsafe,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock or SystemClock()
        self._token_source = token_source

    def generate_reset_token(self) -> str:
        return generate_token(RESET_TOKEN_BYTES, self._token_source)

    def validate_reset_token(self, presented: str, stored: PasswordResetToken) -> None:
        """Raise unless ``presented`` matches ``stored`` and has not expired.

        The token is not consumed here.
        """
        if not hmac.compare_digest(presented.encode(), stored.token.encode()):
            raise InvalidTokenError("invalid token")
        if self._clock.now() > stored.expires_at:
            raise TokenExpiredError("token expired")

    def issue(self, user_id: str, ttl: Optional[timedelta] = None) -> PasswordResetToken:
        reset = PasswordResetToken(
            token=self.generate_reset_token(),
            expires_at=self._clock.now() + (ttl or self.ttl),
            user_id=user_id,
        )
        if self.store is not None:
            self.store.save(reset)
        logger.info("password_reset_issued", user_id=user_id)
        return reset

    def redeem(self, presented: str) -> str:
        """Validate against the store and consume the token; return its user id."""
        if self.store is None:
            raise RuntimeError("redeem requires a ResetTokenStore")
        # Consumed up front: at most one concurrent redeem sees the token
        stored = self.store.consume(presented)
        if stored is None:
            logger.warning("password_reset_invalid_token", token_prefix=presented[:8])
            raise InvalidTokenError("invalid token")
        try:
            self.validate_reset_token(presented, stored)
        except TokenExpiredError:
            logger.warning("password_reset_token_expired", user_id=stored.user_id)
            raise
        logger.info("password_reset_redeemed", user_id=stored.user_id)
        return stored.user_id
