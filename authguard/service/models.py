from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class Bucket:
    """Per-key token bucket state; capacity and refill rate live on the limiter."""

    tokens: float
    last_refill: datetime
    last_seen: datetime


@dataclass
class PasswordResetToken:
    token: str
    expires_at: datetime
    user_id: str


class LoginErrorKind(str, Enum):
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    INVALID_CREDENTIALS = "invalid_credentials"
    UNKNOWN = "unknown"


_KIND_BY_CODE = {
    429: LoginErrorKind.TOO_MANY_ATTEMPTS,
    401: LoginErrorKind.INVALID_CREDENTIALS,
}


@dataclass(frozen=True)
class LoginError:
    code: int
    message: str

    @property
    def kind(self) -> LoginErrorKind:
        return _KIND_BY_CODE.get(self.code, LoginErrorKind.UNKNOWN)

    def __str__(self) -> str:
        return f"Error {self.code}: {self.message}"


@dataclass
class LoginResult:
    ok: bool
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    error: Optional[LoginError] = None
    guidance: Optional[str] = None
