from __future__ import annotations

from typing import Any

from authguard.service.models import LoginError, LoginErrorKind

# Failures beyond this count are reported as a lockout rather than bad credentials
MAX_ATTEMPTS_BEFORE_LOCKOUT = 3

TOO_MANY_ATTEMPTS_MESSAGE = "Too many incorrect login attempts. Please try again later."
INVALID_CREDENTIALS_MESSAGE = "Incorrect username or password. Please try again."

_GUIDANCE = {
    LoginErrorKind.TOO_MANY_ATTEMPTS: (
        "You have exceeded the maximum number of login attempts. "
        "Please wait a few minutes before trying again."
    ),
    LoginErrorKind.INVALID_CREDENTIALS: (
        "Please check your username and password and try again. If you have "
        "forgotten your password, use the password reset option."
    ),
    LoginErrorKind.UNKNOWN: "An unknown error occurred. Please contact support.",
}
UNEXPECTED_ERROR_GUIDANCE = "An unexpected error occurred. Please try again."


def rate_limited_error() -> LoginError:
    return LoginError(429, TOO_MANY_ATTEMPTS_MESSAGE)


def classify_failed_login(attempts: int) -> LoginError:
    """Map the recent failure count for an identity to a login error."""
    if attempts > MAX_ATTEMPTS_BEFORE_LOCKOUT:
        return rate_limited_error()
    return LoginError(401, INVALID_CREDENTIALS_MESSAGE)


def guidance_for(error: Any) -> str:
    """User-facing advice for a login error; deterministic per code."""
    if not isinstance(error, LoginError):
        return UNEXPECTED_ERROR_GUIDANCE
    return _GUIDANCE[error.kind]
