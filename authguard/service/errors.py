from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for authentication-layer exceptions.

    Each exception class carries a stable ``error_code`` and an HTTP-style
    ``status_code`` so an outer transport can map it without inspecting
    messages:
    - invalid_session (401)
    - invalid_token / token_expired / weak_password / encryption_error (400)
    - entropy_unavailable (500)
    - mfa_dispatch_failed / mfa_validation_failed / provider_error (502)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidOrExpiredSessionError(ServiceError):
    """Session identifier is unknown or past its expiry (401)."""
    status_code = 401
    error_code = "invalid_session"


class InvalidTokenError(ServiceError):
    """Presented reset token does not match the stored one (400)."""
    status_code = 400
    error_code = "invalid_token"


class TokenExpiredError(ServiceError):
    """Reset token matched but is past its expiry (400)."""
    status_code = 400
    error_code = "token_expired"


class EntropySourceUnavailableError(ServiceError):
    """The secure random source could not supply bytes (500)."""
    status_code = 500
    error_code = "entropy_unavailable"


class WeakPasswordError(ServiceError):
    """Password does not satisfy the configured policy (400)."""
    status_code = 400
    error_code = "weak_password"


class EncryptionError(ServiceError):
    """Bad key, malformed or tampered ciphertext (400)."""
    status_code = 400
    error_code = "encryption_error"


class ProviderError(ServiceError):
    """Raised by MFA providers when the upstream call fails (502)."""
    status_code = 502
    error_code = "provider_error"


class MFACancelledError(ProviderError):
    """Cause recorded when a provider call hit its deadline or was cancelled."""
    error_code = "mfa_cancelled"


class _MFAError(ServiceError):
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[BaseException] = None,
        cancelled: bool = False,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.cause = cause
        self.cancelled = cancelled


class MFADispatchError(_MFAError):
    """Sending an MFA token through the provider failed."""
    error_code = "mfa_dispatch_failed"


class MFAValidationError(_MFAError):
    """Validating an MFA token through the provider failed."""
    error_code = "mfa_validation_failed"


__all__ = [
    "ServiceError",
    "InvalidOrExpiredSessionError",
    "InvalidTokenError",
    "TokenExpiredError",
    "EntropySourceUnavailableError",
    "WeakPasswordError",
    "EncryptionError",
    "ProviderError",
    "MFACancelledError",
    "MFADispatchError",
    "MFAValidationError",
]
