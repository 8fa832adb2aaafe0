from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import secrets
import threading
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol
from urllib.parse import quote

import httpx

from authguard.logging import get_logger
from authguard.service.clock import Clock, SystemClock
from authguard.service.email import EmailService
from authguard.service.encryption import Encryptor
from authguard.service.errors import (
    MFACancelledError,
    MFADispatchError,
    MFAValidationError,
    ProviderError,
)

logger = get_logger(__name__)

_UNSET: Any = object()

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_ATTEMPT_WINDOW = timedelta(minutes=5)
DEFAULT_LOCKOUT = timedelta(minutes=5)


class _ProviderTimeout(Exception):
    """A provider's own TimeoutError, kept apart from the coordinator deadline."""


async def _guarded(call: Awaitable[Any]) -> Any:
    try:
        return await call
    except (asyncio.TimeoutError, TimeoutError) as exc:
        raise _ProviderTimeout() from exc


class MFAProvider(Protocol):
    async def send_token(self, user_id: str) -> None: ...

    async def validate_token(self, user_id: str, token: str) -> bool: ...


class MFACoordinator:
    """Runs MFA dispatch and validation through a pluggable provider.

    Provider failures are wrapped in ``MFADispatchError`` or
    ``MFAValidationError`` with the original exception kept as ``cause`` (and
    as ``__cause__``). Calls are bounded by ``timeout`` seconds; a deadline or
    a cancellation of the awaiting task is reported as the same error with
    ``cancelled=True``. There is no retry; callers own their backoff.

    Failed verifications are counted per user within ``attempt_window``.
    Reaching ``max_attempts`` locks the user out for ``lockout``; while locked
    out ``verify_mfa`` answers ``False`` without consulting the provider.
    """

    def __init__(
        self,
        provider: MFAProvider,
        *,
        timeout: Optional[float] = None,
        clock: Optional[Clock] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        attempt_window: timedelta = DEFAULT_ATTEMPT_WINDOW,
        lockout: timedelta = DEFAULT_LOCKOUT,
    ) -> None:
        self.provider = provider
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.attempt_window = attempt_window
        self.lockout = lockout
        self._clock = clock or SystemClock()
        # user_id -> (attempts, window_start); attempts include in-flight checks
        self._attempts: dict[str, tuple[int, datetime]] = {}
        self._lockouts: dict[str, datetime] = {}
        self._state_lock = threading.Lock()

    async def initiate_mfa(self, user_id: str, *, timeout: Optional[float] = _UNSET) -> None:
        await self._call(
            self.provider.send_token(user_id),
            MFADispatchError,
            "failed to send MFA token",
            user_id=user_id,
            timeout=timeout,
        )
        logger.info("mfa_token_sent", user_id=user_id)

    async def verify_mfa(
        self, user_id: str, token: str, *, timeout: Optional[float] = _UNSET
    ) -> bool:
        if not self._reserve_attempt(user_id):
            logger.warning("mfa_locked_out", user_id=user_id)
            return False
        try:
            valid = bool(
                await self._call(
                    self.provider.validate_token(user_id, token),
                    MFAValidationError,
                    "failed to validate MFA token",
                    user_id=user_id,
                    timeout=timeout,
                )
            )
        except MFAValidationError:
            self._release_attempt(user_id)
            raise
        if valid:
            with self._state_lock:
                self._attempts.pop(user_id, None)
        else:
            self._record_failure(user_id)
        logger.info("mfa_token_checked", user_id=user_id, valid=valid)
        return valid

    def is_locked_out(self, user_id: str) -> bool:
        now = self._clock.now()
        with self._state_lock:
            locked_until = self._lockouts.get(user_id)
        return locked_until is not None and locked_until > now

    def _reserve_attempt(self, user_id: str) -> bool:
        now = self._clock.now()
        with self._state_lock:
            locked_until = self._lockouts.get(user_id)
            if locked_until is not None:
                if locked_until > now:
                    return False
                del self._lockouts[user_id]
            attempts, window_start = self._attempts.get(user_id, (0, now))
            if now - window_start >= self.attempt_window:
                attempts, window_start = 0, now
            if attempts >= self.max_attempts:
                return False
            self._attempts[user_id] = (attempts + 1, window_start)
            return True

    def _release_attempt(self, user_id: str) -> None:
        with self._state_lock:
            current = self._attempts.get(user_id)
            if current is not None:
                attempts, window_start = current
                self._attempts[user_id] = (max(0, attempts - 1), window_start)

    def _record_failure(self, user_id: str) -> None:
        now = self._clock.now()
        with self._state_lock:
            current = self._attempts.get(user_id)
            if current is None or current[0] < self.max_attempts:
                return
            self._attempts.pop(user_id, None)
            self._lockouts[user_id] = now + self.lockout
        logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=current[0])

    def sweep(self) -> int:
        """Drop closed attempt windows, lapsed lockouts and stale provider state."""
        now = self._clock.now()
        with self._state_lock:
            stale_attempts = [
                user_id
                for user_id, (_, start) in self._attempts.items()
                if now - start >= self.attempt_window
            ]
            for user_id in stale_attempts:
                del self._attempts[user_id]
            lapsed = [u for u, until in self._lockouts.items() if until <= now]
            for user_id in lapsed:
                del self._lockouts[user_id]
        removed = len(stale_attempts) + len(lapsed)
        provider_sweep = getattr(self.provider, "sweep", None)
        if callable(provider_sweep):
            removed += provider_sweep()
        return removed

    async def _call(
        self,
        call: Awaitable[Any],
        error_cls: type[MFADispatchError] | type[MFAValidationError],
        message: str,
        *,
        user_id: str,
        timeout: Optional[float],
    ) -> Any:
        deadline = self.timeout if timeout is _UNSET else timeout
        try:
            return await asyncio.wait_for(_guarded(call), timeout=deadline)
        except _ProviderTimeout as exc:
            original = exc.__cause__
            logger.warning("mfa_provider_error", user_id=user_id, error_type="TimeoutError")
            raise error_cls(f"{message}: provider timed out", cause=original) from original
        except asyncio.TimeoutError as exc:
            cause = MFACancelledError(f"provider call exceeded {deadline}s deadline")
            logger.warning("mfa_provider_timeout", user_id=user_id, timeout=deadline)
            raise error_cls(f"{message}: timed out", cause=cause, cancelled=True) from exc
        except asyncio.CancelledError as exc:
            cause = MFACancelledError("provider call cancelled")
            logger.warning("mfa_provider_cancelled", user_id=user_id)
            raise error_cls(f"{message}: cancelled", cause=cause, cancelled=True) from exc
        except Exception as exc:
            logger.warning(
                "mfa_provider_error",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise error_cls(f"{message}: {exc}", cause=exc) from exc


class InMemoryMFAProvider:
    """Deterministic provider for tests: issued codes are kept in memory."""

    def __init__(self, code_factory: Callable[[], str] = lambda: "123456") -> None:
        self._code_factory = code_factory
        self.issued: dict[str, str] = {}
        self.sent: list[str] = []

    async def send_token(self, user_id: str) -> None:
        self.issued[user_id] = self._code_factory()
        self.sent.append(user_id)

    async def validate_token(self, user_id: str, token: str) -> bool:
        expected = self.issued.get(user_id)
        if expected is None:
            raise ProviderError("token not found")
        return hmac.compare_digest(expected, token)


class TOTPProvider:
    """RFC 6238 time-based one-time passwords over per-user secrets.

    Nothing is delivered on ``send_token``; the user's authenticator app
    already holds the secret, so dispatch only checks enrollment.
    """

    def __init__(
        self,
        *,
        clock: Optional[Clock] = None,
        interval: int = 30,
        digits: int = 6,
        skew_steps: int = 1,
        issuer: str = "authguard",
        encryptor: Optional[Encryptor] = None,
    ) -> None:
        self._clock = clock or SystemClock()
        self._encryptor = encryptor
        self.interval = interval
        self.digits = digits
        self.skew_steps = skew_steps
        self.issuer = issuer
        self._secrets: dict[str, str] = {}
        # user_id -> last time step that verified; older or equal steps are replays
        self._last_step: dict[str, int] = {}
        self._lock = threading.Lock()

    def enroll(self, user_id: str, secret: Optional[str] = None) -> str:
        """Store a base32 secret for the user and return its otpauth URI."""
        secret = secret or base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")
        sealed = self._encryptor.encrypt(secret) if self._encryptor else secret
        with self._lock:
            self._secrets[user_id] = sealed
            self._last_step.pop(user_id, None)
        label = quote(f"{self.issuer}:{user_id}")
        return f"otpauth://totp/{label}?secret={secret}&issuer={quote(self.issuer)}"

    def _secret_for(self, user_id: str) -> str:
        with self._lock:
            secret = self._secrets.get(user_id)
        if secret is None:
            raise ProviderError("user not enrolled for TOTP")
        return self._encryptor.decrypt(secret) if self._encryptor else secret

    def generate(self, secret: str, at: datetime) -> str:
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except ValueError as exc:
            raise ProviderError("invalid TOTP secret") from exc
        counter = int(at.timestamp() // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    async def send_token(self, user_id: str) -> None:
        self._secret_for(user_id)

    async def validate_token(self, user_id: str, token: str) -> bool:
        secret = self._secret_for(user_id)
        now = self._clock.now()
        matched_step: Optional[int] = None
        for step in range(-self.skew_steps, self.skew_steps + 1):
            at = now + timedelta(seconds=step * self.interval)
            # Compare every window so timing does not reveal which step matched
            if hmac.compare_digest(self.generate(secret, at), token):
                matched_step = int(at.timestamp() // self.interval)
        if matched_step is None:
            return False
        with self._lock:
            if matched_step <= self._last_step.get(user_id, -1):
                logger.warning("totp_replay_rejected", user_id=user_id)
                return False
            self._last_step[user_id] = matched_step
        return True


class EmailMFAProvider:
    """Emails a random one-time code; the code is single-use and short-lived."""

    def __init__(
        self,
        email: EmailService,
        email_lookup: Callable[[str], Optional[str]],
        *,
        ttl_seconds: int = 300,
        clock: Optional[Clock] = None,
        digits: int = 6,
    ) -> None:
        self.email = email
        self.email_lookup = email_lookup
        self.ttl = timedelta(seconds=ttl_seconds)
        self.digits = digits
        self._clock = clock or SystemClock()
        self._pending: dict[str, tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    async def send_token(self, user_id: str) -> None:
        address = self.email_lookup(user_id)
        if not address:
            raise ProviderError("no email address on file")
        code = str(secrets.randbelow(10**self.digits)).zfill(self.digits)
        with self._lock:
            self._pending[user_id] = (code, self._clock.now() + self.ttl)
        sent = await asyncio.to_thread(
            self.email.send_mfa_code, address, code, int(self.ttl.total_seconds())
        )
        if not sent:
            with self._lock:
                self._pending.pop(user_id, None)
            raise ProviderError("email delivery failed")

    async def validate_token(self, user_id: str, token: str) -> bool:
        with self._lock:
            pending = self._pending.get(user_id)
            if pending is None:
                return False
            code, expires_at = pending
            if expires_at <= self._clock.now():
                self._pending.pop(user_id, None)
                return False
            if not hmac.compare_digest(code, token):
                return False
            self._pending.pop(user_id, None)
            return True

    def sweep(self) -> int:
        """Drop codes that were sent but never redeemed before their TTL."""
        now = self._clock.now()
        with self._lock:
            expired = [u for u, (_, expires_at) in self._pending.items() if expires_at <= now]
            for user_id in expired:
                del self._pending[user_id]
        return len(expired)


class HttpMFAProvider:
    """Adapter for a hosted MFA API.

    Expects ``POST {base_url}/send`` with ``{"user_id"}`` and
    ``POST {base_url}/validate`` with ``{"user_id", "token"}`` answering
    ``{"valid": bool}``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(base_url=base_url, headers=headers)

    async def _post(self, path: str, payload: dict) -> httpx.Response:
        try:
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"MFA provider returned {exc.response.status_code}",
                detail={"status": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"MFA provider unreachable: {exc}") from exc
        return response

    async def send_token(self, user_id: str) -> None:
        await self._post("/send", {"user_id": user_id})

    async def validate_token(self, user_id: str, token: str) -> bool:
        response = await self._post("/validate", {"user_id": user_id, "token": token})
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError("MFA provider sent malformed JSON") from exc
        valid = body.get("valid") if isinstance(body, dict) else None
        if not isinstance(valid, bool):
            raise ProviderError("MFA provider response missing 'valid'")
        return valid

    async def aclose(self) -> None:
        await self._client.aclose()
