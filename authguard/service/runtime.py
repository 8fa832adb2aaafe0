from __future__ import annotations

from datetime import timedelta
from typing import Optional

from authguard.config import MFAMethod, Settings
from authguard.logging import get_logger
from authguard.service.auth import AuthService, UserDirectory
from authguard.service.clock import Clock, SystemClock
from authguard.service.email import EmailService
from authguard.service.encryption import Encryptor
from authguard.service.maintenance import MaintenanceWorker
from authguard.service.mfa import (
    EmailMFAProvider,
    HttpMFAProvider,
    MFACoordinator,
    MFAProvider,
    TOTPProvider,
)
from authguard.service.password_reset import (
    InMemoryResetTokenStore,
    PasswordResetCoordinator,
    ResetTokenStore,
)
from authguard.service.rate_limit import TokenBucketLimiter
from authguard.service.sessions import SessionStore

logger = get_logger(__name__)


class Runtime:
    """One fully wired set of auth components.

    Built explicitly from ``Settings`` and a ``UserDirectory``; nothing here is
    module-global, so tests and multi-tenant hosts can build as many as they
    need.
    """

    def __init__(
        self,
        settings: Settings,
        directory: UserDirectory,
        *,
        clock: Optional[Clock] = None,
        mfa_provider: Optional[MFAProvider] = None,
        reset_store: Optional[ResetTokenStore] = None,
    ) -> None:
        self.settings = settings
        self.clock = clock or SystemClock()
        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
        self.encryptor = (
            Encryptor.from_encoded_key(settings.encryption_key)
            if settings.encryption_key
            else None
        )
        self.sessions = SessionStore(clock=self.clock)
        self.limiter = TokenBucketLimiter(
            settings.login_rate_per_second, settings.login_burst, clock=self.clock
        )
        self.resets = PasswordResetCoordinator(
            reset_store or InMemoryResetTokenStore(),
            clock=self.clock,
            ttl=timedelta(minutes=settings.reset_token_ttl_minutes),
        )
        self.mfa = MFACoordinator(
            mfa_provider or self._default_mfa_provider(directory),
            timeout=settings.mfa_timeout_seconds,
            clock=self.clock,
            max_attempts=settings.mfa_max_attempts,
            attempt_window=timedelta(minutes=settings.mfa_attempt_window_minutes),
            lockout=timedelta(minutes=settings.mfa_lockout_minutes),
        )
        self.auth = AuthService(
            directory,
            self.sessions,
            self.limiter,
            self.resets,
            settings,
            clock=self.clock,
            email=self.email,
        )
        self.maintenance = MaintenanceWorker(
            self.sessions,
            self.limiter,
            auth=self.auth,
            mfa=self.mfa,
            interval=settings.maintenance_interval_seconds,
            limiter_expiry=timedelta(seconds=settings.limiter_idle_expiry_seconds),
        )

    def _default_mfa_provider(self, directory: UserDirectory) -> MFAProvider:
        method = self.settings.mfa_method
        logger.info("mfa_provider_selected", provider=method.value)
        if method == MFAMethod.HTTP:
            return HttpMFAProvider(
                self.settings.mfa_provider_url, api_key=self.settings.mfa_provider_api_key
            )
        if method == MFAMethod.TOTP:
            return TOTPProvider(clock=self.clock, encryptor=self.encryptor)
        return EmailMFAProvider(
            self.email,
            directory.get_email,
            ttl_seconds=self.settings.mfa_code_ttl_seconds,
            clock=self.clock,
        )

    async def start(self) -> None:
        await self.maintenance.start()

    async def stop(self) -> None:
        await self.maintenance.stop()
        if isinstance(self.mfa.provider, HttpMFAProvider):
            await self.mfa.provider.aclose()
