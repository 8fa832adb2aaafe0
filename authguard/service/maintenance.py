"""Background sweeper for expiring in-memory auth state.

Sessions are expired lazily on read and limiter buckets are created lazily on
first use; without a periodic sweep a login-and-abandon workload (or a scan
across many client IPs) would grow both tables forever. The worker runs:
- ``SessionStore.sweep``
- ``TokenBucketLimiter.cleanup_expired_entries``
- ``AuthService.cleanup_expired_state`` when an auth service is attached
- ``MFACoordinator.sweep`` when an MFA coordinator is attached
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING, Optional

from authguard.logging import get_logger

if TYPE_CHECKING:
    from authguard.service.auth import AuthService
    from authguard.service.mfa import MFACoordinator
    from authguard.service.rate_limit import TokenBucketLimiter
    from authguard.service.sessions import SessionStore

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 60
DEFAULT_LIMITER_EXPIRY = timedelta(minutes=15)
MAX_BACKOFF_SECONDS = 300


class MaintenanceWorker:
    def __init__(
        self,
        sessions: "SessionStore",
        limiter: "TokenBucketLimiter",
        *,
        auth: Optional["AuthService"] = None,
        mfa: Optional["MFACoordinator"] = None,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        limiter_expiry: timedelta = DEFAULT_LIMITER_EXPIRY,
    ) -> None:
        self.sessions = sessions
        self.limiter = limiter
        self.auth = auth
        self.mfa = mfa
        self.interval = interval
        self.limiter_expiry = limiter_expiry
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def run_once(self) -> dict[str, int]:
        """Run one sweep of every table and return the per-table removal counts."""
        counts = {
            "sessions": self.sessions.sweep(),
            "limiter_keys": self.limiter.cleanup_expired_entries(self.limiter_expiry),
        }
        if self.auth is not None:
            counts["failure_counters"] = self.auth.cleanup_expired_state()
        if self.mfa is not None:
            counts["mfa_state"] = self.mfa.sweep()
        if any(counts.values()):
            logger.info("maintenance_sweep", **counts)
        return counts

    async def start(self) -> None:
        if self._running:
            logger.warning("maintenance_worker_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("maintenance_worker_started", interval=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("maintenance_worker_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "maintenance_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS, self.interval * (2 ** (consecutive_errors - 3))
                    )
                    logger.warning("maintenance_backoff", backoff_seconds=backoff)
                    await asyncio.sleep(backoff)
                    continue
            await asyncio.sleep(self.interval)
