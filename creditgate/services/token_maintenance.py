"""
Token Maintenance - proactive refresh of credentials about to expire.

Keeps sessions of recently active users alive while they are idle: every
cycle refreshes access credentials that expire within the skew buffer and
were issued within the activity window, then deletes credentials that have
been expired for longer than cleanup_after.

Refreshes go through the RefreshCoordinator, so a maintenance refresh and a
request-driven refresh for the same user still collapse into one call.
"""

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from structlog import get_logger

from creditgate.exceptions import AuthRequiredError
from creditgate.models.api import MaintenanceStatus
from creditgate.models.domain import MaintenanceReport
from creditgate.services.credential_store import CredentialStore
from creditgate.services.refresh_coordinator import RefreshCoordinator

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class TokenMaintenanceService:
    """Background job that refreshes expiring credentials on an interval."""

    def __init__(
        self,
        store: CredentialStore,
        coordinator: RefreshCoordinator,
        interval: timedelta = timedelta(minutes=15),
        activity_window: timedelta = timedelta(days=30),
        cleanup_after: timedelta = timedelta(hours=1),
        pause_between_users: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._coordinator = coordinator
        self.interval = interval
        self.activity_window = activity_window
        self.cleanup_after = cleanup_after
        self.pause_between_users = pause_between_users
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self.last_report: MaintenanceReport | None = None
        self.last_run_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the background loop (first cycle runs immediately)."""
        if self.is_running:
            logger.warning("token_maintenance_already_running")
            return

        logger.info(
            "token_maintenance_starting",
            interval_seconds=self.interval.total_seconds(),
            activity_window_days=self.activity_window.days,
        )
        self._task = asyncio.create_task(self._loop(), name="token-maintenance")

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to finish."""
        if self._task is None:
            return

        logger.info("token_maintenance_stopping")
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run_cycle(self) -> MaintenanceReport:
        """Refresh every expiring credential once, then clean up expired ones."""
        start = time.perf_counter()
        now = _utc_now()
        provider = self._coordinator.provider

        expiring = await self._store.find_expiring(
            provider,
            before=now + self._coordinator.skew_buffer,
            created_after=now - self.activity_window,
        )
        logger.info("token_maintenance_cycle_started", candidates=len(expiring))

        successful = failed = skipped = 0
        for credential in expiring:
            user_id = credential.user_id
            try:
                await self._coordinator.get_valid_credential(user_id)
            except AuthRequiredError as e:
                skipped += 1
                logger.info("token_maintenance_skipped", user_id=user_id, reason=e.reason)
            except Exception as e:
                failed += 1
                logger.error(
                    "token_maintenance_refresh_failed",
                    user_id=user_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
            else:
                successful += 1
            await self._sleep(self.pause_between_users)

        cleaned = await self._store.delete_expired(older_than=now - self.cleanup_after, now=now)

        report = MaintenanceReport(
            successful=successful,
            failed=failed,
            skipped=skipped,
            cleaned=cleaned,
            duration_seconds=time.perf_counter() - start,
        )
        self.last_report = report
        self.last_run_at = now
        logger.info(
            "token_maintenance_cycle_completed",
            successful=successful,
            failed=failed,
            skipped=skipped,
            cleaned=cleaned,
            total=report.total,
            duration_seconds=round(report.duration_seconds, 3),
        )
        return report

    def status(self) -> MaintenanceStatus:
        """Running state and last cycle summary for the status endpoint."""
        report = self.last_report
        return MaintenanceStatus(
            running=self.is_running,
            interval_seconds=self.interval.total_seconds(),
            last_run_at=self.last_run_at.isoformat() if self.last_run_at else None,
            last_successful=report.successful if report else None,
            last_failed=report.failed if report else None,
            last_skipped=report.skipped if report else None,
            last_cleaned=report.cleaned if report else None,
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("token_maintenance_cycle_failed", error=str(e), exc_info=True)
            await asyncio.sleep(self.interval.total_seconds())
