"""
Tests for the proactive token maintenance job.
"""

import asyncio
from datetime import timedelta

import pytest

from creditgate.models.api import CredentialKind
from creditgate.services.refresh_coordinator import RefreshCoordinator
from creditgate.services.token_maintenance import TokenMaintenanceService

from tests.fakes import utc_now


async def no_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def coordinator(credential_store, token_exchange, cipher) -> RefreshCoordinator:
    return RefreshCoordinator(credential_store, token_exchange, cipher, provider="ares")


@pytest.fixture
def maintenance(credential_store, coordinator) -> TokenMaintenanceService:
    return TokenMaintenanceService(
        credential_store,
        coordinator,
        interval=timedelta(minutes=15),
        sleep=no_sleep,
    )


class TestRunCycle:
    """One maintenance pass."""

    @pytest.mark.asyncio
    async def test_refreshes_expiring_only(self, maintenance, seed_credentials, token_exchange):
        """Only credentials inside the skew buffer are refreshed."""
        seed_credentials("expiring", refresh_secret="r-expiring", access_expires_in=timedelta(minutes=2))
        seed_credentials("healthy", refresh_secret="r-healthy", access_expires_in=timedelta(hours=2))

        report = await maintenance.run_cycle()

        assert report.successful == 1
        assert report.failed == 0
        assert token_exchange.calls == ["r-expiring"]

    @pytest.mark.asyncio
    async def test_expired_refresh_is_skipped_and_removed(
        self, maintenance, seed_credentials, credential_store
    ):
        """A user whose refresh credential expired is skipped and their chain deleted."""
        seed_credentials(
            "lapsed",
            access_expires_in=timedelta(minutes=-10),
            refresh_expires_in=timedelta(minutes=-5),
        )

        report = await maintenance.run_cycle()

        assert report.skipped == 1
        assert not credential_store.has("lapsed", CredentialKind.REFRESH)

    @pytest.mark.asyncio
    async def test_unexpected_failure_counted(self, maintenance, seed_credentials, coordinator):
        """Errors other than AuthRequired count as failures and do not stop the cycle."""
        seed_credentials("a", access_expires_in=timedelta(minutes=1))
        seed_credentials("b", access_expires_in=timedelta(minutes=1))
        calls = 0

        async def flaky(user_id: str) -> str:
            nonlocal calls
            calls += 1
            if user_id == "a":
                raise RuntimeError("database went away")
            return "token"

        coordinator.get_valid_credential = flaky

        report = await maintenance.run_cycle()

        assert calls == 2
        assert report.failed == 1
        assert report.successful == 1

    @pytest.mark.asyncio
    async def test_inactive_users_are_not_refreshed(
        self, maintenance, credential_store, cipher, token_exchange
    ):
        """Credentials issued before the activity window are left to lapse."""
        now = utc_now()
        credential_store.put(
            "idle",
            CredentialKind.ACCESS,
            cipher.encrypt("a"),
            now + timedelta(minutes=1),
            created_at=now - timedelta(days=45),
        )

        report = await maintenance.run_cycle()

        assert report.total == 0
        assert token_exchange.calls == []

    @pytest.mark.asyncio
    async def test_cleans_long_expired(self, maintenance, credential_store, cipher):
        """Credentials expired for longer than cleanup_after are deleted."""
        now = utc_now()
        credential_store.put(
            "gone",
            CredentialKind.REFRESH,
            cipher.encrypt("r"),
            now - timedelta(hours=2),
        )

        report = await maintenance.run_cycle()

        assert report.cleaned == 1
        assert credential_store.rows == {}

    @pytest.mark.asyncio
    async def test_expired_access_with_live_refresh_is_kept(
        self, maintenance, credential_store, cipher, coordinator, token_exchange
    ):
        """Cleanup leaves a refreshable chain alone; the next request still refreshes."""
        now = utc_now()
        issued = now - timedelta(days=45)
        credential_store.put(
            "idle", CredentialKind.ACCESS, cipher.encrypt("a"), now - timedelta(hours=3), issued
        )
        credential_store.put(
            "idle",
            CredentialKind.REFRESH,
            cipher.encrypt("r-idle"),
            now + timedelta(days=20),
            issued,
        )

        report = await maintenance.run_cycle()

        assert report.cleaned == 0
        assert credential_store.has("idle", CredentialKind.ACCESS)
        assert await coordinator.get_valid_credential("idle") == "access-new"
        assert token_exchange.calls == ["r-idle"]

    @pytest.mark.asyncio
    async def test_expired_access_without_live_refresh_is_cleaned(
        self, maintenance, credential_store, cipher
    ):
        """An access credential whose refresh credential lapsed is removed with it."""
        now = utc_now()
        issued = now - timedelta(days=45)
        credential_store.put(
            "gone", CredentialKind.ACCESS, cipher.encrypt("a"), now - timedelta(hours=3), issued
        )
        credential_store.put(
            "gone", CredentialKind.REFRESH, cipher.encrypt("r"), now - timedelta(hours=2), issued
        )

        report = await maintenance.run_cycle()

        assert report.cleaned == 2
        assert credential_store.rows == {}


class TestLifecycle:
    """Background loop start/stop and status."""

    @pytest.mark.asyncio
    async def test_start_runs_first_cycle_and_stop(self, maintenance):
        """start runs a cycle immediately; stop cancels the loop."""
        maintenance.start()
        for _ in range(10):
            await asyncio.sleep(0)

        assert maintenance.is_running is True
        assert maintenance.last_report is not None

        await maintenance.stop()
        assert maintenance.is_running is False

    @pytest.mark.asyncio
    async def test_status(self, maintenance):
        """Status reflects the last cycle."""
        assert maintenance.status().last_run_at is None

        await maintenance.run_cycle()
        status = maintenance.status()

        assert status.running is False
        assert status.interval_seconds == 900
        assert status.last_successful == 0
        assert status.last_run_at is not None
