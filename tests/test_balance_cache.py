"""
Tests for the metered balance cache.

Freshness is driven by a hand-advanced clock; reservation expiry uses real
loop timers with short TTLs.
"""

import asyncio
from decimal import Decimal

import pytest

from creditgate.exceptions import (
    AuthRequiredError,
    RemoteRequestError,
    RemoteUnavailableError,
)
from creditgate.services.balance_cache import MeteredBalanceCache


@pytest.fixture
def cache(remote_gateway, clock) -> MeteredBalanceCache:
    return MeteredBalanceCache(
        remote_gateway, ttl=10.0, pending_ttl=30.0, max_staleness=60.0, clock=clock
    )


class TestReserve:
    """Admission decisions."""

    @pytest.mark.asyncio
    async def test_pending_reservations_reduce_availability(self, cache, remote_gateway):
        """Balance 100: reserve 30 succeeds, a concurrent reserve of 80 is refused."""
        remote_gateway.balance = Decimal("100")

        first = await cache.reserve("user-1", Decimal("30"))
        second = await cache.reserve("user-1", Decimal("80"))

        assert first.allowed is True
        assert first.reservation is not None
        assert second.allowed is False
        assert second.available == Decimal("70")
        assert remote_gateway.balance_calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_lookup(self, cache, remote_gateway):
        """Two cold reserves for one user: one lookup, and only one of them fits."""
        remote_gateway.balance = Decimal("100")

        first, second = await asyncio.gather(
            cache.reserve("user-1", Decimal("60")),
            cache.reserve("user-1", Decimal("60")),
        )

        assert [first.allowed, second.allowed].count(True) == 1
        assert remote_gateway.balance_calls == 1
        assert cache.snapshot("user-1").pending_reserved == Decimal("60")

    @pytest.mark.asyncio
    async def test_concurrent_stale_misses_keep_new_holds(self, cache, remote_gateway, clock):
        """A refetch shared by concurrent callers does not discard holds it just granted."""
        remote_gateway.balance = Decimal("100")
        await cache.reserve("user-1", Decimal("1"))
        clock.advance(11)

        results = await asyncio.gather(
            *(cache.reserve("user-1", Decimal("40")) for _ in range(3))
        )

        assert [r.allowed for r in results].count(True) == 2
        assert remote_gateway.balance_calls == 2
        assert cache.snapshot("user-1").pending_reserved == Decimal("80")

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_failure(self, cache, remote_gateway):
        """A failed shared lookup with nothing cached is unavailable for every waiter."""
        remote_gateway.error = RemoteUnavailableError("down")

        results = await asyncio.gather(
            cache.reserve("user-1", Decimal("5")),
            cache.reserve("user-1", Decimal("5")),
            return_exceptions=True,
        )

        assert all(isinstance(r, RemoteUnavailableError) for r in results)
        assert remote_gateway.balance_calls == 1

    @pytest.mark.asyncio
    async def test_release_restores_availability(self, cache, remote_gateway):
        """Releasing the first reservation lets the second through."""
        remote_gateway.balance = Decimal("100")

        first = await cache.reserve("user-1", Decimal("30"))
        assert cache.release(first.reservation) is True
        second = await cache.reserve("user-1", Decimal("80"))

        assert second.allowed is True

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, cache):
        """A second release is a no-op."""
        result = await cache.reserve("user-1", Decimal("10"))

        assert cache.release(result.reservation) is True
        assert cache.release(result.reservation) is False
        assert cache.snapshot("user-1").pending_reserved == Decimal("0")

    @pytest.mark.asyncio
    async def test_zero_required_always_allowed(self, cache, remote_gateway):
        """Nothing to reserve: allowed without asking the authority."""
        result = await cache.reserve("user-1", Decimal("0"))

        assert result.allowed is True
        assert result.reservation is None
        assert remote_gateway.balance_calls == 0

    @pytest.mark.asyncio
    async def test_fresh_entry_is_not_refetched(self, cache, remote_gateway, clock):
        """Within the TTL the cached entry decides alone."""
        await cache.reserve("user-1", Decimal("1"))
        clock.advance(5)
        await cache.reserve("user-1", Decimal("1"))

        assert remote_gateway.balance_calls == 1

    @pytest.mark.asyncio
    async def test_stale_entry_is_rebuilt(self, cache, remote_gateway, clock):
        """After the TTL the authority is asked again and old holds are dropped."""
        remote_gateway.balance = Decimal("100")
        first = await cache.reserve("user-1", Decimal("30"))
        clock.advance(11)
        remote_gateway.balance = Decimal("70")

        second = await cache.reserve("user-1", Decimal("60"))

        assert remote_gateway.balance_calls == 2
        assert second.allowed is True
        entry = cache.snapshot("user-1")
        assert entry.generation == first.reservation.generation + 1
        assert entry.pending_reserved == Decimal("60")

    @pytest.mark.asyncio
    async def test_release_of_old_generation_does_not_touch_new_entry(
        self, cache, remote_gateway, clock
    ):
        """A reservation from before a rebuild cannot reduce the new entry's pending."""
        first = await cache.reserve("user-1", Decimal("30"))
        clock.advance(11)
        await cache.reserve("user-1", Decimal("20"))

        cache.release(first.reservation)

        assert cache.snapshot("user-1").pending_reserved == Decimal("20")

    @pytest.mark.asyncio
    async def test_auth_failure_propagates(self, cache, remote_gateway):
        """AuthRequired is never degraded to a cached answer."""
        remote_gateway.error = AuthRequiredError("user-1")

        with pytest.raises(AuthRequiredError):
            await cache.reserve("user-1", Decimal("5"))


class TestAutoRelease:
    """Abandoned reservations expire."""

    @pytest.mark.asyncio
    async def test_reservation_expires_after_pending_ttl(self, remote_gateway, clock):
        """An unreleased hold disappears after pending_ttl."""
        cache = MeteredBalanceCache(remote_gateway, ttl=10.0, pending_ttl=0.05, clock=clock)
        remote_gateway.balance = Decimal("100")

        await cache.reserve("user-1", Decimal("90"))
        assert (await cache.reserve("user-1", Decimal("20"))).allowed is False

        await asyncio.sleep(0.1)

        assert cache.snapshot("user-1").pending_reserved == Decimal("0")
        assert (await cache.reserve("user-1", Decimal("20"))).allowed is True
        cache.clear()


class TestSettle:
    """Charges debit the cached balance."""

    @pytest.mark.asyncio
    async def test_settle_releases_and_debits(self, cache, remote_gateway):
        """Settling swaps the hold for the actual charge."""
        remote_gateway.balance = Decimal("100")
        result = await cache.reserve("user-1", Decimal("30"))

        cache.settle("user-1", Decimal("12.5"), result.reservation)

        entry = cache.snapshot("user-1")
        assert entry.pending_reserved == Decimal("0")
        assert entry.remote_credits == Decimal("87.5")

    @pytest.mark.asyncio
    async def test_settle_after_rebuild_skips_debit(self, cache, remote_gateway, clock):
        """A rebuilt entry already reflects the authority; no double debit."""
        remote_gateway.balance = Decimal("100")
        result = await cache.reserve("user-1", Decimal("30"))
        clock.advance(11)
        remote_gateway.balance = Decimal("80")
        await cache.reserve("user-1", Decimal("1"))

        cache.settle("user-1", Decimal("20"), result.reservation)

        assert cache.snapshot("user-1").remote_credits == Decimal("80")

    @pytest.mark.asyncio
    async def test_debit_clamps_at_zero(self, cache, remote_gateway):
        """Cached balance never goes negative."""
        remote_gateway.balance = Decimal("5")
        result = await cache.reserve("user-1", Decimal("5"))

        cache.settle("user-1", Decimal("9"), result.reservation)

        assert cache.snapshot("user-1").remote_credits == Decimal("0")


class TestFallback:
    """Degraded mode while the authority is unreachable."""

    @pytest.mark.asyncio
    async def test_recent_entry_is_trusted(self, cache, remote_gateway, clock):
        """Within max_staleness a cached balance that covers the request admits it."""
        remote_gateway.balance = Decimal("100")
        await cache.reserve("user-1", Decimal("10"))
        clock.advance(30)
        remote_gateway.error = RemoteUnavailableError("authority down")

        result = await cache.reserve("user-1", Decimal("20"))

        assert result.allowed is True
        assert result.degraded is True

    @pytest.mark.asyncio
    async def test_recent_entry_that_cannot_cover_is_unavailable(
        self, cache, remote_gateway, clock
    ):
        """A stale-but-allowed entry that cannot cover the request does not refuse."""
        remote_gateway.balance = Decimal("10")
        await cache.reserve("user-1", Decimal("1"))
        clock.advance(30)
        remote_gateway.error = RemoteUnavailableError("authority down")

        with pytest.raises(RemoteUnavailableError):
            await cache.reserve("user-1", Decimal("50"))

    @pytest.mark.asyncio
    async def test_too_old_entry_is_unavailable(self, cache, remote_gateway, clock):
        """Beyond max_staleness the cache does not guess."""
        await cache.reserve("user-1", Decimal("1"))
        clock.advance(61)
        remote_gateway.error = RemoteUnavailableError("authority down")

        with pytest.raises(RemoteUnavailableError):
            await cache.reserve("user-1", Decimal("1"))

    @pytest.mark.asyncio
    async def test_no_entry_is_unavailable(self, cache, remote_gateway):
        """First lookup failing has nothing to fall back on."""
        remote_gateway.error = RemoteRequestError(429, "rate limited")

        with pytest.raises(RemoteUnavailableError):
            await cache.reserve("user-1", Decimal("1"))

    @pytest.mark.asyncio
    async def test_hits_keep_staleness_measured_from_fetch(self, cache, remote_gateway, clock):
        """Fresh hits extend the TTL window but not the fallback window."""
        await cache.reserve("user-1", Decimal("1"))
        for _ in range(7):
            clock.advance(9)
            await cache.reserve("user-1", Decimal("1"))
        assert remote_gateway.balance_calls == 1

        clock.advance(11)
        remote_gateway.error = RemoteUnavailableError("authority down")
        with pytest.raises(RemoteUnavailableError):
            await cache.reserve("user-1", Decimal("1"))


class TestInvalidate:
    """Manual invalidation."""

    @pytest.mark.asyncio
    async def test_invalidate_forces_lookup(self, cache, remote_gateway):
        """Next reserve after invalidate asks the authority."""
        await cache.reserve("user-1", Decimal("1"))
        cache.invalidate("user-1")

        assert cache.snapshot("user-1") is None
        await cache.reserve("user-1", Decimal("1"))
        assert remote_gateway.balance_calls == 2
