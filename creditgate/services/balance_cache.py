"""
Metered Balance Cache - admission checks against a short-lived balance view.

Answers "can this user spend N credits?" without a round trip to the
metering authority on every request. Each cache entry holds the last
observed remote balance plus the credits provisionally reserved by requests
that have been admitted but not yet charged.

Consistency: none with the authority. Within one TTL window the cache can
admit more than the authority would, bounded by ttl x request rate per
process. Multiple processes each keep their own cache, so the bound is per
process. Operators should size BALANCE_CACHE_TTL_SECONDS with that in mind.

Concurrency: every mutation is plain synchronous code between awaits, so it
is atomic on the event loop. The authority call is the only suspension
point; concurrent misses for one user share a single in-flight fetch task,
which rebuilds the entry once, and each waiter then decides against that
entry in turn. Expiry timers are loop callbacks and run on the same loop.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import replace
from decimal import Decimal
from uuid import UUID

from structlog import get_logger

from creditgate.exceptions import (
    AuthRequiredError,
    RemoteRequestError,
    RemoteUnavailableError,
)
from creditgate.models.domain import ZERO, BalanceCacheEntry, Reservation, ReservationResult
from creditgate.observability.metrics import metrics
from creditgate.services.remote_balance import RemoteBalanceGateway

logger = get_logger(__name__)


class MeteredBalanceCache:
    """
    Per-process balance cache with pending-reservation accounting.

    Reservations are released three ways: explicitly (release), on charge
    (settle), or automatically after pending_ttl so an abandoned request
    cannot lock credits out of later checks.
    """

    def __init__(
        self,
        gateway: RemoteBalanceGateway,
        ttl: float = 10.0,
        pending_ttl: float | None = None,
        max_staleness: float = 60.0,
        remote_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl <= 0:
            raise ValueError(f"ttl must be positive: {ttl}")
        self._gateway = gateway
        self.ttl = ttl
        self.pending_ttl = pending_ttl if pending_ttl is not None else ttl
        self.max_staleness = max(max_staleness, ttl)
        self.remote_timeout = remote_timeout if remote_timeout is not None else self.pending_ttl
        self._clock = clock
        self._entries: dict[str, BalanceCacheEntry] = {}
        self._active: dict[UUID, Reservation] = {}
        self._timers: dict[UUID, asyncio.TimerHandle] = {}
        self._fetches: dict[str, asyncio.Task[BalanceCacheEntry]] = {}

    async def reserve(self, user_id: str, required: Decimal) -> ReservationResult:
        """
        Reserve credits for one charge decision.

        Insufficient funds is returned as allowed=False. Callers must reserve
        exactly once per charge decision; the cache does not deduplicate.

        Raises:
            AuthRequiredError: the authority call could not be authenticated.
            RemoteUnavailableError: authority unreachable and no usable cached entry.
        """
        if required <= 0:
            entry = self._entries.get(user_id)
            metrics.record_reservation("zero")
            return ReservationResult(
                allowed=True,
                user_id=user_id,
                required=ZERO,
                available=entry.available_credits if entry else ZERO,
            )

        now = self._clock()
        entry = self._entries.get(user_id)
        if entry is not None and now - entry.observed_at <= self.ttl:
            entry.observed_at = now
            return self._decide(entry, required, outcome_prefix="hit")

        self._sweep(now)

        task = self._fetches.get(user_id)
        if task is None:
            task = asyncio.create_task(self._fetch(user_id))
            self._fetches[user_id] = task
            task.add_done_callback(lambda t: self._fetch_done(user_id, t))

        try:
            fetched = await asyncio.shield(task)
        except AuthRequiredError:
            raise
        except (RemoteUnavailableError, RemoteRequestError, asyncio.TimeoutError) as e:
            return self._fallback(user_id, required, e)

        entry = self._entries.get(user_id, fetched)
        return self._decide(entry, required, outcome_prefix="miss")

    def release(self, reservation: Reservation) -> bool:
        """Release a reservation early. Idempotent; returns False if already gone."""
        if self._active.pop(reservation.reservation_id, None) is None:
            return False

        timer = self._timers.pop(reservation.reservation_id, None)
        if timer is not None:
            timer.cancel()

        entry = self._entries.get(reservation.user_id)
        if entry is not None and entry.generation == reservation.generation:
            entry.pending_reserved = max(ZERO, entry.pending_reserved - reservation.amount)
        return True

    def settle(
        self, user_id: str, charged: Decimal, reservation: Reservation | None = None
    ) -> None:
        """
        Release the reservation and debit the cached balance by what was charged.

        The debit is skipped when the entry was rebuilt after the reservation:
        the newer observation may already include this charge.
        """
        if reservation is not None:
            self.release(reservation)

        entry = self._entries.get(user_id)
        if entry is None or charged <= 0:
            return
        if reservation is not None and entry.generation != reservation.generation:
            return
        entry.remote_credits = max(ZERO, entry.remote_credits - charged)
        logger.debug(
            "balance_cache_debited",
            user_id=user_id,
            charged=str(charged),
            remote_credits=str(entry.remote_credits),
        )

    def invalidate(self, user_id: str) -> None:
        """Drop a user's entry so the next reserve asks the authority."""
        entry = self._entries.pop(user_id, None)
        if entry is not None:
            self._drop_reservations(user_id)

    def snapshot(self, user_id: str) -> BalanceCacheEntry | None:
        """Copy of the current entry (for the balance route and tests)."""
        entry = self._entries.get(user_id)
        return replace(entry) if entry is not None else None

    def clear(self) -> None:
        """Forget everything and cancel all expiry timers."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._active.clear()
        self._entries.clear()

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _decide(
        self, entry: BalanceCacheEntry, required: Decimal, outcome_prefix: str
    ) -> ReservationResult:
        available = entry.available_credits
        if available < required:
            metrics.record_reservation("insufficient")
            logger.info(
                "reservation_refused",
                user_id=entry.user_id,
                required=str(required),
                available=str(available),
                source=outcome_prefix,
            )
            return ReservationResult(
                allowed=False, user_id=entry.user_id, required=required, available=available
            )

        reservation = self._hold(entry, required)
        metrics.record_reservation(f"{outcome_prefix}_granted")
        logger.debug(
            "reservation_granted",
            user_id=entry.user_id,
            required=str(required),
            pending_reserved=str(entry.pending_reserved),
            source=outcome_prefix,
        )
        return ReservationResult(
            allowed=True,
            user_id=entry.user_id,
            required=required,
            available=available,
            reservation=reservation,
        )

    def _fallback(self, user_id: str, required: Decimal, error: Exception) -> ReservationResult:
        """Degraded mode: trust a recently observed balance while the authority is down."""
        now = self._clock()
        entry = self._entries.get(user_id)
        age = now - entry.fetched_at if entry is not None else None

        if entry is None or age is None or age > self.max_staleness:
            metrics.record_reservation("unavailable")
            logger.warning(
                "balance_fallback_unavailable",
                user_id=user_id,
                error=str(error),
                cache_age_seconds=age,
                max_staleness_seconds=self.max_staleness,
            )
            if isinstance(error, RemoteUnavailableError):
                raise error
            raise RemoteUnavailableError(f"balance lookup failed: {error}") from error

        available = entry.available_credits
        if available < required:
            metrics.record_reservation("unavailable")
            logger.warning(
                "balance_fallback_insufficient",
                user_id=user_id,
                required=str(required),
                available=str(available),
                error=str(error),
            )
            raise RemoteUnavailableError(
                f"balance lookup failed and cached balance cannot cover {required}"
            ) from error

        reservation = self._hold(entry, required)
        metrics.record_reservation("degraded")
        logger.warning(
            "reservation_granted_degraded",
            user_id=user_id,
            required=str(required),
            available=str(available),
            cache_age_seconds=age,
            error=str(error),
        )
        return ReservationResult(
            allowed=True,
            user_id=user_id,
            required=required,
            available=available,
            degraded=True,
            reservation=reservation,
        )

    async def _fetch(self, user_id: str) -> BalanceCacheEntry:
        credits = await asyncio.wait_for(
            self._gateway.get_balance(user_id, timeout=self.remote_timeout),
            timeout=self.remote_timeout,
        )
        return self._rebuild(user_id, credits)

    def _fetch_done(self, user_id: str, task: asyncio.Task[BalanceCacheEntry]) -> None:
        if self._fetches.get(user_id) is task:
            del self._fetches[user_id]
        # Every waiter may have been cancelled; mark the outcome as retrieved
        if not task.cancelled():
            task.exception()

    def _rebuild(self, user_id: str, credits: Decimal) -> BalanceCacheEntry:
        now = self._clock()
        previous = self._entries.get(user_id)
        if previous is not None:
            self._drop_reservations(user_id)
        entry = BalanceCacheEntry(
            user_id=user_id,
            remote_credits=credits,
            observed_at=now,
            fetched_at=now,
            generation=previous.generation + 1 if previous is not None else 1,
        )
        self._entries[user_id] = entry
        logger.debug(
            "balance_cache_rebuilt",
            user_id=user_id,
            remote_credits=str(credits),
            generation=entry.generation,
        )
        return entry

    def _hold(self, entry: BalanceCacheEntry, amount: Decimal) -> Reservation:
        reservation = Reservation(user_id=entry.user_id, amount=amount, generation=entry.generation)
        entry.pending_reserved += amount
        self._active[reservation.reservation_id] = reservation
        loop = asyncio.get_running_loop()
        self._timers[reservation.reservation_id] = loop.call_later(
            self.pending_ttl, self._expire, reservation
        )
        return reservation

    def _expire(self, reservation: Reservation) -> None:
        self._timers.pop(reservation.reservation_id, None)
        if self.release(reservation):
            logger.info(
                "reservation_expired",
                user_id=reservation.user_id,
                amount=str(reservation.amount),
            )

    def _drop_reservations(self, user_id: str) -> None:
        """Forget reservations held against a user's previous entry."""
        stale = [rid for rid, r in self._active.items() if r.user_id == user_id]
        for rid in stale:
            self._active.pop(rid, None)
            timer = self._timers.pop(rid, None)
            if timer is not None:
                timer.cancel()

    def _sweep(self, now: float) -> None:
        """Evict entries that are too old for fallback and hold nothing."""
        expired = [
            user_id
            for user_id, entry in self._entries.items()
            if entry.pending_reserved <= 0 and now - entry.fetched_at > self.max_staleness
        ]
        for user_id in expired:
            del self._entries[user_id]
        if expired:
            logger.debug("balance_cache_evicted", count=len(expired))
