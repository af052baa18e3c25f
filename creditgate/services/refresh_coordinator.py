"""
Refresh Coordinator - single-flight upstream credential refresh.

Turns a short-lived access token plus a longer-lived refresh token into a
continuously valid bearer credential. Concurrent callers for the same user
share one in-flight refresh; the token endpoint is called at most once per
user per expiry cycle in this process.

Failure policy: refresh failures are never retried in place. Any failure
deletes both stored credentials and surfaces AuthRequiredError, because
replaying a refresh secret against the provider is not safe to assume.
"""

import asyncio
import time
from datetime import UTC, datetime, timedelta

from structlog import get_logger

from creditgate.crypto import CredentialCipher
from creditgate.exceptions import AuthRequiredError, DecryptionError
from creditgate.models.api import CredentialKind
from creditgate.models.domain import Credential, TokenGrant
from creditgate.observability.metrics import metrics
from creditgate.services.credential_store import CredentialStore
from creditgate.services.token_exchange import TokenExchangeClient

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class RefreshCoordinator:
    """
    Hands out valid bearer credentials, refreshing at most once per user at a time.

    The pending map holds one asyncio.Task per user with a refresh in flight.
    Check-and-insert has no suspension point, so it is atomic on the event
    loop. The entry is dropped by a done-callback whatever the outcome, so a
    failed or cancelled refresh can never block later ones.

    Waiters await the task through asyncio.shield: a caller that is cancelled
    stops waiting without cancelling the refresh other callers depend on.
    """

    def __init__(
        self,
        store: CredentialStore,
        exchange: TokenExchangeClient,
        cipher: CredentialCipher,
        provider: str,
        skew_buffer: timedelta = timedelta(minutes=5),
        default_refresh_ttl: timedelta = timedelta(days=30),
    ) -> None:
        self._store = store
        self._exchange = exchange
        self._cipher = cipher
        self.provider = provider
        self.skew_buffer = skew_buffer
        self.default_refresh_ttl = default_refresh_ttl
        self._pending: dict[str, asyncio.Task[str]] = {}
        self._forced: set[str] = set()

    async def get_valid_credential(self, user_id: str) -> str:
        """
        Return a bearer token that is valid beyond the skew buffer.

        Raises:
            AuthRequiredError: no usable credential chain; the user must sign in again.
        """
        access = await self._store.find(user_id, CredentialKind.ACCESS, self.provider)
        if access is None:
            logger.info("credential_missing", user_id=user_id, provider=self.provider)
            raise AuthRequiredError(user_id, "no access credential")

        # A refresh in flight is replacing the stored credential; wait for it
        pending = self._pending.get(user_id)
        in_flight = pending is not None and not pending.done()
        forced = user_id in self._forced or in_flight
        if not forced and access.is_fresh(_utc_now(), self.skew_buffer):
            return await self._decrypt_or_cleanup(user_id, access)

        task = self._join_or_start(user_id)
        return await asyncio.shield(task)

    def invalidate(self, user_id: str) -> None:
        """
        Distrust the stored access credential for this user.

        Used when the upstream rejected a credential we believed valid: the
        next get_valid_credential call refreshes regardless of stated expiry.

        While a refresh is in flight nothing is forced: its result already
        supersedes the rejected credential, and later callers join it.
        """
        task = self._pending.get(user_id)
        if task is not None and not task.done():
            logger.info("credential_invalidated_refresh_in_flight", user_id=user_id)
            return
        if task is not None:
            self._pending.pop(user_id, None)
        self._forced.add(user_id)
        logger.info("credential_invalidated", user_id=user_id)

    async def has_valid_credentials(self, user_id: str) -> bool:
        """Non-raising probe used by middleware and the maintenance job."""
        try:
            await self.get_valid_credential(user_id)
        except AuthRequiredError:
            return False
        return True

    def pending_count(self) -> int:
        """Number of refreshes currently in flight."""
        return len(self._pending)

    async def revoke(self, user_id: str, reason: str) -> None:
        """Delete both stored credentials (force full re-authentication)."""
        self._forced.discard(user_id)
        try:
            await self._store.delete_many(user_id, self.provider)
        except Exception as e:
            logger.error("credential_cleanup_failed", user_id=user_id, error=str(e))
            raise
        logger.warning("credentials_revoked", user_id=user_id, reason=reason)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _join_or_start(self, user_id: str) -> "asyncio.Task[str]":
        task = self._pending.get(user_id)
        if task is not None and not task.done():
            self._forced.discard(user_id)
            metrics.credential_refresh_joins_total.inc()
            logger.info("credential_refresh_joined", user_id=user_id)
            return task

        force = user_id in self._forced
        self._forced.discard(user_id)
        task = asyncio.create_task(
            self._refresh(user_id, force), name=f"credential-refresh:{user_id}"
        )
        self._pending[user_id] = task
        task.add_done_callback(lambda t: self._settle(user_id, t))
        return task

    def _settle(self, user_id: str, task: "asyncio.Task[str]") -> None:
        if self._pending.get(user_id) is task:
            del self._pending[user_id]
        # Mark the outcome as retrieved even if every waiter was cancelled
        if not task.cancelled():
            task.exception()

    async def _refresh(self, user_id: str, force: bool) -> str:
        now = _utc_now()

        if not force:
            # Another refresh may have landed between our read and now
            access = await self._store.find(user_id, CredentialKind.ACCESS, self.provider)
            if access is not None and access.is_fresh(now, self.skew_buffer):
                return await self._decrypt_or_cleanup(user_id, access)

        refresh = await self._store.find(user_id, CredentialKind.REFRESH, self.provider)
        if refresh is None:
            await self._cleanup(user_id, "refresh_credential_missing")
            raise AuthRequiredError(user_id, "no refresh credential")
        if refresh.is_expired(now):
            logger.warning(
                "refresh_credential_expired",
                user_id=user_id,
                refresh_expires_at=refresh.expires_at.isoformat(),
            )
            await self._cleanup(user_id, "refresh_credential_expired")
            raise AuthRequiredError(user_id, "refresh credential expired")

        logger.info("credential_refresh_started", user_id=user_id, forced=force)
        start = time.perf_counter()
        try:
            refresh_secret = self._cipher.decrypt(refresh.ciphertext)
            grant = await self._exchange.refresh(refresh_secret)
            await self._store_grant(user_id, grant)
        except asyncio.CancelledError:
            metrics.record_refresh("cancelled")
            raise
        except Exception as e:
            metrics.record_refresh("failed", time.perf_counter() - start)
            logger.error(
                "credential_refresh_failed",
                user_id=user_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._cleanup(user_id, "refresh_failed")
            raise AuthRequiredError(user_id, "credential refresh failed") from e

        metrics.record_refresh("success", time.perf_counter() - start)
        logger.info(
            "credential_refreshed",
            user_id=user_id,
            expires_in=grant.expires_in,
            rotated_refresh=grant.refresh_token is not None,
        )
        return grant.access_token

    async def _store_grant(self, user_id: str, grant: TokenGrant) -> None:
        access_ttl = timedelta(seconds=grant.expires_in)
        refresh_ciphertext: str | None = None
        refresh_ttl: timedelta | None = None

        if grant.refresh_token is not None:
            refresh_ciphertext = self._cipher.encrypt(grant.refresh_token)
            refresh_ttl = (
                timedelta(seconds=grant.refresh_expires_in)
                if grant.refresh_expires_in is not None
                else self.default_refresh_ttl
            )
            # A refresh credential must outlive the access credential it renews
            if refresh_ttl <= access_ttl:
                refresh_ttl = access_ttl + self.skew_buffer

        await self._store.replace_pair(
            user_id,
            self.provider,
            access_ciphertext=self._cipher.encrypt(grant.access_token),
            access_ttl=access_ttl,
            refresh_ciphertext=refresh_ciphertext,
            refresh_ttl=refresh_ttl,
        )

    async def _decrypt_or_cleanup(self, user_id: str, access: Credential) -> str:
        try:
            return self._cipher.decrypt(access.ciphertext)
        except DecryptionError as e:
            logger.error("access_credential_undecryptable", user_id=user_id, error=str(e))
            await self._cleanup(user_id, "access_credential_undecryptable")
            raise AuthRequiredError(user_id, "stored credential unusable") from e

    async def _cleanup(self, user_id: str, reason: str) -> None:
        """Delete both credentials before surfacing AuthRequired."""
        try:
            await self.revoke(user_id, reason)
        except Exception:
            # Already logged by revoke; the caller still gets AuthRequired
            pass
