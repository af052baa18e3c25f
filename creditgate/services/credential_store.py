"""
Credential Store - Encrypted upstream credentials keyed by (user, provider).

Secrets arrive already encrypted; this layer never sees plaintext.
Each operation opens its own short-lived session so the store can be held
by long-lived services.
"""

from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, exists, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased
from structlog import get_logger

from creditgate.db.models import StoredCredential
from creditgate.exceptions import WriteConflictError
from creditgate.models.api import CredentialKind
from creditgate.models.domain import Credential, credential_identifier

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _to_domain(row: StoredCredential) -> Credential:
    """Convert ORM credential to domain model."""
    return Credential(
        user_id=row.user_id,
        provider=row.provider,
        kind=CredentialKind(row.kind),
        ciphertext=row.ciphertext,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


class CredentialStore:
    """
    Persistence for encrypted access/refresh credentials.

    Access and refresh credentials for one provider share the user key and
    are stored under "<provider>" and "<provider>:refresh".
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def find(
        self, user_id: str, kind: CredentialKind, provider: str
    ) -> Credential | None:
        """Find one credential, or None."""
        async with self._session_factory() as session:
            row = await self._find_row(session, user_id, kind, provider)
            return _to_domain(row) if row is not None else None

    async def create(
        self,
        user_id: str,
        kind: CredentialKind,
        provider: str,
        ciphertext: str,
        ttl: timedelta,
    ) -> Credential:
        """Store a credential; an existing one for the same key is superseded."""
        return await self.update(user_id, kind, provider, ciphertext, ttl)

    async def update(
        self,
        user_id: str,
        kind: CredentialKind,
        provider: str,
        ciphertext: str,
        ttl: timedelta,
    ) -> Credential:
        """Upsert a single credential."""
        stored = await self._write(user_id, provider, [(kind, ciphertext, ttl)])
        return stored[0]

    async def replace_pair(
        self,
        user_id: str,
        provider: str,
        access_ciphertext: str,
        access_ttl: timedelta,
        refresh_ciphertext: str | None = None,
        refresh_ttl: timedelta | None = None,
    ) -> Credential:
        """
        Supersede the access credential and, when a new one was issued, the
        refresh credential in a single transaction.

        Returns the new access credential.
        """
        writes = [(CredentialKind.ACCESS, access_ciphertext, access_ttl)]
        if refresh_ciphertext is not None:
            if refresh_ttl is None:
                raise ValueError("refresh_ttl is required with refresh_ciphertext")
            writes.append((CredentialKind.REFRESH, refresh_ciphertext, refresh_ttl))

        stored = await self._write(user_id, provider, writes)
        return stored[0]

    async def delete_many(self, user_id: str, provider: str) -> int:
        """Delete both access and refresh credentials. Returns rows deleted."""
        identifiers = [
            credential_identifier(provider, CredentialKind.ACCESS),
            credential_identifier(provider, CredentialKind.REFRESH),
        ]
        async with self._session_factory() as session:
            stmt = delete(StoredCredential).where(
                StoredCredential.user_id == user_id,
                StoredCredential.identifier.in_(identifiers),
            )
            result = await session.execute(stmt)
            await session.commit()
            deleted = result.rowcount or 0  # type: ignore[attr-defined]

        logger.info("credentials_deleted", user_id=user_id, provider=provider, deleted=deleted)
        return deleted

    async def find_expiring(
        self, provider: str, before: datetime, created_after: datetime
    ) -> list[Credential]:
        """Access credentials expiring before `before` that were issued after `created_after`."""
        async with self._session_factory() as session:
            stmt = (
                select(StoredCredential)
                .where(
                    StoredCredential.identifier
                    == credential_identifier(provider, CredentialKind.ACCESS),
                    StoredCredential.expires_at <= before,
                    StoredCredential.created_at >= created_after,
                )
                .order_by(StoredCredential.expires_at)
            )
            result = await session.execute(stmt)
            return [_to_domain(row) for row in result.scalars().all()]

    async def delete_expired(self, older_than: datetime, now: datetime | None = None) -> int:
        """
        Delete credentials whose expiry passed before `older_than`.

        An expired access credential is kept while the same user still holds a
        live refresh credential: the next request can still refresh it.
        """
        now = now or _utc_now()
        refresh = aliased(StoredCredential)
        live_refresh = exists().where(
            refresh.user_id == StoredCredential.user_id,
            refresh.provider == StoredCredential.provider,
            refresh.kind == CredentialKind.REFRESH.value,
            refresh.expires_at > now,
        )
        async with self._session_factory() as session:
            stmt = delete(StoredCredential).where(
                StoredCredential.expires_at <= older_than,
                or_(StoredCredential.kind == CredentialKind.REFRESH.value, ~live_refresh),
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0  # type: ignore[attr-defined]

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_row(
        self, session: AsyncSession, user_id: str, kind: CredentialKind, provider: str
    ) -> StoredCredential | None:
        stmt = select(StoredCredential).where(
            StoredCredential.user_id == user_id,
            StoredCredential.identifier == credential_identifier(provider, kind),
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _write(
        self,
        user_id: str,
        provider: str,
        writes: list[tuple[CredentialKind, str, timedelta]],
    ) -> list[Credential]:
        """
        Upsert credentials in one transaction.

        A concurrent insert of the same key surfaces as IntegrityError; the
        second pass then takes the update branch.
        """
        for attempt in range(2):
            async with self._session_factory() as session:
                rows: list[StoredCredential] = []
                now = _utc_now()
                for kind, ciphertext, ttl in writes:
                    row = await self._find_row(session, user_id, kind, provider)
                    if row is None:
                        row = StoredCredential(
                            user_id=user_id,
                            provider=provider,
                            kind=kind.value,
                            identifier=credential_identifier(provider, kind),
                            ciphertext=ciphertext,
                            expires_at=now + ttl,
                            created_at=now,
                            updated_at=now,
                        )
                        session.add(row)
                    else:
                        row.ciphertext = ciphertext
                        row.expires_at = now + ttl
                        row.created_at = now
                    rows.append(row)

                try:
                    await session.flush()
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    logger.warning(
                        "credential_write_conflict",
                        user_id=user_id,
                        provider=provider,
                        attempt=attempt + 1,
                        error=str(e),
                    )
                    continue

                return [_to_domain(row) for row in rows]

        raise WriteConflictError(f"credentials for user {user_id}/{provider}")
