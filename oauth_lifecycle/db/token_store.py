"""
Token store: persistence boundary for Integration records.

The store reads and writes one Integration per (user_id, provider) and hides
encryption: callers hand in and get back plaintext ``Integration`` objects,
rows only ever hold Fernet ciphertext.

Guarantees:
- Every operation runs in its own unit of work. A failed write rolls back and
  leaves the previously stored tokens intact.
- ``updated_at`` strictly increases on every write and doubles as the version
  for ``upsert_if_newer`` (compare-and-swap).
- Persistence and encryption failures surface as ``OAuthDatabaseError`` and are
  never retried here.
"""

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import OAuthDatabaseError, TokenNotFoundError
from ..utils.crypto import CryptoService, CryptoServiceError
from ..utils.types import Integration, Provider, ProviderLike, as_utc, utcnow
from .database import with_unit_of_work
from .models import IntegrationRecord

logger = structlog.get_logger(__name__)

_STORE_ERRORS = (SQLAlchemyError, CryptoServiceError)


def _next_version(previous: Optional[datetime]) -> datetime:
    """Timestamp for a write that is strictly later than ``previous``."""
    now = utcnow()
    previous = as_utc(previous)
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now


class IntegrationStore:
    """
    Repository for Integration records.

    Usage:
        store = IntegrationStore(session_factory, crypto)
        integration = await store.get(user_id, Provider.GOOGLE)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        crypto: CryptoService,
    ):
        """
        Args:
            session_factory: Async session factory bound to the integrations database
            crypto: Crypto service for token encryption at rest
        """
        self.session_factory = session_factory
        self.crypto = crypto

    # ===== Row conversion =====

    def _to_integration(self, record: IntegrationRecord) -> Integration:
        return Integration(
            id=record.id,
            user_id=record.user_id,
            provider=Provider(record.provider),
            access_token=self.crypto.decrypt_token(record.access_token_ciphertext),
            refresh_token=self.crypto.decrypt_optional(record.refresh_token_ciphertext),
            id_token=self.crypto.decrypt_optional(record.id_token_ciphertext),
            token_type=record.token_type,
            expires_at=as_utc(record.expires_at),
            scopes=frozenset(record.scopes or ()),
            provider_user_id=record.provider_user_id,
            created_at=as_utc(record.created_at),
            updated_at=as_utc(record.updated_at),
        )

    def _token_columns(self, integration: Integration) -> dict:
        """Mutable columns of a row, with tokens encrypted."""
        return {
            "access_token_ciphertext": self.crypto.encrypt_token(
                integration.access_token
            ),
            "refresh_token_ciphertext": self.crypto.encrypt_optional(
                integration.refresh_token
            ),
            "id_token_ciphertext": self.crypto.encrypt_optional(integration.id_token),
            "token_type": integration.token_type,
            "expires_at": as_utc(integration.expires_at),
            "scopes": sorted(integration.scopes),
            "provider_user_id": integration.provider_user_id,
        }

    @staticmethod
    def _key_filter(user_id: str, provider: ProviderLike):
        return (
            IntegrationRecord.user_id == user_id,
            IntegrationRecord.provider == Provider(provider).value,
        )

    async def _locked_record(
        self, session: AsyncSession, integration: Integration
    ) -> Optional[IntegrationRecord]:
        result = await session.execute(
            select(IntegrationRecord)
            .where(*self._key_filter(integration.user_id, integration.provider))
            .with_for_update()
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _insert_statement(session: AsyncSession):
        """Dialect-specific INSERT, which supports ON CONFLICT."""
        if session.get_bind().dialect.name == "sqlite":
            return sqlite_insert(IntegrationRecord)
        return pg_insert(IntegrationRecord)

    # ===== Reads =====

    async def find(
        self, user_id: str, provider: ProviderLike
    ) -> Optional[Integration]:
        """
        Get the integration for a user and provider.

        Returns:
            Integration if found, None otherwise
        """
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(IntegrationRecord).where(*self._key_filter(user_id, provider))
                )
                record = result.scalar_one_or_none()
                return self._to_integration(record) if record else None
        except _STORE_ERRORS as e:
            logger.error(
                "Integration lookup failed",
                user_id=user_id,
                provider=Provider(provider).value,
                error=str(e),
            )
            raise OAuthDatabaseError("token retrieval", e) from e

    async def get(self, user_id: str, provider: ProviderLike) -> Integration:
        """
        Get the integration for a user and provider.

        Raises:
            TokenNotFoundError: If no integration exists
            OAuthDatabaseError: If the lookup fails
        """
        integration = await self.find(user_id, provider)
        if integration is None:
            raise TokenNotFoundError(user_id, Provider(provider))
        return integration

    # ===== Writes =====

    async def upsert(self, integration: Integration) -> Integration:
        """
        Create or replace the integration for its (user_id, provider).

        An existing row keeps its id and created_at; every other field is
        replaced. The insert is ``ON CONFLICT DO NOTHING`` on the
        (user_id, provider) constraint, so a concurrent first-time write for
        the same key turns into an update instead of a duplicate.

        Returns:
            The stored Integration with store-maintained timestamps
        """
        try:
            async with with_unit_of_work(self.session_factory) as session:
                columns = self._token_columns(integration)
                record = await self._locked_record(session, integration)
                created = False

                if record is None:
                    now = utcnow()
                    result = await session.execute(
                        self._insert_statement(session)
                        .values(
                            id=integration.id,
                            user_id=integration.user_id,
                            provider=integration.provider.value,
                            created_at=now,
                            updated_at=now,
                            **columns,
                        )
                        .on_conflict_do_nothing(index_elements=["user_id", "provider"])
                    )
                    created = result.rowcount > 0
                    record = await self._locked_record(session, integration)

                if not created:
                    for name, value in columns.items():
                        setattr(record, name, value)
                    record.updated_at = _next_version(record.updated_at)

                await session.flush()
                stored = self._to_integration(record)
        except _STORE_ERRORS as e:
            logger.error(
                "Integration upsert failed",
                user_id=integration.user_id,
                provider=integration.provider.value,
                error=str(e),
            )
            raise OAuthDatabaseError("token save", e) from e

        logger.info(
            "Integration stored",
            integration_id=str(stored.id),
            user_id=stored.user_id,
            provider=stored.provider.value,
            created=created,
            expires_at=stored.expires_at.isoformat() if stored.expires_at else None,
        )
        return stored

    async def upsert_if_newer(
        self, integration: Integration, expected_updated_at: datetime
    ) -> Optional[Integration]:
        """
        Persist refreshed tokens only if nobody wrote the row in the meantime.

        The write succeeds only when the stored ``updated_at`` still equals
        ``expected_updated_at`` (the version the refresh started from).

        Returns:
            The stored Integration, or None if a concurrent writer won
            (the newer row is left as is)
        """
        new_version = _next_version(expected_updated_at)
        try:
            async with with_unit_of_work(self.session_factory) as session:
                result = await session.execute(
                    update(IntegrationRecord)
                    .where(
                        *self._key_filter(integration.user_id, integration.provider),
                        IntegrationRecord.updated_at == as_utc(expected_updated_at),
                    )
                    .values(updated_at=new_version, **self._token_columns(integration))
                    .execution_options(synchronize_session=False)
                )
                written = result.rowcount > 0
        except _STORE_ERRORS as e:
            logger.error(
                "Refreshed token write failed",
                user_id=integration.user_id,
                provider=integration.provider.value,
                error=str(e),
            )
            raise OAuthDatabaseError("refreshed token save", e) from e

        if not written:
            logger.info(
                "Refreshed token write skipped, integration changed concurrently",
                user_id=integration.user_id,
                provider=integration.provider.value,
                expected_updated_at=as_utc(expected_updated_at).isoformat(),
            )
            return None

        return replace(
            integration,
            expires_at=as_utc(integration.expires_at),
            updated_at=new_version,
        )

    async def delete(self, user_id: str, provider: ProviderLike) -> bool:
        """
        Delete the integration for a user and provider.

        Returns:
            True if a row was deleted, False if none existed
        """
        try:
            async with with_unit_of_work(self.session_factory) as session:
                result = await session.execute(
                    delete(IntegrationRecord).where(*self._key_filter(user_id, provider))
                )
                deleted = result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error(
                "Integration delete failed",
                user_id=user_id,
                provider=Provider(provider).value,
                error=str(e),
            )
            raise OAuthDatabaseError("token removal", e) from e

        logger.info(
            "Integration deleted" if deleted else "Integration already absent",
            user_id=user_id,
            provider=Provider(provider).value,
        )
        return deleted

    async def delete_stale(self, expired_before: datetime) -> int:
        """
        Delete integrations that can never become usable again.

        A record is stale when it has no refresh token and its access token
        expired before ``expired_before``.

        Returns:
            Number of deleted integrations
        """
        try:
            async with with_unit_of_work(self.session_factory) as session:
                result = await session.execute(
                    delete(IntegrationRecord).where(
                        IntegrationRecord.refresh_token_ciphertext.is_(None),
                        IntegrationRecord.expires_at.is_not(None),
                        IntegrationRecord.expires_at < as_utc(expired_before),
                    )
                )
                count = result.rowcount or 0
        except SQLAlchemyError as e:
            raise OAuthDatabaseError("stale integration cleanup", e) from e

        if count > 0:
            logger.info("Cleaned up stale integrations", count=count)
        return count
