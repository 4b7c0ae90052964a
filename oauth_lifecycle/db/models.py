"""
Database models for the OAuth token lifecycle.

Security: access, refresh and id tokens are stored as Fernet ciphertext. The
ORM rows never hold plaintext; the token store converts rows to and from the
``Integration`` dataclass.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    LargeBinary,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class IntegrationRecord(Base):
    """
    A user's OAuth authorization with one provider.

    Attributes:
        id: Unique integration identifier
        user_id: Owner of the integration
        provider: OAuth provider ('google' or 'zoom')
        access_token_ciphertext: Encrypted access token
        refresh_token_ciphertext: Encrypted refresh token (NULL = re-auth on expiry)
        id_token_ciphertext: Encrypted OpenID id token, if the provider issued one
        token_type: Token type reported by the provider
        expires_at: Access token expiration (NULL = non-expiring)
        scopes: Granted OAuth scopes
        provider_user_id: User identifier on the provider's side
        created_at: Creation timestamp
        updated_at: Last modification timestamp, used as the compare-and-swap version
    """

    __tablename__ = "integrations"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        doc="Unique integration identifier",
    )

    user_id: Mapped[str] = mapped_column(
        String(255), nullable=False, doc="Owner of the integration"
    )

    provider: Mapped[str] = mapped_column(
        String(50), nullable=False, doc="OAuth provider name"
    )

    # Encrypted token storage
    access_token_ciphertext: Mapped[bytes] = mapped_column(
        LargeBinary, nullable=False, doc="Encrypted access token (Fernet encrypted)"
    )

    refresh_token_ciphertext: Mapped[Optional[bytes]] = mapped_column(
        LargeBinary,
        nullable=True,
        doc="Encrypted refresh token (Fernet encrypted, if available)",
    )

    id_token_ciphertext: Mapped[Optional[bytes]] = mapped_column(
        LargeBinary, nullable=True, doc="Encrypted OpenID id token"
    )

    token_type: Mapped[str] = mapped_column(
        String(40), nullable=False, default="Bearer", doc="Token type"
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, doc="Access token expiration timestamp"
    )

    scopes: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, default=list, doc="Array of granted OAuth scopes"
    )

    provider_user_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, doc="User identifier on the provider's system"
    )

    # Timestamps (assigned by the token store so updated_at strictly increases)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, doc="Integration creation timestamp"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, doc="Last modification timestamp"
    )

    __table_args__ = (
        # Exactly one integration per user and provider
        UniqueConstraint("user_id", "provider", name="uq_integrations_user_provider"),
        CheckConstraint(
            "provider IN ('google', 'zoom')", name="chk_integrations_provider"
        ),
        Index("ix_integrations_user_id", "user_id"),
        # Supports the stale-integration cleanup sweep
        Index("ix_integrations_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<IntegrationRecord(id={self.id}, user_id={self.user_id}, "
            f"provider={self.provider}, expires_at={self.expires_at})>"
        )
