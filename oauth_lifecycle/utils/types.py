"""
Type definitions and data classes for the OAuth token lifecycle.

This module contains the provider enumeration, the Integration record handed
between the store, the refresh coordinator and the facade, and the TokenSet
returned by providers.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple, Union


class Provider(str, Enum):
    """OAuth providers this service can hold integrations for."""

    GOOGLE = "google"
    ZOOM = "zoom"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    Naive values are assumed to already be UTC (SQLite drops tzinfo on read).
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class TokenSet:
    """
    Tokens issued by a provider, either from authorization or from a refresh.

    Attributes:
        access_token: Bearer credential
        refresh_token: Rotation credential (None when the provider did not issue one)
        expires_at: Absolute access token expiry (None = non-expiring)
        scopes: Granted scopes (None when the provider did not report them)
        token_type: Token type reported by the provider
        id_token: OpenID Connect id token, if any
        provider_user_id: User identifier on the provider's side, if known
    """

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: Optional[FrozenSet[str]] = None
    token_type: str = "Bearer"
    id_token: Optional[str] = None
    provider_user_id: Optional[str] = None

    @classmethod
    def from_token_response(
        cls, token_response: Dict[str, Any], now: Optional[datetime] = None
    ) -> "TokenSet":
        """
        Build a TokenSet from a standard OAuth token endpoint response.

        ``expires_in`` (seconds) is converted to an absolute timestamp and the
        ``scope`` string is split into a set.
        """
        from ..services.token_policy import parse_scope_string

        expires_at = None
        expires_in = token_response.get("expires_in")
        if expires_in:
            expires_at = (now or utcnow()) + timedelta(seconds=int(float(expires_in)))

        scope = token_response.get("scope")
        return cls(
            access_token=token_response.get("access_token") or "",
            refresh_token=token_response.get("refresh_token") or None,
            expires_at=expires_at,
            scopes=parse_scope_string(scope) if scope else None,
            token_type=token_response.get("token_type") or "Bearer",
            id_token=token_response.get("id_token") or None,
        )


@dataclass(frozen=True)
class Integration:
    """
    A user's authorization with one external provider.

    Exactly one Integration exists per (user_id, provider). Tokens are held in
    plaintext here; the store encrypts them at rest.
    """

    user_id: str
    provider: Provider
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: FrozenSet[str] = field(default_factory=frozenset)
    token_type: str = "Bearer"
    id_token: Optional[str] = None
    provider_user_id: Optional[str] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> "IntegrationKey":
        return (self.user_id, self.provider)

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    def with_refreshed_tokens(self, tokens: TokenSet) -> "Integration":
        """
        Apply a refresh result.

        Providers that do not rotate refresh tokens or do not echo scopes leave
        the previous values in place.
        """
        return replace(
            self,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token or self.refresh_token,
            expires_at=tokens.expires_at,
            scopes=tokens.scopes if tokens.scopes is not None else self.scopes,
            token_type=tokens.token_type or self.token_type,
            id_token=tokens.id_token or self.id_token,
        )

    def __repr__(self) -> str:
        return (
            f"<Integration(id={self.id}, user_id={self.user_id}, "
            f"provider={self.provider.value}, expires_at={self.expires_at})>"
        )


# Type aliases for better code readability
IntegrationKey = Tuple[str, Provider]  # (user_id, provider)
ProviderLike = Union[Provider, str]
ScopeSet = FrozenSet[str]


def normalize_scopes(scopes: Optional[Iterable[str]]) -> ScopeSet:
    """Turn any iterable of scope strings into a frozenset (None -> empty)."""
    if scopes is None:
        return frozenset()
    if isinstance(scopes, str):
        raise TypeError("scopes must be an iterable of scope strings, not a str")
    return frozenset(scopes)
