"""
Integration service: the public facade of the OAuth token lifecycle.

Calling code (HTTP handlers, background jobs) only talks to this service. It
answers "give me a usable access token for this user and provider", forces
refreshes after a downstream 401, records new authorizations and disconnects
integrations. Every failure is one of the typed errors in ``oauth_lifecycle.errors``.

Usage:
    async with create_integration_service() as service:
        token = await service.get_valid_token(user_id, "google")
"""

from datetime import timedelta
from typing import Any, Dict, Iterable, Mapping, Optional, Union

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError

from ..config import Settings, get_settings
from ..db.database import get_session_factory, ping
from ..db.token_store import IntegrationStore
from ..errors import (
    InsufficientScopeError,
    OAuthConfigError,
    TokenExpiredError,
    TokenNotFoundError,
    TokenRefreshError,
)
from ..utils.crypto import CryptoService
from ..utils.logging import integration_log_context
from ..utils.types import (
    Integration,
    Provider,
    ProviderLike,
    TokenSet,
    normalize_scopes,
    utcnow,
)
from .provider_adapters import (
    ProviderRefreshAdapter,
    build_http_client,
    build_provider_adapters,
)
from .refresh_coordinator import RefreshCoordinator
from .token_policy import has_scopes, is_usable, required_scopes_for_feature

logger = structlog.get_logger(__name__)


class IntegrationService:
    """
    Facade over the token store, expiry policy, scope validator and refresh
    coordinator.
    """

    def __init__(
        self,
        settings: Settings,
        store: IntegrationStore,
        adapters: Mapping[Provider, ProviderRefreshAdapter],
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            settings: Application settings
            store: Integration store
            adapters: Refresh adapter per enabled provider
            http_client: HTTP client shared by the adapters; closed by ``close()``
        """
        self.settings = settings
        self.store = store
        self.adapters = dict(adapters)
        self.http_client = http_client
        self.coordinator = RefreshCoordinator(store, self.adapters, settings)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        """Let running refreshes finish, then release the HTTP client."""
        await self.coordinator.wait_idle()
        if self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None

    def _resolve_provider(self, provider: ProviderLike) -> Provider:
        """
        Raises:
            OAuthConfigError: If the provider is unknown or not enabled
        """
        try:
            resolved = Provider(provider)
        except ValueError as e:
            raise OAuthConfigError(f"Unsupported OAuth provider: {provider}") from e
        if resolved not in self.adapters:
            raise OAuthConfigError(f"OAuth provider {resolved.value} is not enabled")
        return resolved

    # ===== Token access =====

    async def get_valid_token(
        self,
        user_id: str,
        provider: ProviderLike,
        required_scopes: Optional[Iterable[str]] = None,
    ) -> str:
        """
        Get a usable access token, refreshing it first if it is stale.

        Args:
            user_id: Owner of the integration
            provider: Provider name or enum
            required_scopes: Scopes the token must carry

        Returns:
            Access token string

        Raises:
            TokenNotFoundError: No integration for this user and provider
            TokenExpiredError: Token is stale and there is no refresh token
            TokenRefreshError: The refresh failed (re-authorization required)
            InsufficientScopeError: Token lacks one of ``required_scopes``
            OAuthDatabaseError: Persistence failure
            OAuthConfigError: Unknown or disabled provider
        """
        provider = self._resolve_provider(provider)

        with integration_log_context(user_id, provider):
            integration = await self.store.get(user_id, provider)

            if not is_usable(integration, self.settings.oauth_expiry_skew_seconds):
                if not integration.can_refresh:
                    logger.warning("Token expired and no refresh token available")
                    raise TokenExpiredError(user_id, provider)

                logger.info(
                    "Token stale, refreshing",
                    expires_at=(
                        integration.expires_at.isoformat()
                        if integration.expires_at
                        else None
                    ),
                )
                integration = await self.coordinator.refresh(user_id, provider)

            if required_scopes is not None:
                required = normalize_scopes(required_scopes)
                if not has_scopes(integration.scopes, required):
                    logger.info(
                        "Token lacks required scopes",
                        missing_scopes=sorted(required - integration.scopes),
                    )
                    raise InsufficientScopeError(
                        user_id, provider, required, integration.scopes
                    )

            return integration.access_token

    async def get_token_for_feature(
        self, user_id: str, provider: ProviderLike, feature: str
    ) -> str:
        """Get a usable access token carrying the scopes a platform feature needs."""
        provider = self._resolve_provider(provider)
        return await self.get_valid_token(
            user_id, provider, required_scopes_for_feature(provider, feature)
        )

    async def has_valid_token(self, user_id: str, provider: ProviderLike) -> bool:
        """
        Check whether a usable token can be obtained (refreshing if needed).

        Only the re-authorization failures answer False; infrastructure and
        configuration errors still raise.
        """
        try:
            await self.get_valid_token(user_id, provider)
            return True
        except (TokenNotFoundError, TokenExpiredError, TokenRefreshError):
            return False

    async def refresh_token(self, user_id: str, provider: ProviderLike) -> str:
        """
        Force a refresh even though the stored token looks usable.

        Used after the provider API answered 401 to a token the expiry check
        accepted. Joins a refresh already in flight for the same integration.

        Returns:
            The new access token
        """
        provider = self._resolve_provider(provider)

        with integration_log_context(user_id, provider):
            integration = await self.store.get(user_id, provider)
            logger.info("Forced token refresh requested")
            refreshed = await self.coordinator.refresh(
                user_id,
                provider,
                force=True,
                observed_updated_at=integration.updated_at,
            )
            return refreshed.access_token

    async def get_integration(
        self, user_id: str, provider: ProviderLike
    ) -> Integration:
        """Stored integration, without refreshing. Raises TokenNotFoundError."""
        return await self.store.get(user_id, self._resolve_provider(provider))

    # ===== Authorization lifecycle =====

    async def record_new_integration(
        self,
        user_id: str,
        provider: ProviderLike,
        tokens: Union[TokenSet, Dict[str, Any]],
        scopes: Optional[Iterable[str]] = None,
    ) -> Integration:
        """
        Create or replace the integration after an authorization-code exchange.

        Args:
            user_id: Owner of the integration
            provider: Provider name or enum
            tokens: TokenSet, or the provider's raw token response
            scopes: Granted scopes (defaults to the scopes reported with the tokens)

        Returns:
            The stored Integration

        Raises:
            ValueError: If the access token is empty
        """
        provider = self._resolve_provider(provider)

        if isinstance(tokens, Mapping):
            tokens = TokenSet.from_token_response(tokens)
        if not tokens.access_token:
            raise ValueError("access_token must not be empty")

        if scopes is not None:
            granted = normalize_scopes(scopes)
        else:
            granted = tokens.scopes or frozenset()

        integration = Integration(
            user_id=user_id,
            provider=provider,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            scopes=granted,
            token_type=tokens.token_type,
            id_token=tokens.id_token,
            provider_user_id=tokens.provider_user_id,
        )

        with integration_log_context(user_id, provider):
            stored = await self.store.upsert(integration)
            logger.info(
                "Integration recorded",
                has_refresh_token=stored.can_refresh,
                scope_count=len(stored.scopes),
            )
            return stored

    async def revoke_token(self, user_id: str, provider: ProviderLike) -> bool:
        """
        Disconnect an integration.

        Revocation at the provider is best effort; the local record is deleted
        regardless. Revoking an integration that does not exist is a no-op.

        Returns:
            True if a stored integration was deleted
        """
        provider = self._resolve_provider(provider)

        with integration_log_context(user_id, provider):
            integration = await self.store.find(user_id, provider)
            if integration is None:
                logger.info("No integration to revoke")
                return False

            # Revoking the refresh token also invalidates its access tokens
            token = integration.refresh_token or integration.access_token
            try:
                await self.adapters[provider].revoke(token)
            except Exception as e:
                logger.warning(
                    "Provider revocation failed, deleting local integration anyway",
                    error=str(e),
                    error_type=type(e).__name__,
                )

            return await self.store.delete(user_id, provider)

    async def cleanup_stale_integrations(
        self, older_than_days: Optional[int] = None
    ) -> int:
        """
        Delete integrations that expired long ago and cannot be refreshed.

        Args:
            older_than_days: Days since expiry (defaults to
                ``oauth_stale_integration_days``)

        Returns:
            Number of deleted integrations
        """
        days = (
            older_than_days
            if older_than_days is not None
            else self.settings.oauth_stale_integration_days
        )
        cutoff = utcnow() - timedelta(days=days)
        count = await self.store.delete_stale(cutoff)
        logger.info("Stale integration cleanup finished", deleted=count, older_than_days=days)
        return count

    def get_metrics(self) -> Dict[str, Any]:
        """Refresh metrics for health monitoring."""
        return {
            **self.coordinator.metrics.get_metrics_summary(),
            "refreshes_in_flight": self.coordinator.in_flight_count(),
        }

    async def health_check(self) -> Dict[str, Any]:
        """
        Health status of the token lifecycle for monitoring endpoints.

        Status is "error" when the integrations database is unreachable,
        "warning" when fewer than 80% of refresh attempts succeed, and
        "healthy" otherwise.
        """
        refresh_metrics = self.get_metrics()
        health = {
            "enabled_providers": [p.value for p in self.adapters],
            "refresh_metrics": refresh_metrics,
            "last_updated": utcnow().isoformat(),
        }

        try:
            latency_ms = await ping(self.store.session_factory)
        except SQLAlchemyError as e:
            logger.error("Integration database health check failed", error=str(e))
            return {"status": "error", "error": str(e), **health}

        health_status = "healthy"
        if (
            refresh_metrics["refresh_attempts_total"] > 0
            and refresh_metrics["success_rate"] < 0.8
        ):
            health_status = "warning"  # Providers failing or grants revoked

        return {
            "status": health_status,
            "database_latency_ms": round(latency_ms, 2),
            **health,
        }


def create_integration_service(settings: Optional[Settings] = None) -> IntegrationService:
    """
    Wire an IntegrationService from settings.

    Raises:
        OAuthConfigError: If an enabled provider has no client credentials, or
            the database URL is missing or unsupported
    """
    settings = settings or get_settings()

    # Fail on missing credentials before any resources are opened
    for provider in settings.oauth_enabled_providers:
        try:
            settings.provider_credentials(provider)
        except OAuthConfigError as e:
            logger.error("Provider configuration invalid", error=str(e))
            raise

    crypto = CryptoService(settings.fernet_key, settings.fernet_previous_keys)
    store = IntegrationStore(get_session_factory(settings), crypto)
    http_client = build_http_client(settings)
    adapters = build_provider_adapters(settings, http_client)
    return IntegrationService(settings, store, adapters, http_client=http_client)


# ===== Global Service Instance =====

_integration_service: Optional[IntegrationService] = None


def get_integration_service() -> IntegrationService:
    """Get the global integration service instance."""
    global _integration_service
    if _integration_service is None:
        _integration_service = create_integration_service()
    return _integration_service


def reset_integration_service() -> None:
    """Reset integration service (useful for testing)."""
    global _integration_service
    _integration_service = None
