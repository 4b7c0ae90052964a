"""
Provider refresh adapters.

One adapter per OAuth provider exchanges a refresh token for a new access
token and revokes tokens at the provider. Adapters are a pure request/response
boundary:
- They never touch persisted state.
- They never retry; the refresh coordinator owns the retry policy.
- Every outbound call is bounded by the shared client's timeout and uses TLS
  verification.

Refresh failures are classified so the coordinator knows what to do:
- ``invalid_grant``: the grant is permanently unusable (revoked, expired,
  client mismatch). Never retried; the user must re-authorize.
- ``transient``: network errors, timeouts, rate limiting, 5xx and anything
  else unexpected. Retried with backoff by the coordinator.
"""

from abc import ABC, abstractmethod
from typing import ClassVar, Dict, NamedTuple, Optional

import httpx
import structlog

from ..config import Settings
from ..utils.types import Provider, TokenSet

logger = structlog.get_logger(__name__)

# OAuth error codes meaning the refresh token can never succeed again
TERMINAL_ERROR_CODES = frozenset(
    {"invalid_grant", "invalid_client", "unauthorized_client", "invalid_token"}
)


class ProviderRevocationError(Exception):
    """Raised when a provider rejects or fails a revocation request."""

    pass


class RefreshResult(NamedTuple):
    """Result of a provider refresh call with failure classification."""

    success: bool
    classification: str = "success"  # "success", "invalid_grant", "transient"
    error: Optional[str] = None
    tokens: Optional[TokenSet] = None

    @classmethod
    def ok(cls, tokens: TokenSet) -> "RefreshResult":
        return cls(success=True, classification="success", tokens=tokens)

    @classmethod
    def invalid_grant(cls, error: str) -> "RefreshResult":
        return cls(success=False, classification="invalid_grant", error=error)

    @classmethod
    def transient(cls, error: str) -> "RefreshResult":
        return cls(success=False, classification="transient", error=error)

    @property
    def is_transient(self) -> bool:
        return self.classification == "transient"


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    """HTTP client shared by all provider adapters."""
    timeout = settings.oauth_http_timeout_seconds
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout, connect=min(3.0, timeout)),
        follow_redirects=False,  # Token endpoints never redirect legitimately
    )


class ProviderRefreshAdapter(ABC):
    """
    Base class for provider-specific token refresh and revocation.

    Subclasses set ``provider`` and implement the two provider calls.
    """

    provider: ClassVar[Provider]

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        """
        Args:
            settings: Settings holding this provider's client credentials and endpoints
            http_client: Shared HTTP client (owns timeouts and connection pooling)

        Raises:
            OAuthConfigError: If the provider's client credentials are missing
        """
        self.client_id, self.client_secret = settings.provider_credentials(
            self.provider
        )
        self.token_url = settings.token_url(self.provider)
        self.revoke_url = settings.revoke_url(self.provider)
        self.http_client = http_client

    @abstractmethod
    async def _post_refresh(self, refresh_token: str) -> httpx.Response:
        """Send the refresh_token grant to the provider's token endpoint."""

    @abstractmethod
    async def _post_revoke(self, token: str) -> httpx.Response:
        """Send a revocation request to the provider."""

    async def refresh(self, refresh_token: str) -> RefreshResult:
        """
        Exchange a refresh token for a new access token.

        Returns:
            RefreshResult with new tokens, or the classified failure
        """
        try:
            response = await self._post_refresh(refresh_token)
        except httpx.TimeoutException as e:
            logger.warning(
                "Provider token refresh timed out",
                provider=self.provider.value,
                error=str(e),
            )
            return RefreshResult.transient(f"Timeout: {e}")
        except httpx.RequestError as e:
            logger.warning(
                "Provider token refresh network error",
                provider=self.provider.value,
                error=str(e),
            )
            return RefreshResult.transient(f"Network: {e}")

        return self._classify_response(response)

    def _classify_response(self, response: httpx.Response) -> RefreshResult:
        """Turn a token endpoint response into a RefreshResult."""
        if response.status_code == 200:
            try:
                token_response = response.json()
            except ValueError:
                token_response = None

            if not isinstance(token_response, dict) or not token_response.get(
                "access_token"
            ):
                logger.warning(
                    "Provider token response missing access token",
                    provider=self.provider.value,
                )
                return RefreshResult.transient("Malformed token response")

            try:
                tokens = TokenSet.from_token_response(token_response)
            except (ValueError, TypeError, KeyError, OverflowError) as e:
                logger.warning(
                    "Provider token response malformed",
                    provider=self.provider.value,
                    error=str(e),
                )
                return RefreshResult.transient("Malformed token response")

            logger.info(
                "Provider token refresh successful",
                provider=self.provider.value,
                has_new_refresh_token=bool(tokens.refresh_token),
                expires_at=tokens.expires_at.isoformat() if tokens.expires_at else None,
            )
            return RefreshResult.ok(tokens)

        error_code = self._error_code(response)

        if response.status_code in (400, 401) and error_code in TERMINAL_ERROR_CODES:
            logger.warning(
                "Terminal refresh error",
                provider=self.provider.value,
                status_code=response.status_code,
                error_code=error_code,
            )
            return RefreshResult.invalid_grant(f"Terminal: {error_code}")

        logger.warning(
            "Transient refresh error",
            provider=self.provider.value,
            status_code=response.status_code,
            error_code=error_code,
            error_detail=response.text[:200],
        )
        return RefreshResult.transient(
            f"HTTP {response.status_code}" + (f": {error_code}" if error_code else "")
        )

    @staticmethod
    def _error_code(response: httpx.Response) -> str:
        try:
            error_data = response.json()
        except ValueError:
            return ""
        if not isinstance(error_data, dict):
            return ""
        error = error_data.get("error", "")
        # Some providers nest the error object ({"error": {"status": ...}})
        if isinstance(error, dict):
            error = error.get("status", "") or error.get("code", "")
        return str(error)

    async def revoke(self, token: str) -> None:
        """
        Revoke a token at the provider.

        A token the provider no longer recognizes counts as revoked.

        Raises:
            ProviderRevocationError: If the provider call fails
        """
        try:
            response = await self._post_revoke(token)
        except httpx.RequestError as e:
            raise ProviderRevocationError(
                f"{self.provider.value} revocation request failed: {e}"
            ) from e

        if response.status_code in (200, 204):
            logger.info("Provider token revoked", provider=self.provider.value)
            return

        if response.status_code == 400 and self._error_code(response) in (
            "invalid_token",
            "invalid_request",
        ):
            logger.info(
                "Provider token already invalid, nothing to revoke",
                provider=self.provider.value,
            )
            return

        raise ProviderRevocationError(
            f"{self.provider.value} revocation failed with status {response.status_code}"
        )


class GoogleRefreshAdapter(ProviderRefreshAdapter):
    """Google OAuth 2.0: client credentials sent in the form body."""

    provider = Provider.GOOGLE

    async def _post_refresh(self, refresh_token: str) -> httpx.Response:
        return await self.http_client.post(
            self.token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )

    async def _post_revoke(self, token: str) -> httpx.Response:
        return await self.http_client.post(self.revoke_url, data={"token": token})


class ZoomRefreshAdapter(ProviderRefreshAdapter):
    """
    Zoom OAuth: client credentials sent with HTTP Basic authentication.

    Zoom rotates the refresh token on every refresh; the previous one stops
    working once the new one is issued.
    """

    provider = Provider.ZOOM

    async def _post_refresh(self, refresh_token: str) -> httpx.Response:
        return await self.http_client.post(
            self.token_url,
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            auth=(self.client_id, self.client_secret),
        )

    async def _post_revoke(self, token: str) -> httpx.Response:
        return await self.http_client.post(
            self.revoke_url,
            data={"token": token},
            auth=(self.client_id, self.client_secret),
        )


ADAPTER_CLASSES: Dict[Provider, type[ProviderRefreshAdapter]] = {
    Provider.GOOGLE: GoogleRefreshAdapter,
    Provider.ZOOM: ZoomRefreshAdapter,
}


def build_provider_adapters(
    settings: Settings, http_client: httpx.AsyncClient
) -> Dict[Provider, ProviderRefreshAdapter]:
    """
    Build one adapter per enabled provider.

    Raises:
        OAuthConfigError: If an enabled provider has no client credentials
    """
    adapters = {
        provider: ADAPTER_CLASSES[provider](settings, http_client)
        for provider in settings.oauth_enabled_providers
    }
    logger.info(
        "Provider adapters configured",
        providers=[provider.value for provider in adapters],
    )
    return adapters
