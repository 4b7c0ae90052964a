"""
Refresh coordinator: at most one provider refresh in flight per integration.

Every refresh for a (user_id, provider) key runs as a single asyncio task.
Callers arriving while that task runs attach to it instead of starting their
own, and all of them observe the same outcome once the refreshed tokens are
persisted.

Key features:
- Single-flight per key, without a global lock across unrelated users
- Re-check after fetching, so a refresh completed by someone else is reused
- Transient provider failures retried with exponential backoff (tenacity)
- invalid_grant never retried
- Compare-and-swap write; a lost race returns the winner's tokens
- A cancelled caller detaches without cancelling the shared refresh
"""

import asyncio
import time
from collections import defaultdict
from datetime import datetime
from functools import partial
from typing import Any, Dict, Mapping, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Settings
from ..db.token_store import IntegrationStore
from ..errors import OAuthConfigError, TokenExpiredError, TokenRefreshError
from ..utils.logging import integration_log_context
from ..utils.types import Integration, IntegrationKey, Provider, TokenSet, as_utc
from .provider_adapters import ProviderRefreshAdapter, RefreshResult
from .token_policy import is_usable

logger = structlog.get_logger(__name__)


class RefreshFailure(Exception):
    """A provider refresh attempt that did not produce tokens."""

    def __init__(self, result: RefreshResult):
        super().__init__(result.error or result.classification)
        self.classification = result.classification


class TransientRefreshFailure(RefreshFailure):
    """Refresh failure worth another attempt (network, timeout, 5xx)."""

    pass


class RefreshMetrics:
    """Counters for token refresh operations, for health monitoring."""

    def __init__(self):
        self.refresh_attempts_total = 0
        self.refresh_success_total = 0
        self.refresh_failures = defaultdict(int)  # by error classification
        self.refresh_joined_total = 0  # callers that attached to an in-flight refresh
        self.refresh_cas_lost_total = 0
        self.refresh_latencies = []  # last 100 latencies for avg calculation

    def record_success(self, latency_ms: float) -> None:
        self.refresh_attempts_total += 1
        self.refresh_success_total += 1
        self.refresh_latencies.append(latency_ms)
        # Keep only last 100 latencies to prevent memory growth
        if len(self.refresh_latencies) > 100:
            self.refresh_latencies = self.refresh_latencies[-100:]

    def record_failure(self, classification: str) -> None:
        self.refresh_attempts_total += 1
        self.refresh_failures[classification] += 1

    def get_metrics_summary(self) -> Dict[str, Any]:
        return {
            "refresh_attempts_total": self.refresh_attempts_total,
            "refresh_success_total": self.refresh_success_total,
            "success_rate": (
                self.refresh_success_total / max(1, self.refresh_attempts_total)
            ),
            "avg_latency_ms": (
                sum(self.refresh_latencies) / max(1, len(self.refresh_latencies))
            ),
            "failures_by_reason": dict(self.refresh_failures),
            "refresh_joined_total": self.refresh_joined_total,
            "refresh_cas_lost_total": self.refresh_cas_lost_total,
        }


class RefreshCoordinator:
    """
    Serializes token refreshes per (user_id, provider).

    The in-flight table lives as long as the coordinator and is never
    persisted; a restarted process starts with no refreshes in flight.

    Usage:
        coordinator = RefreshCoordinator(store, adapters, settings)
        integration = await coordinator.refresh(user_id, Provider.GOOGLE)
    """

    def __init__(
        self,
        store: IntegrationStore,
        adapters: Mapping[Provider, ProviderRefreshAdapter],
        settings: Settings,
    ):
        """
        Args:
            store: Integration store the refreshed tokens are written to
            adapters: Refresh adapter per enabled provider
            settings: Settings with the expiry skew and retry policy
        """
        self.store = store
        self.adapters = dict(adapters)
        self.settings = settings
        self.metrics = RefreshMetrics()
        self._in_flight: Dict[IntegrationKey, asyncio.Task] = {}

    def in_flight_count(self) -> int:
        """Number of refreshes currently running."""
        return len(self._in_flight)

    def is_refreshing(self, user_id: str, provider: Provider) -> bool:
        return (user_id, Provider(provider)) in self._in_flight

    async def wait_idle(self) -> None:
        """Wait for every in-flight refresh to finish (used at shutdown)."""
        if self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)

    async def refresh(
        self,
        user_id: str,
        provider: Provider,
        *,
        force: bool = False,
        observed_updated_at: Optional[datetime] = None,
    ) -> Integration:
        """
        Refresh the integration's tokens, or join the refresh already running.

        Args:
            user_id: Owner of the integration
            provider: Provider of the integration
            force: Refresh even if the stored token still looks usable
            observed_updated_at: Version the caller saw before deciding to force
                a refresh; a newer stored version is returned without refreshing

        Returns:
            The usable, persisted Integration

        Raises:
            TokenNotFoundError: If the integration no longer exists
            TokenExpiredError: If the token is stale and there is no refresh token
            TokenRefreshError: If the provider rejected the grant or retries ran out
            OAuthDatabaseError: If reading or writing the integration failed
        """
        provider = Provider(provider)
        key = (user_id, provider)

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(
                self._run_refresh(user_id, provider, force, observed_updated_at),
                name=f"oauth-refresh:{provider.value}:{user_id}",
            )
            self._in_flight[key] = task
            task.add_done_callback(partial(self._forget, key))
        else:
            self.metrics.refresh_joined_total += 1
            logger.debug(
                "Joining in-flight token refresh",
                user_id=user_id,
                provider=provider.value,
                force=force,
            )

        # Shielded so a cancelled caller does not cancel the refresh for the others
        return await asyncio.shield(task)

    def _forget(self, key: IntegrationKey, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # Mark the outcome retrieved even if every waiter was cancelled
        if not task.cancelled():
            task.exception()

    async def _run_refresh(
        self,
        user_id: str,
        provider: Provider,
        force: bool,
        observed_updated_at: Optional[datetime],
    ) -> Integration:
        with integration_log_context(user_id, provider):
            integration = await self.store.get(user_id, provider)

            if not force and is_usable(
                integration, self.settings.oauth_expiry_skew_seconds
            ):
                logger.debug("Token refreshed concurrently, reusing stored token")
                return integration

            if (
                force
                and observed_updated_at is not None
                and integration.updated_at is not None
                and integration.updated_at > as_utc(observed_updated_at)
            ):
                logger.debug("Token replaced since forced refresh was requested")
                return integration

            if not integration.can_refresh:
                logger.warning(
                    "Token expired and no refresh token available",
                    expires_at=(
                        integration.expires_at.isoformat()
                        if integration.expires_at
                        else None
                    ),
                )
                raise TokenExpiredError(user_id, provider)

            adapter = self.adapters.get(provider)
            if adapter is None:
                raise OAuthConfigError(f"OAuth provider {provider.value} is not enabled")

            logger.info("Token refresh started", force=force)
            start_time = time.time()

            tokens = await self._refresh_with_retry(adapter, integration)
            refreshed = integration.with_refreshed_tokens(tokens)

            stored = await self.store.upsert_if_newer(refreshed, integration.updated_at)
            if stored is None:
                # Another writer (re-authorization or another process) won
                self.metrics.refresh_cas_lost_total += 1
                stored = await self.store.get(user_id, provider)

            latency_ms = (time.time() - start_time) * 1000
            self.metrics.record_success(latency_ms)
            logger.info(
                "Token refresh successful",
                latency_ms=round(latency_ms, 2),
                expires_at=stored.expires_at.isoformat() if stored.expires_at else None,
                refresh_token_rotated=stored.refresh_token != integration.refresh_token,
            )
            return stored

    async def _refresh_with_retry(
        self, adapter: ProviderRefreshAdapter, integration: Integration
    ) -> TokenSet:
        """
        Call the provider, retrying transient failures with exponential backoff.

        Raises:
            TokenRefreshError: On invalid_grant, or once the attempt budget is spent
        """
        base_delay = self.settings.oauth_refresh_base_delay_ms / 1000
        max_delay = self.settings.oauth_refresh_max_delay_ms / 1000

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.oauth_refresh_max_attempts),
            wait=wait_exponential(multiplier=base_delay, min=base_delay, max=max_delay),
            retry=retry_if_exception_type(TransientRefreshFailure),
            before_sleep=self._log_retry,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    result = await adapter.refresh(integration.refresh_token)
                    if not result.success:
                        self.metrics.record_failure(result.classification)
                        if result.is_transient:
                            raise TransientRefreshFailure(result)
                        raise RefreshFailure(result)
        except RefreshFailure as e:
            logger.error(
                "Token refresh failed",
                classification=e.classification,
                error=str(e),
            )
            raise TokenRefreshError(
                integration.user_id,
                integration.provider,
                e,
                classification=e.classification,
            ) from e

        return result.tokens

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        logger.warning(
            "Transient refresh failure, retrying",
            attempt=retry_state.attempt_number,
            delay_s=round(retry_state.next_action.sleep, 3)
            if retry_state.next_action
            else None,
            error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        )
