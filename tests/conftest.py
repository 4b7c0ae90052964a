"""
Shared test fixtures for the OAuth token lifecycle tests.

Every test gets its own file-backed SQLite database (aiosqlite) so sessions
opened on separate connections see the same rows, plus a scriptable refresh
adapter standing in for the providers.
"""

import asyncio
from datetime import timedelta
from typing import List, Optional

import pytest
import structlog

from oauth_lifecycle.config import Settings, reset_settings
from oauth_lifecycle.db import (
    IntegrationStore,
    build_engine,
    build_session_factory,
    create_tables,
)
from oauth_lifecycle.services.integration_service import (
    IntegrationService,
    reset_integration_service,
)
from oauth_lifecycle.services.provider_adapters import RefreshResult
from oauth_lifecycle.utils.crypto import CryptoService, generate_fernet_key
from oauth_lifecycle.utils.types import Integration, Provider, TokenSet, utcnow

GOOGLE_PROFILE = "https://www.googleapis.com/auth/userinfo.profile"


def _refreshed(
    access_token: str = "new-access-token",
    refresh_token: Optional[str] = None,
    expires_in: int = 3600,
    scopes=None,
) -> RefreshResult:
    """Successful refresh result with tokens valid for ``expires_in`` seconds."""
    return RefreshResult.ok(
        TokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=utcnow() + timedelta(seconds=expires_in),
            scopes=frozenset(scopes) if scopes is not None else None,
        )
    )


class FakeRefreshAdapter:
    """
    Provider adapter double.

    Returns queued results in order (the last one repeats) and records every
    call. When ``gate`` is set, refresh calls block until the event is set,
    which keeps a refresh in flight for as long as a test needs.
    """

    def __init__(self, provider: Provider, results: Optional[List[RefreshResult]] = None):
        self.provider = provider
        self.results: List[RefreshResult] = list(results or [])
        self.refresh_calls: List[str] = []
        self.revoke_calls: List[str] = []
        self.revoke_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    def queue(self, *results: RefreshResult) -> None:
        self.results.extend(results)

    @property
    def refresh_count(self) -> int:
        return len(self.refresh_calls)

    async def refresh(self, refresh_token: str) -> RefreshResult:
        self.refresh_calls.append(refresh_token)
        if self.gate is not None:
            await self.gate.wait()
        assert self.results, "unexpected provider refresh call"
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]

    async def revoke(self, token: str) -> None:
        self.revoke_calls.append(token)
        if self.revoke_error is not None:
            raise self.revoke_error


async def _wait_for(condition, timeout: float = 2.0) -> None:
    """Yield to the event loop until ``condition()`` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset global singletons between tests."""
    reset_settings()
    reset_integration_service()
    yield
    reset_settings()
    reset_integration_service()
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings for a test database, both providers and no backoff delay."""
    return Settings(
        _env_file=None,
        app_env="test",
        log_level="DEBUG",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'integrations.db'}",
        oauth_enabled_providers=["google", "zoom"],
        google_client_id="google-client-id",
        google_client_secret="google-client-secret",
        zoom_client_id="zoom-client-id",
        zoom_client_secret="zoom-client-secret",
        oauth_refresh_base_delay_ms=0,
        oauth_refresh_max_delay_ms=0,
        fernet_key=generate_fernet_key(),
    )


@pytest.fixture
async def engine(settings):
    """Async engine with the schema created."""
    engine = build_engine(settings)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def crypto(settings) -> CryptoService:
    return CryptoService(settings.fernet_key)


@pytest.fixture
def store(session_factory, crypto) -> IntegrationStore:
    return IntegrationStore(session_factory, crypto)


@pytest.fixture
def google_adapter() -> FakeRefreshAdapter:
    return FakeRefreshAdapter(Provider.GOOGLE)


@pytest.fixture
def zoom_adapter() -> FakeRefreshAdapter:
    return FakeRefreshAdapter(Provider.ZOOM)


@pytest.fixture
def adapters(google_adapter, zoom_adapter):
    return {Provider.GOOGLE: google_adapter, Provider.ZOOM: zoom_adapter}


@pytest.fixture
async def service(settings, store, adapters):
    """Integration service wired to the test database and fake adapters."""
    service = IntegrationService(settings, store, adapters)
    yield service
    await service.close()


@pytest.fixture
def seed_integration(store):
    """
    Factory storing an integration.

    ``expires_in`` is relative to now; negative values give an expired token
    and None a non-expiring one.
    """

    async def _seed(
        user_id: str = "user-123",
        provider: Provider = Provider.GOOGLE,
        access_token: str = "stored-access-token",
        refresh_token: Optional[str] = "stored-refresh-token",
        expires_in: Optional[timedelta] = timedelta(hours=1),
        scopes=(GOOGLE_PROFILE,),
    ) -> Integration:
        return await store.upsert(
            Integration(
                user_id=user_id,
                provider=provider,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=utcnow() + expires_in if expires_in is not None else None,
                scopes=frozenset(scopes),
            )
        )

    return _seed


@pytest.fixture
def refreshed():
    """Factory for successful refresh results."""
    return _refreshed


@pytest.fixture
def wait_for():
    """Async helper polling a condition while other tasks run."""
    return _wait_for
