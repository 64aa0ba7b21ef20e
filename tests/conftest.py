"""Shared fixtures: a throwaway SQLite database per test and fake adapters."""

import asyncio
import os
import tempfile
from pathlib import Path

from cryptography.fernet import Fernet

# Settings are read at import time, so the environment has to be in place
# before any application module is imported.
_test_tmp_dir = tempfile.mkdtemp(prefix="oauth_connections_test_")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{Path(_test_tmp_dir) / 'app.db'}"
os.environ["TOKEN_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["TOKEN_ENCRYPTION_PREVIOUS_KEYS"] = ""
os.environ["HEALTH_CHECK_ENABLED"] = "false"
os.environ["GOOGLE_DRIVE_CLIENT_ID"] = "gd-client-id"
os.environ["GOOGLE_DRIVE_CLIENT_SECRET"] = "gd-client-secret"
os.environ["TIKTOK_CLIENT_KEY"] = "tt-client-key"
os.environ["TIKTOK_CLIENT_SECRET"] = "tt-client-secret"
os.environ["FACEBOOK_CLIENT_ID"] = "fb-client-id"
os.environ["FACEBOOK_CLIENT_SECRET"] = "fb-client-secret"
for _unset in (
    "YOUTUBE_CLIENT_ID",
    "YOUTUBE_CLIENT_SECRET",
    "INSTAGRAM_CLIENT_ID",
    "INSTAGRAM_CLIENT_SECRET",
):
    os.environ.pop(_unset, None)

from typing import Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from connectors.base import BaseConnector  # noqa: E402
from connectors.registry import ConnectorRegistry  # noqa: E402
from connectors.schemas import TokenResult  # noqa: E402
from database.models import Base, Connection, ConnectionStatus, ProviderConfig  # noqa: E402


PROVIDER_KEYS = ("google-drive", "youtube", "tiktok", "facebook", "instagram")


class FakeConnector(BaseConnector):
    """In-memory adapter: records calls and returns (or raises) what it is told."""

    def __init__(
        self,
        key: str,
        result: Optional[TokenResult] = None,
        error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        super().__init__()
        self._key = key
        self.result = result or TokenResult(
            access_token=f"{key}-new-access",
            refresh_token=f"{key}-new-refresh",
            expires_in=3600,
            scope="read",
            token_type="Bearer",
        )
        self.error = error
        self.gate = gate
        self.started = asyncio.Event()
        self.exchange_calls: List[tuple] = []
        self.refresh_calls: List[str] = []

    @property
    def provider_name(self) -> str:
        return self._key

    @property
    def display_name(self) -> str:
        return self._key.title()

    @property
    def default_scopes(self) -> List[str]:
        return ["read"]

    def is_configured(self) -> bool:
        return True

    def get_auth_url(self, redirect_uri, state, scopes=None) -> str:
        return f"https://auth.example/{self._key}?state={state}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResult:
        self.exchange_calls.append((code, redirect_uri))
        if self.error:
            raise self.error
        return self.result

    async def refresh_tokens(self, refresh_token: str) -> TokenResult:
        self.refresh_calls.append(refresh_token)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise self.error
        return self.result


@pytest.fixture(autouse=True)
def fresh_registry():
    ConnectorRegistry.reset()
    yield
    ConnectorRegistry.reset()


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def providers(session_factory) -> Dict[str, object]:
    """Seed one enabled provider config per known platform; returns key → id."""
    async with session_factory() as session:
        rows = [
            ProviderConfig(
                key=key,
                display_name=key.title(),
                client_id=f"{key}-id",
                redirect_uri="http://localhost/callback",
                scopes=["read"],
            )
            for key in PROVIDER_KEYS
        ]
        session.add_all(rows)
        await session.commit()
        return {row.key: row.id for row in rows}


@pytest.fixture
def register_fake():
    """Register a FakeConnector in the registry singleton."""

    def _register(key: str, **kwargs) -> FakeConnector:
        connector = FakeConnector(key, **kwargs)
        ConnectorRegistry().register(connector)
        return connector

    return _register


@pytest.fixture
def make_connection(session_factory, providers):
    """Insert a connection row directly; returns its id."""

    async def _make(
        user_id: str = "user-1",
        provider: str = "google-drive",
        *,
        access_token: str = "access-1",
        refresh_token: Optional[str] = "refresh-1",
        expires_at=None,
        status: ConnectionStatus = ConnectionStatus.ACTIVE,
    ):
        async with session_factory() as session:
            conn = Connection(
                user_id=user_id,
                provider_id=providers[provider],
                expires_at=expires_at,
                status=status.value,
            )
            conn.access_token = access_token
            conn.refresh_token = refresh_token
            session.add(conn)
            await session.commit()
            return conn.id

    return _make


@pytest.fixture
def fetch_connection(session_factory):
    """Load a connection in a fresh session."""

    async def _fetch(connection_id) -> Optional[Connection]:
        async with session_factory() as session:
            result = await session.execute(
                select(Connection).where(Connection.id == connection_id)
            )
            return result.unique().scalar_one_or_none()

    return _fetch
