"""
Connector API routes — providers, code exchange, connections, health.

Route prefix: /api/v1/connectors

Authentication is the host application's concern: mount this router with
its own ``dependencies=[…]``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.exceptions import (
    ConnectorError,
    CredentialMissingError,
    NotFoundError,
    ProviderError,
    ReconnectRequiredError,
    UnknownProviderError,
)
from connectors.health import HealthMonitor
from connectors.registry import ConnectorRegistry
from connectors.schemas import (
    ConnectionOut,
    ExchangeRequest,
    HealthMetrics,
    ProviderInfo,
    ScanSummary,
)
from connectors.token_manager import (
    connection_out,
    disconnect,
    exchange_and_store,
    get_user_connections,
    refresh_connection,
)
from database.session import get_db_session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connectors"])


async def db_session(session: AsyncSession = Depends(get_db_session)):
    """Yield a DB session for route handlers."""
    yield session


def get_monitor(request: Request) -> HealthMonitor:
    monitor = getattr(request.app.state, "health_monitor", None)
    if monitor is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Health monitor not running")
    return monitor


def _http_error(exc: ConnectorError) -> HTTPException:
    """Map a typed connector error onto an HTTP status."""
    if isinstance(exc, (NotFoundError, UnknownProviderError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ReconnectRequiredError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, CredentialMissingError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, ProviderError):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail={"code": exc.code, "message": exc.message})


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/providers", response_model=List[ProviderInfo])
async def list_providers() -> List[ProviderInfo]:
    """List all known providers and whether each has client credentials."""
    return ConnectorRegistry().list_providers()


@router.get("/{provider}/auth-url")
async def get_auth_url(
    provider: str,
    redirect_uri: str = Query(...),
    state: str = Query(...),
) -> Dict[str, str]:
    """Build the provider's authorization URL for the web-flow caller."""
    try:
        connector = ConnectorRegistry().require(provider)
        auth_url = connector.get_auth_url(redirect_uri, state)
    except ConnectorError as exc:
        raise _http_error(exc)
    return {"auth_url": auth_url, "provider": provider}


@router.post("/{provider}/exchange", response_model=ConnectionOut)
async def exchange_code(
    provider: str,
    req: ExchangeRequest,
    session: AsyncSession = Depends(db_session),
) -> ConnectionOut:
    """Exchange an authorization code and store the resulting connection."""
    try:
        conn = await exchange_and_store(
            req.user_id, provider, req.code, req.redirect_uri, db_session=session
        )
    except ConnectorError as exc:
        logger.error("OAuth exchange failed for %s: %s", provider, exc.code)
        raise _http_error(exc)
    return connection_out(conn)


@router.get("/users/{user_id}/connections", response_model=List[ConnectionOut])
async def list_connections(
    user_id: str,
    session: AsyncSession = Depends(db_session),
) -> List[ConnectionOut]:
    """List a user's connections (tokens redacted)."""
    return await get_user_connections(user_id, db_session=session)


@router.post("/connections/{connection_id}/refresh", response_model=ConnectionOut)
async def refresh(
    connection_id: str,
    session: AsyncSession = Depends(db_session),
) -> ConnectionOut:
    """Refresh one connection now."""
    try:
        conn = await refresh_connection(connection_id, db_session=session)
    except ConnectorError as exc:
        await session.commit()  # keep the recorded status / error
        raise _http_error(exc)
    return connection_out(conn)


@router.delete("/connections/{connection_id}")
async def delete_connection(
    connection_id: str,
    user_id: str = Query(...),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    """Disconnect an OAuth connection."""
    deleted = await disconnect(user_id, connection_id, db_session=session)
    if not deleted:
        raise HTTPException(404, "Connection not found")
    return {"status": "disconnected", "connection_id": connection_id}


@router.get("/health/metrics", response_model=HealthMetrics)
async def health_metrics(
    monitor: HealthMonitor = Depends(get_monitor),
    session: AsyncSession = Depends(db_session),
) -> HealthMetrics:
    return await monitor.get_health_metrics(db_session=session)


@router.post("/health/scan", response_model=ScanSummary)
async def run_scan(monitor: HealthMonitor = Depends(get_monitor)) -> ScanSummary:
    """Run one health scan now."""
    summary = await monitor.run_scan()
    if summary is None:
        raise HTTPException(status.HTTP_409_CONFLICT, "A health scan is already running")
    return summary
