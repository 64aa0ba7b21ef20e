"""
Token manager — store / read / refresh per-user OAuth connections.

``upsert_connection`` is the only write path for tokens: the first code
exchange and every later refresh both go through it, which keeps the
one-row-per-(user, provider) rule in the database's hands.

``get_valid_token`` is the single interface that content clients use to get
a usable access token for a user + provider combination.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.encryption import encrypt_token, get_cipher
from connectors.exceptions import (
    CredentialMissingError,
    InvalidGrantError,
    NotFoundError,
    ReconnectRequiredError,
    RefreshError,
)
from connectors.models import Connection, ConnectionStatus, ProviderConfig
from connectors.provider_config import get_provider_config
from connectors.registry import ConnectorRegistry
from connectors.schemas import ConnectionOut, TokenResult
from database.helpers import as_utc, to_uuid, upsert_insert, utcnow
from database.session import async_session_factory

logger = logging.getLogger(__name__)


def compute_expires_at(token_result: TokenResult, now: datetime) -> Optional[datetime]:
    """``now + expires_in``, or None when the provider declared no expiry."""
    if token_result.expires_in is None:
        return None
    return now + timedelta(seconds=token_result.expires_in)


def connection_out(conn: Connection) -> ConnectionOut:
    """Redacted view of a connection — no token material."""
    return ConnectionOut(
        connection_id=str(conn.id),
        provider=conn.provider.key if conn.provider else "",
        status=conn.status,
        scope=conn.scope,
        expires_at=as_utc(conn.expires_at),
        connected_at=as_utc(conn.created_at),
        last_checked_at=as_utc(conn.last_checked_at),
        last_refreshed_at=as_utc(conn.last_refreshed_at),
        last_used_at=as_utc(conn.last_used_at),
        error_message=conn.error_message,
        metadata=conn.metadata_ or {},
    )


async def _require_provider(session: AsyncSession, provider: str) -> ProviderConfig:
    config_row = await get_provider_config(session, provider)
    if config_row is None:
        raise CredentialMissingError(f"No provider config for '{provider}'")
    return config_row


async def _find_connection(
    session: AsyncSession,
    user_id: str,
    provider_id: uuid.UUID,
    *,
    refresh: bool = False,
) -> Optional[Connection]:
    stmt = select(Connection).where(
        Connection.user_id == user_id,
        Connection.provider_id == provider_id,
    )
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.unique().scalar_one_or_none()


async def _get_by_id(
    session: AsyncSession,
    connection_id: str | uuid.UUID,
    user_id: Optional[str] = None,
) -> Connection:
    stmt = select(Connection).where(Connection.id == to_uuid(connection_id))
    if user_id is not None:
        stmt = stmt.where(Connection.user_id == user_id)
    result = await session.execute(stmt)
    conn = result.unique().scalar_one_or_none()
    if conn is None:
        raise NotFoundError(f"Connection {connection_id} not found")
    return conn


async def upsert_connection(
    user_id: str,
    provider: str,
    token_result: TokenResult,
    *,
    refreshed: bool = False,
    db_session: Optional[AsyncSession] = None,
) -> Connection:
    """
    Create or update the connection for (user_id, provider).

    Parameters
    ----------
    token_result : TokenResult
        Output of an adapter's exchange or refresh call.
    refreshed : bool
        Stamp ``last_refreshed_at`` (set by refresh paths).

    The write is a single ``INSERT … ON CONFLICT DO UPDATE`` so concurrent
    calls for the same pair never create a second row; the last writer wins.
    Status always becomes ``active``.
    """
    own_session = db_session is None
    session = db_session or async_session_factory()
    try:
        provider_row = await _require_provider(session, provider)
        now = utcnow()
        existing = await _find_connection(session, user_id, provider_row.id)

        metadata = dict(existing.metadata_ or {}) if existing else {}
        metadata.update(token_result.metadata())

        values = {
            "access_token_encrypted": encrypt_token(token_result.access_token),
            "expires_at": compute_expires_at(token_result, now),
            "metadata": metadata,
            "status": ConnectionStatus.ACTIVE.value,
            "error_message": None,
            "updated_at": now,
        }
        # Absent refresh token / scope means "keep what is stored".
        if token_result.refresh_token:
            values["refresh_token_encrypted"] = encrypt_token(token_result.refresh_token)
        if token_result.scope:
            values["scope"] = token_result.scope
        if refreshed:
            values["last_refreshed_at"] = now

        table = Connection.__table__
        stmt = (
            upsert_insert(session, table)
            .values(
                id=uuid.uuid4(),
                user_id=user_id,
                provider_id=provider_row.id,
                created_at=now,
                **values,
            )
            .on_conflict_do_update(
                index_elements=[table.c.user_id, table.c.provider_id],
                set_=values,
            )
        )
        await session.execute(stmt)

        if own_session:
            await session.commit()
        else:
            await session.flush()

        conn = await _find_connection(session, user_id, provider_row.id, refresh=True)
        logger.info(
            "%s %s connection for user %s",
            "Updated" if existing else "Created",
            provider,
            user_id,
        )
        return conn

    except Exception as exc:
        logger.error("upsert_connection error for %s/%s: %s", provider, user_id, exc)
        if own_session:
            await session.rollback()
        raise
    finally:
        if own_session:
            await session.close()


async def exchange_and_store(
    user_id: str,
    provider: str,
    code: str,
    redirect_uri: str,
    *,
    registry: Optional[ConnectorRegistry] = None,
    db_session: Optional[AsyncSession] = None,
) -> Connection:
    """
    Web-flow contract: trade an authorization code for tokens and store them.

    Re-authorizing an existing connection forces it back to ``active``.
    """
    registry = registry or ConnectorRegistry()
    own_session = db_session is None
    session = db_session or async_session_factory()
    try:
        provider_row = await get_provider_config(session, provider)
        if provider_row is None or not provider_row.enabled:
            raise CredentialMissingError(f"Provider '{provider}' is not available")

        connector = registry.require(provider)
        token_result = await connector.exchange_code(code, redirect_uri)
        conn = await upsert_connection(user_id, provider, token_result, db_session=session)
        if own_session:
            await session.commit()
        logger.info("OAuth connected: user=%s provider=%s", user_id, provider)
        return conn
    except Exception:
        if own_session:
            await session.rollback()
        raise
    finally:
        if own_session:
            await session.close()


async def get_valid_token(
    user_id: str,
    provider: str,
    *,
    db_session: Optional[AsyncSession] = None,
) -> str:
    """
    Return a usable access token for the user + provider.

    Raises
    ------
    NotFoundError          – the user never connected this provider
    ReconnectRequiredError – the connection is expired
    DecryptionError        – the stored token cannot be decrypted
    """
    own_session = db_session is None
    session = db_session or async_session_factory()
    try:
        result = await session.execute(
            select(Connection)
            .join(ProviderConfig, Connection.provider_id == ProviderConfig.id)
            .where(Connection.user_id == user_id, ProviderConfig.key == provider)
        )
        conn = result.unique().scalar_one_or_none()
        if conn is None:
            raise NotFoundError(f"{provider} is not connected for user {user_id}")

        if conn.status == ConnectionStatus.EXPIRED.value:
            raise ReconnectRequiredError(provider)

        now = utcnow()
        expires_at = as_utc(conn.expires_at)
        if expires_at is not None and expires_at <= now:
            conn.status = ConnectionStatus.EXPIRED.value
            conn.error_message = "Access token expired"
            if own_session:
                await session.commit()
            else:
                await session.flush()
            raise ReconnectRequiredError(provider)

        token = conn.access_token
        conn.last_used_at = now
        if own_session:
            await session.commit()
        return token
    finally:
        if own_session:
            await session.close()


async def refresh_connection(
    connection_id: str | uuid.UUID,
    *,
    user_id: Optional[str] = None,
    registry: Optional[ConnectorRegistry] = None,
    db_session: Optional[AsyncSession] = None,
) -> Connection:
    """
    Refresh one connection now, whatever its status.

    A success revives even an ``expired`` connection.  ``InvalidGrantError``
    marks it ``expired``; other failures only record the error.  Both
    re-raise so the caller can tell the user.
    """
    registry = registry or ConnectorRegistry()
    own_session = db_session is None
    session = db_session or async_session_factory()
    try:
        conn = await _get_by_id(session, connection_id, user_id)
        provider = conn.provider.key
        connector = registry.require(provider)

        credential = connector.refresh_credential(conn.access_token, conn.refresh_token)
        if not credential:
            raise ReconnectRequiredError(provider, f"{provider} connection has no refresh credential")

        try:
            token_result = await connector.refresh_tokens(credential)
        except InvalidGrantError as exc:
            conn.status = ConnectionStatus.EXPIRED.value
            conn.error_message = f"Refresh rejected: {exc.message}"
            if own_session:
                await session.commit()
            raise
        except RefreshError as exc:
            conn.error_message = f"Refresh failed: {exc.message}"
            if own_session:
                await session.commit()
            raise

        conn = await upsert_connection(
            conn.user_id, provider, token_result, refreshed=True, db_session=session
        )
        if own_session:
            await session.commit()
        logger.info("Refreshed %s connection %s", provider, connection_id)
        return conn
    finally:
        if own_session:
            await session.close()


async def set_connection_status(
    connection_id: str | uuid.UUID,
    status: ConnectionStatus,
    error_message: Optional[str] = None,
    *,
    db_session: Optional[AsyncSession] = None,
) -> None:
    own_session = db_session is None
    session = db_session or async_session_factory()
    try:
        conn = await _get_by_id(session, connection_id)
        conn.status = status.value
        conn.error_message = error_message
        if own_session:
            await session.commit()
        else:
            await session.flush()
    finally:
        if own_session:
            await session.close()


async def get_user_connections(
    user_id: str,
    *,
    db_session: Optional[AsyncSession] = None,
) -> List[ConnectionOut]:
    """Return all connections for a user (no tokens exposed)."""
    own_session = db_session is None
    session = db_session or async_session_factory()
    try:
        result = await session.execute(
            select(Connection).where(Connection.user_id == user_id)
        )
        return [connection_out(c) for c in result.unique().scalars().all()]
    finally:
        if own_session:
            await session.close()


async def disconnect(
    user_id: str,
    connection_id: str,
    *,
    db_session: Optional[AsyncSession] = None,
) -> bool:
    """
    Delete a connection.
    Returns True if deleted, False if not found.
    """
    own_session = db_session is None
    session = db_session or async_session_factory()
    try:
        try:
            conn = await _get_by_id(session, connection_id, user_id)
        except NotFoundError:
            return False

        await session.delete(conn)
        if own_session:
            await session.commit()
        else:
            await session.flush()

        logger.info("Disconnected %s for user %s", conn.provider.key, user_id)
        return True

    except Exception as exc:
        logger.error("disconnect error: %s", exc)
        if own_session:
            await session.rollback()
        raise
    finally:
        if own_session:
            await session.close()


async def rotate_stored_tokens(*, db_session: Optional[AsyncSession] = None) -> int:
    """
    Re-encrypt every stored token under the current primary key.

    Run after moving the old key into ``TOKEN_ENCRYPTION_PREVIOUS_KEYS``.
    Returns the number of connections rewritten.
    """
    cipher = get_cipher()
    own_session = db_session is None
    session = db_session or async_session_factory()
    try:
        result = await session.execute(select(Connection))
        rows = result.unique().scalars().all()
        for conn in rows:
            conn.access_token_encrypted = cipher.rotate(conn.access_token_encrypted)
            conn.refresh_token_encrypted = cipher.rotate(conn.refresh_token_encrypted)
        if own_session:
            await session.commit()
        else:
            await session.flush()
        logger.info("Re-encrypted tokens for %d connections", len(rows))
        return len(rows)
    except Exception:
        if own_session:
            await session.rollback()
        raise
    finally:
        if own_session:
            await session.close()
