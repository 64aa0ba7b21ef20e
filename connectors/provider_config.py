"""
Provider configs — one row per third-party platform.

Rows are seeded from the connector registry at startup and are rarely
touched afterwards.  The client secret is kept only as a bcrypt hash for
administrative verification; live token calls read the secret from
configuration (see ``BaseConnector.credentials``).
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import config
from connectors.encryption import hash_client_secret, verify_client_secret
from connectors.models import ProviderConfig
from connectors.registry import ConnectorRegistry
from database.helpers import upsert_insert
from database.session import async_session_factory

logger = logging.getLogger(__name__)


async def get_provider_config(session: AsyncSession, key: str) -> Optional[ProviderConfig]:
    result = await session.execute(
        select(ProviderConfig).where(ProviderConfig.key == key)
    )
    return result.scalar_one_or_none()


async def list_provider_configs(session: AsyncSession) -> List[ProviderConfig]:
    result = await session.execute(select(ProviderConfig).order_by(ProviderConfig.key))
    return list(result.scalars().all())


async def ensure_provider_configs(
    *,
    registry: Optional[ConnectorRegistry] = None,
    db_session: Optional[AsyncSession] = None,
) -> int:
    """
    Create a ``ProviderConfig`` row for every known connector that lacks one.

    Existing rows are never modified.  Returns the number of rows created.
    """
    registry = registry or ConnectorRegistry()
    own_session = db_session is None
    session = db_session or async_session_factory()
    try:
        existing = {row.key for row in await list_provider_configs(session)}
        created = 0
        for connector in registry.known():
            key = connector.provider_name
            if key in existing:
                continue
            client_id, client_secret = config.provider_credentials(key)
            stmt = (
                upsert_insert(session, ProviderConfig)
                .values(
                    key=key,
                    display_name=connector.display_name,
                    category=connector.category,
                    client_id=client_id or "",
                    client_secret_hash=hash_client_secret(client_secret) if client_secret else None,
                    redirect_uri=config.oauth_redirect_uri,
                    scopes=connector.default_scopes,
                    enabled=True,
                )
                .on_conflict_do_nothing(index_elements=["key"])
            )
            await session.execute(stmt)
            created += 1
            logger.info("Seeded provider config %s", key)

        if own_session:
            await session.commit()
        else:
            await session.flush()
        return created
    except Exception:
        if own_session:
            await session.rollback()
        raise
    finally:
        if own_session:
            await session.close()


async def verify_provider_secret(
    key: str,
    secret: str,
    *,
    db_session: Optional[AsyncSession] = None,
) -> bool:
    """Check a candidate client secret against the stored hash (admin use)."""
    own_session = db_session is None
    session = db_session or async_session_factory()
    try:
        provider = await get_provider_config(session, key)
        if provider is None:
            return False
        return verify_client_secret(secret, provider.client_secret_hash)
    finally:
        if own_session:
            await session.close()
