"""
Connection health monitor.

Every ``HEALTH_CHECK_INTERVAL_MINUTES`` one scan walks all stored
connections, one at a time, each in its own DB session:

1. classify the connection from ``expires_at`` and the current time;
2. if it is inside the refresh horizon, refresh it through its adapter
   (success → active, dead grant → expired, anything else → try again
   next tick);
3. stamp ``last_checked_at`` whatever happened.

A failure on one connection is logged and counted, never raised; the scan
moves on to the next one.  The "scan in progress" guard and the last scan
summary live on a ``MonitorState`` owned by the monitor instance.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import config
from connectors.exceptions import (
    CredentialMissingError,
    DecryptionError,
    InvalidGrantError,
    RefreshError,
)
from connectors.models import Connection, ConnectionStatus, ProviderConfig
from connectors.registry import ConnectorRegistry
from connectors.schemas import HealthMetrics, ScanSummary, StatusCounts
from connectors.token_manager import upsert_connection
from database.helpers import as_utc, utcnow
from database.session import async_session_factory

logger = logging.getLogger(__name__)


def classify(
    expires_at: Optional[datetime],
    now: datetime,
    current_status: Optional[str] = None,
    horizon: timedelta = timedelta(hours=24),
) -> ConnectionStatus:
    """
    Decide where a connection stands right now.

    ``expired`` is sticky: only a re-authorization or an explicit refresh
    brings a connection back.
    """
    if current_status == ConnectionStatus.EXPIRED.value:
        return ConnectionStatus.EXPIRED
    expires_at = as_utc(expires_at)
    if expires_at is None:
        return ConnectionStatus.ACTIVE
    if expires_at < now:
        return ConnectionStatus.EXPIRED
    if expires_at - now <= horizon:
        return ConnectionStatus.NEEDS_REFRESH
    return ConnectionStatus.ACTIVE


def is_permanent_failure(exc: BaseException) -> bool:
    """True when retrying the refresh can never succeed."""
    return isinstance(exc, InvalidGrantError)


@dataclass
class MonitorState:
    scan_in_progress: bool = False
    scans_completed: int = 0
    scans_skipped: int = 0
    last_scan_started_at: Optional[datetime] = None
    last_scan_finished_at: Optional[datetime] = None
    last_summary: Optional[ScanSummary] = None


@dataclass
class CheckResult:
    connection_id: uuid.UUID
    provider: str
    status: ConnectionStatus
    refreshed: bool = False
    refresh_failed: bool = False
    error: bool = False


class HealthMonitor:
    """Periodic classifier / refresher for stored connections."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        registry: Optional[ConnectorRegistry] = None,
        state: Optional[MonitorState] = None,
        *,
        interval_minutes: Optional[int] = None,
        refresh_horizon: Optional[timedelta] = None,
        initial_delay_seconds: Optional[int] = None,
    ):
        self._session_factory = session_factory or async_session_factory
        self.registry = registry or ConnectorRegistry()
        self.state = state or MonitorState()
        self.interval_minutes = interval_minutes or config.health_check_interval_minutes
        self.refresh_horizon = refresh_horizon or timedelta(hours=config.refresh_horizon_hours)
        self.initial_delay_seconds = (
            config.health_check_initial_delay_seconds
            if initial_delay_seconds is None
            else initial_delay_seconds
        )
        self._running = False
        self._task: asyncio.Task | None = None

    # ── Lifecycle ───────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background loop (no-op if already running)."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Health monitor started (every %d min)", self.interval_minutes)

    async def stop(self) -> None:
        """Stop the loop; a scan cut short leaves the rest for the next start."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Health monitor stopped")

    async def _run_loop(self) -> None:
        await asyncio.sleep(self.initial_delay_seconds)

        while self._running:
            try:
                await self.run_scan()
            except Exception as exc:
                logger.error("Health scan crashed: %s", exc, exc_info=True)

            await asyncio.sleep(self.interval_minutes * 60)

    # ── Scan ────────────────────────────────────────────────────────────

    async def run_scan(self) -> Optional[ScanSummary]:
        """
        Run one pass over every connection.

        Returns None without doing anything if another scan is still running.
        """
        # No await between check and set, so two ticks cannot both pass.
        if self.state.scan_in_progress:
            self.state.scans_skipped += 1
            logger.warning("Health scan skipped — previous scan still running")
            return None
        self.state.scan_in_progress = True

        summary = ScanSummary(started_at=utcnow())
        self.state.last_scan_started_at = summary.started_at
        try:
            for connection_id in await self._connection_ids():
                try:
                    result = await self.check_connection(connection_id)
                except Exception as exc:
                    summary.errors += 1
                    logger.error(
                        "Health check failed for connection %s: %s",
                        connection_id,
                        exc,
                        exc_info=True,
                    )
                    await self._stamp_checked(connection_id)
                    continue

                if result is None:
                    continue
                summary.scanned += 1
                if result.status is ConnectionStatus.ACTIVE:
                    summary.active += 1
                elif result.status is ConnectionStatus.NEEDS_REFRESH:
                    summary.needs_refresh += 1
                else:
                    summary.expired += 1
                summary.refreshed += int(result.refreshed)
                summary.refresh_failed += int(result.refresh_failed)
                summary.errors += int(result.error)
        finally:
            summary.finished_at = utcnow()
            self.state.last_scan_finished_at = summary.finished_at
            self.state.last_summary = summary
            self.state.scans_completed += 1
            self.state.scan_in_progress = False

        logger.info(
            "Health scan complete: scanned=%d active=%d needs_refresh=%d expired=%d "
            "refreshed=%d refresh_failed=%d errors=%d",
            summary.scanned,
            summary.active,
            summary.needs_refresh,
            summary.expired,
            summary.refreshed,
            summary.refresh_failed,
            summary.errors,
        )
        return summary

    async def _connection_ids(self) -> List[uuid.UUID]:
        async with self._session_factory() as session:
            result = await session.execute(select(Connection.id).order_by(Connection.created_at))
            return list(result.scalars().all())

    async def _stamp_checked(self, connection_id: uuid.UUID) -> None:
        try:
            async with self._session_factory() as session:
                conn = await session.get(Connection, connection_id)
                if conn is not None:
                    conn.last_checked_at = utcnow()
                    await session.commit()
        except Exception as exc:
            logger.error("Could not stamp last_checked_at on %s: %s", connection_id, exc)

    async def check_connection(self, connection_id: uuid.UUID) -> Optional[CheckResult]:
        """Classify one connection, refresh it if due, and persist the outcome."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Connection).where(Connection.id == connection_id)
            )
            conn = result.unique().scalar_one_or_none()
            if conn is None:
                return None  # disconnected mid-scan

            now = utcnow()
            provider = conn.provider.key
            status = classify(conn.expires_at, now, conn.status, self.refresh_horizon)
            check = CheckResult(connection_id=conn.id, provider=provider, status=status)
            conn.last_checked_at = now

            if status is ConnectionStatus.NEEDS_REFRESH:
                await self._refresh(session, conn, check)
            else:
                if conn.status != status.value:
                    logger.info(
                        "Connection %s (%s) %s → %s",
                        conn.id, provider, conn.status, status.value,
                    )
                conn.status = status.value
                if status is ConnectionStatus.EXPIRED and not conn.error_message:
                    conn.error_message = "Access token expired"

            await session.commit()
            return check

    async def _refresh(
        self,
        session: AsyncSession,
        conn: Connection,
        check: CheckResult,
    ) -> None:
        provider = conn.provider
        conn.status = ConnectionStatus.NEEDS_REFRESH.value

        connector = self.registry.get(provider.key)
        if connector is None or not provider.enabled:
            conn.error_message = f"No enabled connector for '{provider.key}'"
            check.refresh_failed = True
            logger.warning("Cannot refresh connection %s: %s", conn.id, conn.error_message)
            return

        try:
            credential = connector.refresh_credential(conn.access_token, conn.refresh_token)
        except DecryptionError as exc:
            conn.error_message = exc.message
            check.refresh_failed = True
            check.error = True
            logger.error("Connection %s (%s): stored token undecryptable", conn.id, provider.key)
            return

        if not credential:
            conn.error_message = "No refresh credential stored; reconnect before expiry"
            check.refresh_failed = True
            logger.warning("Connection %s (%s) has no refresh credential", conn.id, provider.key)
            return

        try:
            token_result = await connector.refresh_tokens(credential)
        except (RefreshError, CredentialMissingError) as exc:
            check.refresh_failed = True
            if is_permanent_failure(exc):
                conn.status = ConnectionStatus.EXPIRED.value
                check.status = ConnectionStatus.EXPIRED
                conn.error_message = f"Refresh rejected: {exc.message}"
                logger.warning(
                    "Connection %s (%s) refresh grant is dead — marked expired",
                    conn.id, provider.key,
                )
            else:
                conn.error_message = f"Refresh failed: {exc.message}"
                logger.warning(
                    "Connection %s (%s) refresh failed, retrying next tick: %s",
                    conn.id, provider.key, exc.code,
                )
            return
        except Exception as exc:
            # Untyped adapter failure: transient, but still counted as an error.
            check.refresh_failed = True
            check.error = True
            conn.error_message = f"Refresh failed: {exc.__class__.__name__}"
            logger.error(
                "Connection %s (%s) refresh raised %s, retrying next tick",
                conn.id, provider.key, exc.__class__.__name__,
                exc_info=True,
            )
            return

        await upsert_connection(
            conn.user_id,
            provider.key,
            token_result,
            refreshed=True,
            db_session=session,
        )
        check.status = ConnectionStatus.ACTIVE
        check.refreshed = True
        logger.info("Refreshed %s token for connection %s", provider.key, conn.id)

    # ── Metrics ─────────────────────────────────────────────────────────

    async def get_health_metrics(
        self,
        *,
        db_session: Optional[AsyncSession] = None,
    ) -> HealthMetrics:
        """Status counts per provider plus scan and provider-call bookkeeping."""
        own_session = db_session is None
        session = db_session or self._session_factory()
        try:
            result = await session.execute(
                select(ProviderConfig.key, Connection.status, func.count(Connection.id))
                .join(ProviderConfig, Connection.provider_id == ProviderConfig.id)
                .group_by(ProviderConfig.key, Connection.status)
            )
            rows = result.all()
        finally:
            if own_session:
                await session.close()

        by_provider: Dict[str, StatusCounts] = {}
        for key, status, count in rows:
            counts = by_provider.setdefault(key, StatusCounts())
            counts.total += count
            if status in (s.value for s in ConnectionStatus):
                setattr(counts, status, getattr(counts, status) + count)

        totals = StatusCounts()
        for counts in by_provider.values():
            totals.total += counts.total
            totals.active += counts.active
            totals.needs_refresh += counts.needs_refresh
            totals.expired += counts.expired

        return HealthMetrics(
            totals=totals,
            by_provider=by_provider,
            scan_in_progress=self.state.scan_in_progress,
            scans_completed=self.state.scans_completed,
            scans_skipped=self.state.scans_skipped,
            last_scan=self.state.last_summary,
            provider_calls=self.registry.call_stats(),
            generated_at=utcnow(),
        )
