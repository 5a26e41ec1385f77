"""
Connection health tracking.

All writes to a connection's status, error counter, and activity timestamps go
through :class:`ConnectionHealthMonitor`. Each write takes a per-connection
lock and a row lock inside its own short session, and is applied only after any
outbound HTTP call has returned.

Status rules:
    ACTIVE -> ERROR          error_count reaches the threshold
    ERROR -> ACTIVE          any successful sync / webhook cycle
    ACTIVE/ERROR -> DISCONNECTED   explicit disconnect only; terminal
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, List, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import or_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from tasklink.core.config import settings
from tasklink.core.logging import get_logger
from tasklink.db.models.connection import Connection, ConnectionStatus, WebhookStatus
from tasklink.db.session import AsyncSessionLocal

logger = get_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 1000


class ConnectionHealth(BaseModel):
    connection_id: int
    status: ConnectionStatus
    webhook_status: WebhookStatus
    healthy: bool
    error_count: int
    last_error: Optional[str] = None
    issues: List[str]
    checked_at: datetime


class ConnectionStatistics(BaseModel):
    project_id: int
    total: int
    active: int
    errored: int
    disconnected: int
    webhooks_active: int
    with_errors: int
    recent_activity: int


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ConnectionHealthMonitor:
    """Single writer for connection health state."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        *,
        error_threshold: Optional[int] = None,
        stale_after: Optional[timedelta] = None,
        token_warning: Optional[timedelta] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.error_threshold = error_threshold or settings.CONNECTION_ERROR_THRESHOLD
        self.stale_after = stale_after or timedelta(hours=settings.STALE_WEBHOOK_HOURS)
        self.token_warning = token_warning or timedelta(
            days=settings.TOKEN_EXPIRY_WARNING_DAYS
        )
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = defaultdict(int)

    @asynccontextmanager
    async def _locked(
        self, connection_id: int
    ) -> AsyncIterator[Tuple[AsyncSession, Optional[Connection]]]:
        lock = self._locks.setdefault(connection_id, asyncio.Lock())
        self._lock_users[connection_id] += 1
        try:
            async with lock:
                async with self.session_factory() as session:
                    result = await session.exec(
                        select(Connection)
                        .where(Connection.id == connection_id)
                        .with_for_update()
                    )
                    yield session, result.first()
        finally:
            # Drop the lock once nobody holds or waits on it
            self._lock_users[connection_id] -= 1
            if not self._lock_users[connection_id]:
                del self._lock_users[connection_id]
                del self._locks[connection_id]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def record_success(
        self, connection_id: int, *, webhook: bool = False, synced: bool = False
    ) -> Optional[Connection]:
        """Reset the error counter and bring an ERROR connection back to ACTIVE."""
        async with self._locked(connection_id) as (session, connection):
            if connection is None:
                logger.warning("Health success for unknown connection %s", connection_id)
                return None
            if connection.status == ConnectionStatus.DISCONNECTED:
                return connection

            now = datetime.now(timezone.utc)
            if connection.status == ConnectionStatus.ERROR:
                logger.info("Connection %s recovered, status ACTIVE", connection_id)
            connection.status = ConnectionStatus.ACTIVE
            connection.error_count = 0
            if webhook:
                connection.last_webhook_at = now
                connection.webhook_status = WebhookStatus.ACTIVE
            if synced:
                connection.last_sync_at = now
            connection.updated_at = now
            await session.commit()
            return connection

    async def record_webhook_received(self, connection_id: int) -> Optional[Connection]:
        return await self.record_success(connection_id, webhook=True)

    async def record_failure(
        self, connection_id: int, message: str
    ) -> Optional[Connection]:
        """Count a terminal failure; flip to ERROR once the threshold is reached."""
        async with self._locked(connection_id) as (session, connection):
            if connection is None:
                logger.warning("Health failure for unknown connection %s", connection_id)
                return None
            if connection.status == ConnectionStatus.DISCONNECTED:
                return connection

            connection.error_count = (connection.error_count or 0) + 1
            connection.last_error = message[:MAX_ERROR_MESSAGE_LENGTH]
            connection.updated_at = datetime.now(timezone.utc)
            if (
                connection.error_count >= self.error_threshold
                and connection.status == ConnectionStatus.ACTIVE
            ):
                connection.status = ConnectionStatus.ERROR
                logger.error(
                    "Connection %s moved to ERROR after %d consecutive failures: %s",
                    connection_id,
                    connection.error_count,
                    connection.last_error,
                )
            else:
                logger.warning(
                    "Connection %s failure %d/%d: %s",
                    connection_id,
                    connection.error_count,
                    self.error_threshold,
                    connection.last_error,
                )
            await session.commit()
            return connection

    async def update_webhook(
        self,
        connection_id: int,
        webhook_status: WebhookStatus,
        webhook_id: Optional[int] = None,
    ) -> Optional[Connection]:
        async with self._locked(connection_id) as (session, connection):
            if connection is None or not connection.is_live:
                return connection
            connection.webhook_status = webhook_status
            if webhook_id is not None:
                connection.webhook_id = webhook_id
            connection.updated_at = datetime.now(timezone.utc)
            await session.commit()
            return connection

    async def disconnect(self, connection_id: int) -> Optional[Connection]:
        """Terminal, manual-only transition to DISCONNECTED."""
        async with self._locked(connection_id) as (session, connection):
            if connection is None:
                return None
            connection.status = ConnectionStatus.DISCONNECTED
            connection.webhook_status = WebhookStatus.INACTIVE
            connection.updated_at = datetime.now(timezone.utc)
            await session.commit()
            logger.info("Connection %s disconnected", connection_id)
            return connection

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def health_issues(
        self, connection: Connection, now: Optional[datetime] = None
    ) -> List[str]:
        now = now or datetime.now(timezone.utc)
        issues = []
        if connection.status != ConnectionStatus.ACTIVE:
            issues.append("Connection is not active")
        if connection.webhook_status != WebhookStatus.ACTIVE:
            issues.append("Webhook is not active")
        if connection.error_count > 0:
            issues.append(f"Recent errors detected ({connection.error_count})")
        last_webhook_at = _aware(connection.last_webhook_at)
        if last_webhook_at is None or now - last_webhook_at > self.stale_after:
            issues.append("No recent webhook activity")
        token_expires_at = _aware(connection.token_expires_at)
        if token_expires_at is not None and token_expires_at - now <= self.token_warning:
            issues.append("Access token near expiry")
        return issues

    def assess(
        self, connection: Connection, now: Optional[datetime] = None
    ) -> ConnectionHealth:
        now = now or datetime.now(timezone.utc)
        return ConnectionHealth(
            connection_id=connection.id,
            status=connection.status,
            webhook_status=connection.webhook_status,
            healthy=(
                connection.status == ConnectionStatus.ACTIVE
                and connection.webhook_status == WebhookStatus.ACTIVE
                and connection.error_count < self.error_threshold
            ),
            error_count=connection.error_count,
            last_error=connection.last_error,
            issues=self.health_issues(connection, now),
            checked_at=now,
        )

    async def statistics(self, project_id: int) -> ConnectionStatistics:
        async with self.session_factory() as session:
            result = await session.exec(
                select(Connection).where(Connection.project_id == project_id)
            )
            connections = result.all()

        now = datetime.now(timezone.utc)
        recent_cutoff = now - self.stale_after
        return ConnectionStatistics(
            project_id=project_id,
            total=len(connections),
            active=sum(c.status == ConnectionStatus.ACTIVE for c in connections),
            errored=sum(c.status == ConnectionStatus.ERROR for c in connections),
            disconnected=sum(
                c.status == ConnectionStatus.DISCONNECTED for c in connections
            ),
            webhooks_active=sum(
                c.webhook_status == WebhookStatus.ACTIVE for c in connections
            ),
            with_errors=sum(c.error_count > 0 for c in connections),
            recent_activity=sum(
                _aware(c.last_webhook_at) is not None
                and _aware(c.last_webhook_at) > recent_cutoff
                for c in connections
            ),
        )

    async def check_stale_connections(
        self, now: Optional[datetime] = None
    ) -> List[int]:
        """Record a failure on every live connection that has gone quiet."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.stale_after
        async with self.session_factory() as session:
            result = await session.exec(
                select(Connection.id).where(
                    Connection.status != ConnectionStatus.DISCONNECTED,
                    or_(
                        Connection.last_webhook_at < cutoff,
                        Connection.last_webhook_at.is_(None)
                        & (Connection.created_at < cutoff),
                    ),
                )
            )
            stale_ids = list(result.all())

        hours = int(self.stale_after.total_seconds() // 3600)
        for connection_id in stale_ids:
            await self.record_failure(
                connection_id, f"No webhook activity for {hours}+ hours"
            )
        if stale_ids:
            logger.info("Flagged %d stale connections", len(stale_ids))
        return stale_ids
