"""
Audit Log Repository

Append-only writes to subscription_logs, plus a metrics sink that stores
observability events in the same table.
"""

from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.domain.interfaces import AuditLogStore, MetricsSink
from storefront.domain.subscription import AuditLogEntry
from storefront.infrastructure.db.database import session_scope
from storefront.infrastructure.db.models.audit_log import SubscriptionLog


class AuditLogRepository(AuditLogStore):
    """Writes reconciliation events; never reads or updates them."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def append(self, entry: AuditLogEntry) -> None:
        async with session_scope(self.session_factory) as session:
            session.add(SubscriptionLog(
                event_type=entry.event_type,
                source=entry.source,
                success=entry.success,
                duration_ms=entry.duration_ms,
                subscription_id=entry.subscription_id,
                payload=entry.payload,
            ))


class AuditLogMetricsSink(MetricsSink):
    """Records metrics events as ``metrics.<event>`` audit rows."""

    def __init__(self, audit_store: AuditLogStore):
        self.audit_store = audit_store

    async def record(self, event: str, data: Dict[str, Any]) -> None:
        await self.audit_store.append(AuditLogEntry(
            event_type=f"metrics.{event}",
            source="metrics",
            success=True,
            duration_ms=data.get("duration_ms"),
            payload=data,
        ))
