import asyncio
import logging
import warnings
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import StrEnum
from typing import Protocol

from pydantic import BaseModel, Field
from sqlalchemy import func, select

from app.core.exceptions import ConsistencyWarning
from app.core.security import Actor
from app.core.tenant_db import EntityKind, TenantConnection
from app.models.common import utc_naive_now
from app.models.log import AuditLog

logger = logging.getLogger(__name__)


class AuditAction(StrEnum):
    APPOINTMENT_CREATED = "APPOINTMENT_CREATED"
    APPOINTMENT_UPDATED = "APPOINTMENT_UPDATED"
    APPOINTMENT_CANCELLED = "APPOINTMENT_CANCELLED"
    APPOINTMENT_DELETED = "APPOINTMENT_DELETED"
    AVAILABILITY_UPDATED = "AVAILABILITY_UPDATED"
    DATE_EXCEPTION_ADDED = "DATE_EXCEPTION_ADDED"
    DATE_EXCEPTION_REMOVED = "DATE_EXCEPTION_REMOVED"


class AuditEntity(StrEnum):
    APPOINTMENT = "APPOINTMENT"
    DOCTOR = "DOCTOR"


class AuditEvent(BaseModel):
    tenant_id: str
    actor_id: str
    actor_name: str
    actor_role: str
    action: str
    entity_type: str
    entity_id: str | None = None
    entity_name: str | None = None
    details: str
    ip_address: str | None = None
    user_agent: str | None = None
    timestamp: datetime = Field(default_factory=utc_naive_now)

    @classmethod
    def by(cls, actor: Actor, tenant_id: str, **fields) -> "AuditEvent":
        return cls(
            tenant_id=tenant_id,
            actor_id=actor.user_id,
            actor_name=actor.name,
            actor_role=actor.role,
            **fields,
        )


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None:
        """Hand the event over without waiting for it to be stored."""


def report_audit_failure(event: AuditEvent, exc: BaseException) -> None:
    logger.error(
        "Audit event %s for %s %s was not recorded: %s",
        event.action,
        event.entity_type,
        event.entity_id,
        exc,
    )
    warnings.warn(
        f"audit event {event.action} for {event.entity_id} lost: {exc}",
        ConsistencyWarning,
        stacklevel=2,
    )


class AuditDispatcher:
    """Runs audit writes as background tasks so the primary operation never waits on them."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def submit(self, event: AuditEvent, write: Callable[[AuditEvent], Awaitable[None]]) -> None:
        task = asyncio.create_task(self._run(event, write))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, event: AuditEvent, write: Callable[[AuditEvent], Awaitable[None]]) -> None:
        try:
            await write(event)
        except Exception as e:
            report_audit_failure(event, e)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class TenantLogAuditSink:
    """Stores events in the tenant's own `logs` table. Request metadata given at
    construction is stamped on events that do not carry their own."""

    def __init__(
        self,
        connection: TenantConnection,
        dispatcher: AuditDispatcher,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        self._connection = connection
        self._dispatcher = dispatcher
        self._ip_address = ip_address
        self._user_agent = user_agent

    def emit(self, event: AuditEvent) -> None:
        event = event.model_copy(
            update={
                "ip_address": event.ip_address or self._ip_address,
                "user_agent": event.user_agent or self._user_agent,
            }
        )
        self._dispatcher.submit(event, self._write)

    async def _write(self, event: AuditEvent) -> None:
        log_model = self._connection.model(EntityKind.LOG)
        async with self._connection.session() as session:
            session.add(
                log_model(
                    tenant_id=event.tenant_id,
                    user_id=event.actor_id,
                    user_name=event.actor_name,
                    user_role=event.actor_role,
                    action=event.action,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    entity_name=event.entity_name,
                    details=event.details,
                    ip_address=event.ip_address,
                    user_agent=event.user_agent,
                    timestamp=event.timestamp,
                )
            )
        logger.debug("Audit %s recorded for tenant %s", event.action, event.tenant_id)


async def list_logs(
    connection: TenantConnection,
    *,
    action: str | None = None,
    entity_type: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[AuditLog], int]:
    log_model = connection.model(EntityKind.LOG)
    q = select(log_model)
    if action:
        q = q.where(log_model.action == action)
    if entity_type:
        q = q.where(log_model.entity_type == entity_type)
    async with connection.session() as session:
        total = (await session.execute(select(func.count()).select_from(q.subquery()))).scalar_one()
        result = await session.execute(q.order_by(log_model.timestamp.desc()).offset(offset).limit(limit))
        return list(result.scalars().all()), total
