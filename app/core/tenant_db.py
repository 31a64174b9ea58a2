"""Per-tenant connections and entity schema handles.

One `TenantDatabaseRegistry` is built at process start (see app.main) and handed to
everything that needs tenant data. It owns the only process-wide mutable state of
the data layer: the map of open tenant engines and the map of schema handles.
"""

import asyncio
import logging
import time
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from sqlalchemy import Table, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from app.core.config import settings
from app.core.exceptions import SchemaConflictError, TenantConnectionError
from app.models.appointment import Appointment
from app.models.catalog import Hospital, Insurance, Specialty
from app.models.doctor import Doctor
from app.models.log import AuditLog
from app.models.meeting import Meeting
from app.models.patient import Patient
from app.models.tenant import TenantLocator

logger = logging.getLogger(__name__)


class EntityKind(StrEnum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    APPOINTMENT = "appointment"
    HOSPITAL = "hospital"
    SPECIALTY = "specialty"
    INSURANCE = "insurance"
    LOG = "log"
    MEETING = "meeting"


ENTITY_MODELS: dict[EntityKind, type[SQLModel]] = {
    EntityKind.PATIENT: Patient,
    EntityKind.DOCTOR: Doctor,
    EntityKind.APPOINTMENT: Appointment,
    EntityKind.HOSPITAL: Hospital,
    EntityKind.SPECIALTY: Specialty,
    EntityKind.INSURANCE: Insurance,
    EntityKind.LOG: AuditLog,
    EntityKind.MEETING: Meeting,
}


@dataclass(frozen=True, eq=False)
class SchemaHandle:
    database_name: str
    kind: EntityKind
    model: type[SQLModel]

    @property
    def table(self) -> Table:
        return self.model.__table__  # type: ignore[attr-defined]


class TenantConnection:
    """Live handle on one tenant database: engine, session factory, schema handles."""

    def __init__(self, locator: TenantLocator, engine: AsyncEngine) -> None:
        self.locator = locator
        self.engine = engine
        self.session_maker = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )
        self.schemas: dict[EntityKind, SchemaHandle] = {}
        self.closed = False
        self.last_verified = 0.0

    @property
    def database_name(self) -> str:
        return self.locator.database_name

    @property
    def is_ready(self) -> bool:
        return not self.closed

    def model(self, kind: EntityKind) -> type[SQLModel]:
        return self.schemas[kind].model

    async def ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        self.last_verified = time.monotonic()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self.session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def dispose(self) -> None:
        self.closed = True
        await self.engine.dispose()


class TenantDatabaseRegistry:
    def __init__(
        self,
        *,
        connect_timeout: float | None = None,
        liveness_interval: float | None = None,
        auto_create_schema: bool | None = None,
        engine_factory: Callable[..., AsyncEngine] = create_async_engine,
    ) -> None:
        self.connect_timeout = (
            settings.tenant_connect_timeout_seconds if connect_timeout is None else connect_timeout
        )
        self.liveness_interval = (
            settings.tenant_liveness_interval_seconds if liveness_interval is None else liveness_interval
        )
        self.auto_create_schema = (
            settings.tenant_auto_create_schema if auto_create_schema is None else auto_create_schema
        )
        self._engine_factory = engine_factory
        self._connections: dict[str, TenantConnection] = {}
        self._schemas: dict[tuple[str, EntityKind], SchemaHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, locator: TenantLocator) -> bool:
        return locator.key in self._connections

    # -- connections -------------------------------------------------------

    async def get_connection(self, locator: TenantLocator) -> TenantConnection:
        """Return the live connection for `locator`, opening it on first use.

        First-time creation is serialised per locator so concurrent requests for a
        new tenant share one engine; different tenants open in parallel. A failed
        open is not remembered, the next call simply tries again.
        """
        key = locator.key
        conn = self._connections.get(key)
        if conn is not None and await self._is_live(conn):
            return conn

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            conn = self._connections.get(key)
            if conn is not None:
                if await self._is_live(conn):
                    return conn
                logger.warning("Tenant connection %s not ready, reopening", locator.masked())
                self._connections.pop(key, None)
                await self._dispose_quietly(conn)
            conn = await self._open(locator)
            self._connections[key] = conn
            return conn

    async def close(self, locator: TenantLocator) -> bool:
        """Dispose one tenant's engine (tenant deprovisioning). Returns False if it was not open.

        Waits for an open in progress on the same locator, so that open cannot cache
        an engine after the close.
        """
        async with self._locks.setdefault(locator.key, asyncio.Lock()):
            conn = self._connections.pop(locator.key, None)
            if conn is None:
                return False
            await self._dispose_quietly(conn)
        logger.info("Tenant connection closed: %s", locator.masked())
        return True

    async def close_all(self) -> None:
        conns = list(self._connections.values())
        self._connections.clear()
        for conn in conns:
            await self._dispose_quietly(conn)
        if conns:
            logger.info("Closed %d tenant connection(s)", len(conns))

    async def _is_live(self, conn: TenantConnection) -> bool:
        if not conn.is_ready:
            return False
        if time.monotonic() - conn.last_verified < self.liveness_interval:
            return True
        try:
            await asyncio.wait_for(conn.ping(), timeout=self.connect_timeout)
        except Exception as e:
            # asyncpg connect errors are not wrapped by SQLAlchemy
            logger.warning("Liveness probe failed for %s: %s", conn.locator.masked(), e)
            return False
        return True

    async def _open(self, locator: TenantLocator) -> TenantConnection:
        started = time.monotonic()
        engine = self._engine_factory(locator.url(), **self._engine_kwargs(locator))
        conn = TenantConnection(locator, engine)
        conn.schemas = {kind: self.get_schema(conn, locator.database_name, kind) for kind in EntityKind}
        try:
            await asyncio.wait_for(self._initialise(conn), timeout=self.connect_timeout)
        except Exception as e:
            await self._dispose_quietly(conn)
            logger.error("Could not connect to tenant database %s: %s", locator.masked(), e)
            raise TenantConnectionError(
                f"Tenant database unavailable: {locator.database_name}",
                details={"database": locator.database_name},
            ) from e
        logger.info(
            "Connected to tenant database %s in %.0fms",
            locator.masked(),
            (time.monotonic() - started) * 1000,
        )
        return conn

    async def _initialise(self, conn: TenantConnection) -> None:
        async with conn.engine.begin() as c:
            await c.execute(text("SELECT 1"))
            if self.auto_create_schema:
                tables = [handle.table for handle in conn.schemas.values()]
                await c.run_sync(SQLModel.metadata.create_all, tables=tables)
        conn.last_verified = time.monotonic()

    def _engine_kwargs(self, locator: TenantLocator) -> dict[str, Any]:
        url = locator.url()
        connect_args: dict[str, Any] = {"timeout": self.connect_timeout}
        kwargs: dict[str, Any] = {
            "echo": False,
            "pool_pre_ping": True,
            "pool_recycle": settings.tenant_pool_recycle_seconds,
        }
        if url.get_backend_name() == "postgresql":
            kwargs.update(
                pool_size=settings.tenant_pool_size,
                max_overflow=settings.tenant_max_overflow,
                pool_timeout=self.connect_timeout,
            )
            if settings.tenant_db_ssl:
                connect_args["ssl"] = True
        kwargs["connect_args"] = connect_args
        return kwargs

    async def _dispose_quietly(self, conn: TenantConnection) -> None:
        try:
            await conn.dispose()
        except (OSError, SQLAlchemyError) as e:
            logger.error("Error closing tenant connection %s: %s", conn.locator.masked(), e)

    # -- schemas -----------------------------------------------------------

    def get_schema(
        self, connection: TenantConnection, database_name: str, entity: EntityKind | str
    ) -> SchemaHandle:
        """Handle for `entity` in `database_name`; the same object for every call with the same key."""
        kind = EntityKind(entity)
        handle = self._schemas.get((database_name, kind))
        if handle is None:
            handle = self.register_schema(database_name, kind, ENTITY_MODELS[kind])
        connection.schemas.setdefault(kind, handle)
        return handle

    def register_schema(self, database_name: str, kind: EntityKind, model: type[SQLModel]) -> SchemaHandle:
        key = (database_name, kind)
        existing = self._schemas.get(key)
        if existing is not None:
            if existing.model is not model:
                raise SchemaConflictError(
                    f"{kind} is already registered for {database_name} with a different shape",
                    details={"database": database_name, "entity": str(kind)},
                )
            logger.debug("Schema %s/%s already registered, reusing handle", database_name, kind)
            return existing
        handle = SchemaHandle(database_name=database_name, kind=kind, model=model)
        self._schemas[key] = handle
        return handle
