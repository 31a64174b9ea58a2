import logging
import re
from collections.abc import Mapping

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.exceptions import ConflictError, FeatureDisabledError, TenantNotFoundError, ValidationError
from app.core.tenant_db import TenantConnection, TenantDatabaseRegistry
from app.models.common import is_object_id, utc_naive_now
from app.models.tenant import DEFAULT_FEATURES, Tenant, TenantCreate

logger = logging.getLogger(__name__)

DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,62}$")


def resolve_tenant_domain(
    *,
    headers: Mapping[str, str],
    host: str = "",
    query: Mapping[str, str] | None = None,
    path: str = "",
    reserved: set[str] | None = None,
) -> str:
    """Work out which tenant a request is for.

    Checked in order: X-Tenant header, subdomain of localhost, `tenant` query
    parameter, first path segment that is not a platform route.
    """
    domain = (headers.get("x-tenant") or headers.get("X-Tenant") or "").strip()
    if not domain and "localhost" in host:
        subdomain = host.split(":")[0].split(".")[0]
        if subdomain != "localhost":
            domain = subdomain
    if not domain and query:
        domain = (query.get("tenant") or "").strip()
    if not domain and path:
        segments = [s for s in path.split("/") if s]
        reserved = settings.reserved_path_segments_set if reserved is None else reserved
        if segments and segments[0] not in reserved:
            domain = segments[0]
    if not domain:
        raise ValidationError("Could not detect the tenant for this request")
    return domain.lower()


def require_feature(tenant: Tenant, flag: str) -> None:
    if not tenant.has_feature(flag):
        raise FeatureDisabledError(f"Feature '{flag}' is not enabled for {tenant.name}")


class TenantDirectory:
    """Lookup of tenant records in the central directory.

    Records are cached for the life of the process once resolved; provisioning and
    deactivation keep the cache and the connection registry in step.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        registry: TenantDatabaseRegistry,
    ) -> None:
        self._session_maker = session_maker
        self._registry = registry
        self._by_id: dict[str, Tenant] = {}
        self._by_domain: dict[str, Tenant] = {}

    def _remember(self, tenant: Tenant) -> Tenant:
        self._by_id[tenant.id] = tenant
        self._by_domain[tenant.domain] = tenant
        return tenant

    def invalidate(self, tenant_id: str) -> None:
        tenant = self._by_id.pop(tenant_id, None)
        if tenant is not None:
            self._by_domain.pop(tenant.domain, None)

    async def get_by_domain(self, domain: str) -> Tenant:
        cached = self._by_domain.get(domain)
        if cached is not None:
            return cached
        async with self._session_maker() as session:
            result = await session.execute(
                select(Tenant).where(Tenant.domain == domain, Tenant.is_active.is_(True))
            )
            tenant = result.scalars().first()
        if tenant is None:
            logger.info("No active tenant for domain %r", domain)
            raise TenantNotFoundError(f"Tenant '{domain}' not found")
        return self._remember(tenant)

    async def get_by_id(self, tenant_id: str) -> Tenant:
        cached = self._by_id.get(tenant_id)
        if cached is not None:
            return cached
        if not is_object_id(tenant_id):
            raise TenantNotFoundError("Tenant not found")
        async with self._session_maker() as session:
            tenant = await session.get(Tenant, tenant_id)
        if tenant is None or not tenant.is_active:
            raise TenantNotFoundError("Tenant not found")
        return self._remember(tenant)

    async def connect(self, tenant: Tenant) -> TenantConnection:
        return await self._registry.get_connection(tenant.locator)

    async def provision(self, data: TenantCreate, created_by: str | None = None) -> Tenant:
        """Register a tenant and open its database (creating its tables)."""
        domain = data.domain.strip().lower()
        if not DOMAIN_RE.match(domain):
            raise ValidationError(f"Invalid tenant domain {data.domain!r}")
        full_domain = (data.full_domain or domain).strip().lower()
        database_name = data.database_name or f"tenant_{domain.replace('-', '_')}"
        features = dict(DEFAULT_FEATURES)
        features.update(data.features or {})

        async with self._session_maker() as session:
            clash = await session.execute(
                select(Tenant.id).where(
                    or_(
                        Tenant.full_domain == full_domain,
                        Tenant.domain == domain,
                        Tenant.database_name == database_name,
                    )
                )
            )
            if clash.first() is not None:
                raise ConflictError(f"A tenant already uses domain '{domain}' or database '{database_name}'")

            tenant = Tenant(
                name=data.name,
                domain=domain,
                full_domain=full_domain,
                database_url=data.database_url,
                database_name=database_name,
                features=features,
                created_by=created_by,
            )
            # Open (and lay out) the tenant database before committing the record, so a
            # tenant whose database is unreachable is never registered.
            opened_here = tenant.locator not in self._registry
            await self._registry.get_connection(tenant.locator)
            session.add(tenant)
            try:
                await session.commit()
            except SQLAlchemyError as e:
                if opened_here:
                    await self._registry.close(tenant.locator)
                if isinstance(e, IntegrityError):
                    raise ConflictError(f"A tenant already uses domain '{domain}'") from e
                raise
            await session.refresh(tenant)

        logger.info("Provisioned tenant %s (%s) on %s", tenant.name, domain, tenant.locator.masked())
        return self._remember(tenant)

    async def deactivate(self, tenant_id: str) -> Tenant:
        """Soft-deactivate: the record stays, lookups stop resolving it and its
        connection is closed."""
        async with self._session_maker() as session:
            tenant = await session.get(Tenant, tenant_id) if is_object_id(tenant_id) else None
            if tenant is None:
                raise TenantNotFoundError("Tenant not found")
            tenant.is_active = False
            tenant.updated_at = utc_naive_now()
            session.add(tenant)
            await session.commit()
            await session.refresh(tenant)
        self.invalidate(tenant_id)
        await self._registry.close(tenant.locator)
        logger.info("Deactivated tenant %s (%s)", tenant.name, tenant.domain)
        return tenant
