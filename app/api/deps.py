from collections.abc import Callable

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.exceptions import AuthenticationError, PermissionDeniedError
from app.core.security import Actor, Role, decode_access_token
from app.core.tenant_db import TenantConnection
from app.models.tenant import Tenant
from app.services.appointment_service import BookingCoordinator
from app.services.audit_service import AuditDispatcher, TenantLogAuditSink
from app.services.doctor_service import DoctorAvailabilityService
from app.services.locks import KeyedLocks
from app.services.tenant_service import TenantDirectory, require_feature, resolve_tenant_domain

security = HTTPBearer(auto_error=False)


def get_directory(request: Request) -> TenantDirectory:
    return request.app.state.directory


def get_locks(request: Request) -> KeyedLocks:
    return request.app.state.locks


def get_dispatcher(request: Request) -> AuditDispatcher:
    return request.app.state.dispatcher


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Actor:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Missing or invalid authorization header")
    actor = decode_access_token(credentials.credentials)
    if actor is None:
        raise AuthenticationError("Invalid or expired token")
    return actor


def require_roles(*roles: Role) -> Callable:
    """Dependency that admits only the given roles (superadmin always passes)."""

    async def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if not actor.is_superadmin and actor.role not in roles:
            raise PermissionDeniedError(f"Role '{actor.role}' may not perform this action")
        return actor

    return dependency


async def get_tenant(
    request: Request,
    actor: Actor = Depends(get_current_actor),
    directory: TenantDirectory = Depends(get_directory),
) -> Tenant:
    """The tenant bound to the token; a superadmin without a binding names one on the request."""
    if actor.tenant_id:
        return await directory.get_by_id(actor.tenant_id)
    if not actor.is_superadmin:
        raise PermissionDeniedError("Token is not bound to a tenant")
    domain = resolve_tenant_domain(
        headers=request.headers,
        host=request.headers.get("host", ""),
        query=request.query_params,
        path=request.url.path,
    )
    return await directory.get_by_domain(domain)


async def get_scheduling_tenant(tenant: Tenant = Depends(get_tenant)) -> Tenant:
    require_feature(tenant, "scheduling")
    return tenant


async def get_connection(
    tenant: Tenant = Depends(get_scheduling_tenant),
    directory: TenantDirectory = Depends(get_directory),
) -> TenantConnection:
    return await directory.connect(tenant)


def get_audit_sink(
    request: Request,
    connection: TenantConnection = Depends(get_connection),
    dispatcher: AuditDispatcher = Depends(get_dispatcher),
) -> TenantLogAuditSink:
    return TenantLogAuditSink(
        connection,
        dispatcher,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def get_coordinator(
    tenant: Tenant = Depends(get_scheduling_tenant),
    connection: TenantConnection = Depends(get_connection),
    actor: Actor = Depends(get_current_actor),
    sink: TenantLogAuditSink = Depends(get_audit_sink),
    locks: KeyedLocks = Depends(get_locks),
) -> BookingCoordinator:
    return BookingCoordinator(connection, tenant_id=tenant.id, actor=actor, audit=sink, locks=locks)


def get_availability_service(
    tenant: Tenant = Depends(get_scheduling_tenant),
    connection: TenantConnection = Depends(get_connection),
    actor: Actor = Depends(get_current_actor),
    sink: TenantLogAuditSink = Depends(get_audit_sink),
    locks: KeyedLocks = Depends(get_locks),
) -> DoctorAvailabilityService:
    return DoctorAvailabilityService(connection, tenant_id=tenant.id, actor=actor, audit=sink, locks=locks)
