import logging

from fastapi import APIRouter, Depends, Request, status

from app.api.deps import get_directory, require_roles
from app.core.security import Actor, Role
from app.models.tenant import TenantCreate, TenantPublic
from app.services.tenant_service import TenantDirectory, resolve_tenant_domain

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/tenants", tags=["tenants"])

_superadmin = require_roles(Role.SUPERADMIN)


@router.post("", response_model=TenantPublic, status_code=status.HTTP_201_CREATED)
async def provision_tenant(
    body: TenantCreate,
    actor: Actor = Depends(_superadmin),
    directory: TenantDirectory = Depends(get_directory),
) -> TenantPublic:
    tenant = await directory.provision(body, created_by=actor.user_id)
    return TenantPublic.model_validate(tenant, from_attributes=True)


@router.get("/resolve", response_model=TenantPublic)
async def resolve_tenant(
    request: Request,
    directory: TenantDirectory = Depends(get_directory),
) -> TenantPublic:
    """Which tenant this request belongs to (X-Tenant header, subdomain or `tenant` query)."""
    domain = resolve_tenant_domain(
        headers=request.headers,
        host=request.headers.get("host", ""),
        query=request.query_params,
    )
    tenant = await directory.get_by_domain(domain)
    return TenantPublic.model_validate(tenant, from_attributes=True)


@router.post("/{tenant_id}/deactivate", response_model=TenantPublic, dependencies=[Depends(_superadmin)])
async def deactivate_tenant(
    tenant_id: str,
    directory: TenantDirectory = Depends(get_directory),
) -> TenantPublic:
    tenant = await directory.deactivate(tenant_id)
    return TenantPublic.model_validate(tenant, from_attributes=True)
