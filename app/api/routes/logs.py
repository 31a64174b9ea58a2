from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.api.deps import get_connection, require_roles
from app.core.security import Role
from app.core.tenant_db import TenantConnection
from app.models.log import AuditLogPublic
from app.services.audit_service import list_logs

router = APIRouter(prefix="/logs", tags=["logs"])


class AuditLogPage(BaseModel):
    items: list[AuditLogPublic]
    total: int


@router.get("", response_model=AuditLogPage, dependencies=[Depends(require_roles(Role.ADMIN))])
async def audit_trail(
    action: str | None = None,
    entity_type: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    connection: TenantConnection = Depends(get_connection),
) -> AuditLogPage:
    items, total = await list_logs(connection, action=action, entity_type=entity_type, limit=limit, offset=offset)
    return AuditLogPage(
        items=[AuditLogPublic.model_validate(i, from_attributes=True) for i in items],
        total=total,
    )
