from datetime import datetime

from sqlmodel import Field, SQLModel

from app.models.common import new_object_id, utc_naive_now


class AuditLog(SQLModel, table=True):
    __tablename__ = "logs"
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    tenant_id: str = Field(index=True)
    user_id: str = Field(index=True)
    user_name: str
    user_role: str
    action: str = Field(index=True)
    entity_type: str = Field(index=True)
    entity_id: str | None = None
    entity_name: str | None = None
    details: str
    ip_address: str | None = None
    user_agent: str | None = None
    timestamp: datetime = Field(default_factory=utc_naive_now, index=True)


class AuditLogPublic(SQLModel):
    id: str
    user_id: str
    user_name: str
    user_role: str
    action: str
    entity_type: str
    entity_id: str | None = None
    entity_name: str | None = None
    details: str
    timestamp: datetime
