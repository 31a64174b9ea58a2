from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlalchemy.engine import URL, make_url
from sqlmodel import Field, SQLModel

from app.models.common import new_object_id, utc_naive_now

DEFAULT_FEATURES: dict[str, bool] = {
    "scheduling": True,
    "digital_caretaker": False,
    "telemedicine": False,
    "reports": False,
}


def _default_features() -> dict[str, bool]:
    return dict(DEFAULT_FEATURES)


def _default_settings() -> dict[str, str]:
    return {"timezone": "America/Bogota", "language": "es"}


def to_async_url(raw: str) -> URL:
    """Map sync driver schemes onto their async drivers. asyncpg does not accept
    psycopg params like sslmode/channel_binding, so those are stripped."""
    url = make_url(raw)
    if url.drivername in ("postgresql", "postgres", "postgresql+psycopg2"):
        url = url.set(drivername="postgresql+asyncpg")
    elif url.drivername == "sqlite":
        url = url.set(drivername="sqlite+aiosqlite")
    if url.drivername == "postgresql+asyncpg":
        url = url.difference_update_query(["sslmode", "channel_binding"])
    return url


@dataclass(frozen=True)
class TenantLocator:
    """Connection string + logical database name of one tenant database."""

    connection_url: str
    database_name: str

    @property
    def key(self) -> str:
        return f"{self.connection_url}_{self.database_name}"

    def url(self) -> URL:
        return to_async_url(self.connection_url).set(database=self.database_name)

    def masked(self) -> str:
        return self.url().render_as_string(hide_password=True)


class Tenant(SQLModel, table=True):
    __tablename__ = "tenants"
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    name: str
    domain: str = Field(index=True)
    full_domain: str = Field(unique=True, index=True)
    database_url: str
    database_name: str
    is_active: bool = Field(default=True, index=True)
    features: dict[str, Any] = Field(default_factory=_default_features, sa_column=Column(JSON, nullable=False))
    settings: dict[str, Any] = Field(default_factory=_default_settings, sa_column=Column(JSON, nullable=False))
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utc_naive_now)
    updated_at: datetime = Field(default_factory=utc_naive_now)

    @property
    def locator(self) -> TenantLocator:
        return TenantLocator(self.database_url, self.database_name)

    def has_feature(self, flag: str) -> bool:
        return bool((self.features or {}).get(flag, False))


class TenantCreate(SQLModel):
    name: str
    domain: str
    full_domain: str | None = None
    database_url: str
    database_name: str | None = None
    features: dict[str, bool] | None = None


class TenantPublic(SQLModel):
    id: str
    name: str
    domain: str
    full_domain: str
    database_name: str
    is_active: bool
    features: dict[str, Any]
    created_at: datetime
