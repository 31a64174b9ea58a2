"""Name-only reference tables kept per tenant. Their CRUD lives elsewhere; the
tenant registry only needs their shapes so every tenant database carries them."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from app.models.common import new_object_id, utc_naive_now


class Hospital(SQLModel, table=True):
    __tablename__ = "hospitals"
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    name: str = Field(unique=True, index=True)
    created_at: datetime = Field(default_factory=utc_naive_now)
    updated_at: datetime = Field(default_factory=utc_naive_now)


class Specialty(SQLModel, table=True):
    __tablename__ = "specialties"
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    name: str = Field(unique=True, index=True)
    created_at: datetime = Field(default_factory=utc_naive_now)
    updated_at: datetime = Field(default_factory=utc_naive_now)


class Insurance(SQLModel, table=True):
    __tablename__ = "insurances"
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    name: str = Field(unique=True, index=True)
    created_at: datetime = Field(default_factory=utc_naive_now)
    updated_at: datetime = Field(default_factory=utc_naive_now)
