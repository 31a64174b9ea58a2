from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from app.models.common import new_object_id, utc_naive_now


class MeetingStatus(StrEnum):
    CREATED = "created"
    ACTIVE = "active"
    ENDED = "ended"
    EXPIRED = "expired"


class Meeting(SQLModel, table=True):
    """Record of an externally provisioned video consultation. The provider owns
    its lifecycle; we only keep what it handed back."""

    __tablename__ = "meetings"
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    meeting_id: str = Field(unique=True, index=True)
    external_meeting_id: str | None = None
    appointment_id: str | None = Field(default=None, index=True)
    meeting_data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    attendees: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    transcription_enabled: bool = False
    status: MeetingStatus = Field(default=MeetingStatus.CREATED, index=True)
    recording_url: str | None = None
    transcription_url: str | None = None
    duration_minutes: int | None = None
    created_at: datetime = Field(default_factory=utc_naive_now, index=True)
    updated_at: datetime = Field(default_factory=utc_naive_now)
