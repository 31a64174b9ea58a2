import datetime as dt
from enum import StrEnum

from sqlmodel import Field, SQLModel

from app.models.common import new_object_id, utc_naive_now


class AppointmentType(StrEnum):
    IN_PERSON = "in_person"
    VIRTUAL = "virtual"
    PHONE = "phone"


class AppointmentState(StrEnum):
    PENDING_SCHEDULE = "pending_schedule"
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


TERMINAL_STATES = frozenset({AppointmentState.COMPLETED, AppointmentState.CANCELLED, AppointmentState.NO_SHOW})


class Appointment(SQLModel, table=True):
    __tablename__ = "appointments"
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    patient_id: str = Field(index=True)
    doctor_id: str | None = Field(default=None, index=True)
    date: dt.date | None = Field(default=None, index=True)
    time: str | None = None  # "HH:MM", the start of the occupied interval
    duration: int = 30
    type: AppointmentType = Field(index=True)
    reason: str = ""
    state: AppointmentState = Field(default=AppointmentState.PENDING_SCHEDULE, index=True)
    notes: str = ""
    specialty: str = ""
    consent_signed: bool = False
    meeting_id: str | None = None  # externally provisioned video meeting
    created_at: dt.datetime = Field(default_factory=utc_naive_now)
    updated_at: dt.datetime = Field(default_factory=utc_naive_now)

    @property
    def is_placed(self) -> bool:
        """True when the appointment holds a doctor interval."""
        return bool(self.doctor_id and self.date and self.time)


class AppointmentCreate(SQLModel):
    patient_id: str
    doctor_id: str | None = None
    date: dt.date | None = None
    time: str | None = None
    type: AppointmentType
    reason: str = ""
    notes: str = ""
    duration: int | None = None
    specialty: str = ""
    meeting_id: str | None = None


class AppointmentUpdate(SQLModel):
    """Partial update; only fields explicitly set are applied."""

    doctor_id: str | None = None
    date: dt.date | None = None
    time: str | None = None
    type: AppointmentType | None = None
    reason: str | None = None
    notes: str | None = None
    duration: int | None = None
    specialty: str | None = None
    consent_signed: bool | None = None
    meeting_id: str | None = None


class AppointmentPublic(SQLModel):
    id: str
    patient_id: str
    doctor_id: str | None = None
    date: dt.date | None = None
    time: str | None = None
    duration: int
    type: AppointmentType
    reason: str
    state: AppointmentState
    notes: str
    specialty: str
    consent_signed: bool
    meeting_id: str | None = None
    created_at: dt.datetime
    updated_at: dt.datetime


class AppointmentPage(SQLModel):
    items: list[AppointmentPublic]
    page: int
    limit: int
    total: int


class AppointmentStats(SQLModel):
    total: int
    by_state: dict[str, int]
