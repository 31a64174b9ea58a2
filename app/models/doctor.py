from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from app.models.availability import DateException, DayAvailability, DoctorSchedule
from app.models.common import new_object_id, utc_naive_now


class Doctor(SQLModel, table=True):
    __tablename__ = "doctors"
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    user_id: str | None = Field(default=None, index=True)
    name: str
    last_name: str
    email: str = Field(unique=True, index=True)
    phone: str
    specialty_id: str = Field(index=True)
    hospital_id: str | None = None
    license_number: str = Field(index=True)
    biography: str | None = None
    appointment_duration: int = 30
    # Serialised DayAvailability / DateException lists
    weekly_template: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    date_exceptions: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    # Bumped on every availability write; writers only commit if it is unchanged
    availability_version: int = 0
    active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utc_naive_now)
    updated_at: datetime = Field(default_factory=utc_naive_now)

    @property
    def full_name(self) -> str:
        return f"{self.name} {self.last_name}"

    def schedule(self) -> DoctorSchedule:
        return DoctorSchedule(
            appointment_duration=self.appointment_duration,
            weekly_template=[DayAvailability.model_validate(d) for d in self.weekly_template or []],
            date_exceptions=[DateException.model_validate(e) for e in self.date_exceptions or []],
        )


def dump_schedule(schedule: DoctorSchedule) -> dict[str, Any]:
    """Column values for a schedule, JSON-safe (dates as ISO strings)."""
    return {
        "appointment_duration": schedule.appointment_duration,
        "weekly_template": [d.model_dump(mode="json") for d in schedule.weekly_template],
        "date_exceptions": [e.model_dump(mode="json") for e in schedule.date_exceptions],
    }


class DoctorAvailabilityPublic(SQLModel):
    doctor_id: str
    doctor_name: str
    appointment_duration: int
    weekly_template: list[DayAvailability]
    date_exceptions: list[DateException]
