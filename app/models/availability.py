import datetime as dt
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator

from app.models.common import HHMM_RE, new_object_id


class Weekday(StrEnum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @classmethod
    def of(cls, d: dt.date) -> "Weekday":
        # date.weekday(): Monday == 0
        return list(cls)[d.weekday()]


def _check_hhmm(value: str) -> str:
    if not HHMM_RE.match(value):
        raise ValueError(f"expected HH:MM, got {value!r}")
    return value


class Interval(BaseModel):
    start: str
    end: str
    occupied: bool = False

    check_hhmm = field_validator("start", "end")(_check_hhmm)


class DayAvailability(BaseModel):
    weekday: Weekday
    active: bool = True
    day_start: str
    day_end: str
    intervals: list[Interval] = Field(default_factory=list)

    check_hhmm = field_validator("day_start", "day_end")(_check_hhmm)


class DateException(BaseModel):
    """Full override of a doctor's availability for one calendar day."""

    id: str = Field(default_factory=new_object_id)
    date: dt.date
    day_start: str
    day_end: str
    intervals: list[Interval] = Field(default_factory=list)

    check_hhmm = field_validator("day_start", "day_end")(_check_hhmm)


class DoctorSchedule(BaseModel):
    """What the availability engine needs to know about a doctor."""

    appointment_duration: int = 30
    weekly_template: list[DayAvailability] = Field(default_factory=list)
    date_exceptions: list[DateException] = Field(default_factory=list)


class AvailabilityResult(BaseModel):
    available: bool
    reason: str | None = None


class DayAvailabilityInput(BaseModel):
    weekday: Weekday
    active: bool = True
    day_start: str = "08:00"
    day_end: str = "17:00"

    check_hhmm = field_validator("day_start", "day_end")(_check_hhmm)


class WeeklyAvailabilitySave(BaseModel):
    days: list[DayAvailabilityInput]
    appointment_duration: int = Field(gt=0, le=24 * 60)


class DateExceptionCreate(BaseModel):
    date: dt.date
    day_start: str
    day_end: str
    appointment_duration: int | None = Field(default=None, gt=0, le=24 * 60)

    check_hhmm = field_validator("day_start", "day_end")(_check_hhmm)


class DateAvailabilityPublic(BaseModel):
    doctor_id: str
    doctor_name: str
    date: dt.date
    weekday: Weekday
    appointment_duration: int
    has_exception: bool
    slots: list[Interval]
