"""Doctor availability: slot generation and per-date resolution.

Pure functions over DoctorSchedule values; nothing here touches the database.
Times of day are "HH:MM" strings throughout, dates are calendar days.
"""

from collections.abc import Iterable
from datetime import date

from app.core.exceptions import DateExceptionNotFoundError, ValidationError
from app.models.availability import (
    AvailabilityResult,
    DateException,
    DayAvailability,
    DayAvailabilityInput,
    DoctorSchedule,
    Interval,
    Weekday,
)
from app.models.common import HHMM_RE

REASON_INACTIVE = "doctor inactive that day"
REASON_OUTSIDE_HOURS = "outside working hours"
REASON_BOOKED = "already booked"


def parse_hhmm(value: str) -> int:
    """Minutes since midnight."""
    m = HHMM_RE.match(value or "")
    if not m:
        raise ValidationError(f"Invalid time {value!r}, expected HH:MM")
    return int(m.group(1)) * 60 + int(m.group(2))


def format_hhmm(minutes: int) -> str:
    hours, mins = divmod(minutes, 60)
    return f"{hours:02d}:{mins:02d}"


def generate_slots(day_start: str, day_end: str, duration_minutes: int) -> list[Interval]:
    """Contiguous intervals of `duration_minutes` from day_start. A slot may end exactly
    at day_end but never starts at or after it, nor runs past it."""
    if duration_minutes <= 0:
        raise ValidationError("Appointment duration must be a positive number of minutes")
    start = parse_hhmm(day_start)
    end = parse_hhmm(day_end)
    slots: list[Interval] = []
    current = start
    while current < end and current + duration_minutes <= end:
        slots.append(
            Interval(
                start=format_hhmm(current),
                end=format_hhmm(current + duration_minutes),
                occupied=False,
            )
        )
        current += duration_minutes
    return slots


def find_exception(schedule: DoctorSchedule, day: date) -> DateException | None:
    for exc in schedule.date_exceptions:
        if exc.date == day:
            return exc
    return None


def find_weekday(schedule: DoctorSchedule, weekday: Weekday) -> DayAvailability | None:
    for entry in schedule.weekly_template:
        if entry.weekday == weekday:
            return entry
    return None


def _working_intervals(schedule: DoctorSchedule, day: date) -> list[Interval] | None:
    """Intervals for `day`, or None when the doctor does not work that day."""
    exc = find_exception(schedule, day)
    if exc is not None:
        # The exception replaces the template outright; no intervals means a day off.
        return list(exc.intervals) or None
    entry = find_weekday(schedule, Weekday.of(day))
    if entry is None or not entry.active:
        return None
    return list(entry.intervals)


def resolve_day(schedule: DoctorSchedule, day: date) -> list[Interval]:
    return _working_intervals(schedule, day) or []


def check_availability(schedule: DoctorSchedule, day: date, time: str) -> AvailabilityResult:
    parse_hhmm(time)
    intervals = _working_intervals(schedule, day)
    if intervals is None:
        return AvailabilityResult(available=False, reason=REASON_INACTIVE)
    interval = next((i for i in intervals if i.start == time), None)
    if interval is None:
        return AvailabilityResult(available=False, reason=REASON_OUTSIDE_HOURS)
    if interval.occupied:
        return AvailabilityResult(available=False, reason=REASON_BOOKED)
    return AvailabilityResult(available=True)


def free_slots(schedule: DoctorSchedule, day: date) -> list[Interval]:
    return [i for i in resolve_day(schedule, day) if not i.occupied]


def set_occupied(schedule: DoctorSchedule, day: date, time: str, occupied: bool) -> DoctorSchedule | None:
    """Copy of `schedule` with the interval starting at `time` on `day` flipped, or None
    if there is no such interval. The exception for `day` is used when there is one,
    otherwise the weekday's template entry."""
    updated = schedule.model_copy(deep=True)
    exc = find_exception(updated, day)
    if exc is not None:
        intervals = exc.intervals
    else:
        entry = find_weekday(updated, Weekday.of(day))
        if entry is None:
            return None
        intervals = entry.intervals
    for interval in intervals:
        if interval.start == time:
            interval.occupied = occupied
            return updated
    return None


def release_all(schedule: DoctorSchedule) -> DoctorSchedule:
    """Copy of `schedule` with every interval free."""
    updated = schedule.model_copy(deep=True)
    for entry in updated.weekly_template:
        for interval in entry.intervals:
            interval.occupied = False
    for exc in updated.date_exceptions:
        for interval in exc.intervals:
            interval.occupied = False
    return updated


def hold_intervals(
    schedule: DoctorSchedule, held: Iterable[tuple[date, str]]
) -> tuple[DoctorSchedule, list[tuple[date, str]]]:
    """Mark the interval of every held (day, time) occupied, in order.

    Returns the updated copy and the pairs that could not be placed, either because
    `schedule` has no free interval starting there or an earlier pair already took it.
    """
    updated = schedule
    missing: list[tuple[date, str]] = []
    for day, time in held:
        if not check_availability(updated, day, time).available:
            missing.append((day, time))
            continue
        updated = set_occupied(updated, day, time, True) or updated
    return updated, missing


def build_weekly_template(days: list[DayAvailabilityInput], duration_minutes: int) -> list[DayAvailability]:
    """Seven entries, Monday first. Active days get freshly generated (unoccupied)
    intervals; inactive or unspecified days get none."""
    by_day: dict[Weekday, DayAvailabilityInput] = {}
    for d in days:
        if d.weekday in by_day:
            raise ValidationError(f"{d.weekday} given more than once")
        if d.active and parse_hhmm(d.day_start) >= parse_hhmm(d.day_end):
            raise ValidationError(f"{d.weekday}: day_start must be before day_end")
        by_day[d.weekday] = d

    template: list[DayAvailability] = []
    for weekday in Weekday:
        d = by_day.get(weekday) or DayAvailabilityInput(weekday=weekday, active=False)
        template.append(
            DayAvailability(
                weekday=weekday,
                active=d.active,
                day_start=d.day_start,
                day_end=d.day_end,
                intervals=generate_slots(d.day_start, d.day_end, duration_minutes) if d.active else [],
            )
        )
    return template


def make_date_exception(day: date, day_start: str, day_end: str, duration_minutes: int) -> DateException:
    if parse_hhmm(day_start) > parse_hhmm(day_end):
        raise ValidationError("day_start must not be after day_end")
    return DateException(
        date=day,
        day_start=day_start,
        day_end=day_end,
        intervals=generate_slots(day_start, day_end, duration_minutes),
    )


def with_exception(schedule: DoctorSchedule, exc: DateException) -> DoctorSchedule:
    """Add `exc`, replacing any earlier exception for the same date."""
    updated = schedule.model_copy(deep=True)
    updated.date_exceptions = [e for e in updated.date_exceptions if e.date != exc.date] + [exc]
    updated.date_exceptions.sort(key=lambda e: e.date)
    return updated


def without_exception(schedule: DoctorSchedule, exception_id: str) -> DoctorSchedule:
    remaining = [e for e in schedule.date_exceptions if e.id != exception_id]
    if len(remaining) == len(schedule.date_exceptions):
        raise DateExceptionNotFoundError("Date exception not found")
    updated = schedule.model_copy(deep=True)
    updated.date_exceptions = [e.model_copy(deep=True) for e in remaining]
    return updated
