"""Appointment booking against a tenant database.

Every write that touches a doctor's intervals goes through `BookingCoordinator._commit`:
the doctors involved are locked in-process, re-read inside one transaction, the
interval intent is applied to their schedules and written back only if their
`availability_version` is unchanged, together with the appointment row itself.
Either all of it commits or none of it does.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AppointmentNotFoundError,
    ConcurrentModificationError,
    DoctorNotFoundError,
    InvalidTransitionError,
    PatientNotFoundError,
    SlotUnavailableError,
    ValidationError,
)
from app.core.security import Actor
from app.core.tenant_db import EntityKind, TenantConnection
from app.models.appointment import (
    TERMINAL_STATES,
    Appointment,
    AppointmentCreate,
    AppointmentState,
    AppointmentType,
    AppointmentUpdate,
)
from app.models.availability import AvailabilityResult, DoctorSchedule
from app.models.common import is_hhmm, is_object_id, utc_naive_now
from app.models.doctor import Doctor
from app.models.patient import Patient
from app.services.audit_service import AuditAction, AuditEntity, AuditEvent, AuditSink, report_audit_failure
from app.services.availability_service import check_availability, set_occupied
from app.services.locks import KeyedLocks

logger = logging.getLogger(__name__)

# Allowed moves; anything missing (including every terminal state) is refused.
TRANSITIONS: dict[AppointmentState, frozenset[AppointmentState]] = {
    AppointmentState.PENDING_SCHEDULE: frozenset({AppointmentState.SCHEDULED, AppointmentState.CANCELLED}),
    AppointmentState.SCHEDULED: frozenset(
        {
            AppointmentState.CONFIRMED,
            AppointmentState.CANCELLED,
            AppointmentState.COMPLETED,
            AppointmentState.NO_SHOW,
        }
    ),
    AppointmentState.CONFIRMED: frozenset(
        {AppointmentState.COMPLETED, AppointmentState.CANCELLED, AppointmentState.NO_SHOW}
    ),
}

# States in which the appointment holds its doctor's interval
OCCUPYING_STATES = frozenset({AppointmentState.SCHEDULED, AppointmentState.CONFIRMED})

PLACEMENT_FIELDS = ("doctor_id", "date", "time")


@dataclass(frozen=True)
class IntervalRef:
    """Which interval an appointment holds: doctor, calendar day and start time."""

    doctor_id: str
    date: date
    time: str


@dataclass(frozen=True)
class IntervalIntent:
    """Interval changes applied by a single booking write."""

    release: IntervalRef | None = None
    occupy: IntervalRef | None = None

    @property
    def doctor_ids(self) -> set[str]:
        return {ref.doctor_id for ref in (self.release, self.occupy) if ref is not None}


class _StaleSchedule(Exception):
    """A doctor's schedule changed between our read and our conditional write."""


def interval_of(appointment: Appointment) -> IntervalRef | None:
    if appointment.state in OCCUPYING_STATES and appointment.is_placed:
        return IntervalRef(appointment.doctor_id, appointment.date, appointment.time)
    return None


def _placement(doctor_id: str | None, day: date | None, time: str | None) -> IntervalRef | None:
    if doctor_id and day and time:
        return IntervalRef(doctor_id, day, time)
    return None


def _validate_refs(*, patient_id: str | None = None, doctor_id: str | None = None, time: str | None = None) -> None:
    if patient_id is not None and not is_object_id(patient_id):
        raise ValidationError("Invalid patient id")
    if doctor_id is not None and not is_object_id(doctor_id):
        raise ValidationError("Invalid doctor id")
    if time is not None and not is_hhmm(time):
        raise ValidationError(f"Invalid time {time!r}, expected HH:MM")


def _describe_changes(before: Appointment, changes: dict[str, Any]) -> str:
    parts = []
    for field, value in changes.items():
        old = getattr(before, field)
        if old != value:
            parts.append(f"{field}: {old if old not in (None, '') else '-'} -> {value if value not in (None, '') else '-'}")
    return "; ".join(parts) or "no changes"


class BookingCoordinator:
    """Create, reschedule and move appointments through their states for one tenant."""

    def __init__(
        self,
        connection: TenantConnection,
        *,
        tenant_id: str,
        actor: Actor,
        audit: AuditSink,
        locks: KeyedLocks,
        max_retries: int | None = None,
    ) -> None:
        self._connection = connection
        self._tenant_id = tenant_id
        self._actor = actor
        self._audit = audit
        self._locks = locks
        self._max_retries = max_retries or settings.booking_max_retries
        self._appointments: type[Appointment] = connection.model(EntityKind.APPOINTMENT)  # type: ignore[assignment]
        self._doctors: type[Doctor] = connection.model(EntityKind.DOCTOR)  # type: ignore[assignment]
        self._patients: type[Patient] = connection.model(EntityKind.PATIENT)  # type: ignore[assignment]

    def _lock_key(self, kind: str, entity_id: str) -> tuple[str, str, str]:
        return (self._connection.locator.key, kind, entity_id)

    # -- reads -------------------------------------------------------------

    async def get(self, appointment_id: str) -> Appointment:
        if not is_object_id(appointment_id):
            raise ValidationError("Invalid appointment id")
        async with self._connection.session() as session:
            appointment = await session.get(self._appointments, appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError("Appointment not found")
        return appointment

    async def list(
        self,
        *,
        state: AppointmentState | None = None,
        doctor_id: str | None = None,
        patient_id: str | None = None,
        day: date | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Appointment], int]:
        model = self._appointments
        q = select(model)
        if state:
            q = q.where(model.state == state)
        if doctor_id:
            q = q.where(model.doctor_id == doctor_id)
        if patient_id:
            q = q.where(model.patient_id == patient_id)
        if day:
            q = q.where(model.date == day)
        page = max(page, 1)
        async with self._connection.session() as session:
            total = (await session.execute(select(func.count()).select_from(q.subquery()))).scalar_one()
            result = await session.execute(
                q.order_by(model.date.desc(), model.time.desc(), model.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(result.scalars().all()), total

    async def stats(self) -> dict[str, int]:
        model = self._appointments
        async with self._connection.session() as session:
            result = await session.execute(select(model.state, func.count()).group_by(model.state))
            counts = {str(state): n for state, n in result.all()}
        return {str(state): counts.get(str(state), 0) for state in AppointmentState}

    async def check(self, doctor_id: str, day: date, time: str) -> AvailabilityResult:
        """Read-only availability check for one doctor, day and start time."""
        _validate_refs(doctor_id=doctor_id, time=time)
        async with self._connection.session() as session:
            doctor = await session.get(self._doctors, doctor_id)
        if doctor is None:
            raise DoctorNotFoundError("Doctor not found")
        return check_availability(doctor.schedule(), day, time)

    # -- writes ------------------------------------------------------------

    async def create(self, data: AppointmentCreate) -> Appointment:
        _validate_refs(patient_id=data.patient_id, doctor_id=data.doctor_id, time=data.time)
        if data.meeting_id and data.type != AppointmentType.VIRTUAL:
            raise ValidationError("Only virtual appointments can reference a meeting")
        if data.duration is not None and data.duration <= 0:
            raise ValidationError("Duration must be positive")
        occupy = _placement(data.doctor_id, data.date, data.time)
        found: dict[str, Any] = {}

        async def precheck(session: AsyncSession) -> None:
            patient = await session.get(self._patients, data.patient_id)
            if patient is None:
                raise PatientNotFoundError("Patient not found")
            found["patient"] = patient
            if data.doctor_id:
                doctor = await session.get(self._doctors, data.doctor_id)
                if doctor is None:
                    raise DoctorNotFoundError("Doctor not found")
                found["doctor"] = doctor

        async def insert(session: AsyncSession) -> Appointment:
            doctor = found.get("doctor")
            default_duration = doctor.appointment_duration if doctor else settings.default_appointment_duration_minutes
            appointment = self._appointments(
                patient_id=data.patient_id,
                doctor_id=data.doctor_id,
                date=data.date,
                time=data.time,
                duration=data.duration or default_duration,
                type=data.type,
                reason=data.reason,
                notes=data.notes,
                specialty=data.specialty,
                meeting_id=data.meeting_id,
                state=AppointmentState.SCHEDULED if occupy else AppointmentState.PENDING_SCHEDULE,
            )
            session.add(appointment)
            await session.flush()
            return appointment

        appointment = await self._commit(IntervalIntent(occupy=occupy), insert, precheck=precheck)
        when = f"{appointment.date.isoformat()} {appointment.time}" if occupy else "a date still to be scheduled"
        patient_name = found["patient"].full_name
        with_doctor = f" with doctor {found['doctor'].full_name}" if "doctor" in found else ""
        self._emit(
            AuditAction.APPOINTMENT_CREATED,
            appointment,
            f"Appointment created for patient {patient_name}{with_doctor} for {when}",
            entity_name=f"{appointment.type} appointment - {patient_name}",
        )
        logger.info("Appointment %s created (%s) in %s", appointment.id, appointment.state, self._connection.database_name)
        return appointment

    async def update(self, appointment_id: str, patch: AppointmentUpdate) -> Appointment:
        changes = patch.model_dump(exclude_unset=True)
        _validate_refs(doctor_id=changes.get("doctor_id"), time=changes.get("time"))
        if "duration" in changes and changes["duration"] is not None and changes["duration"] <= 0:
            raise ValidationError("Duration must be positive")
        for field in ("type", "reason", "notes", "duration", "specialty", "consent_signed"):
            if field in changes and changes[field] is None:
                raise ValidationError(f"{field} cannot be cleared")

        async with self._locks.hold(self._lock_key("appointment", appointment_id)):
            current = await self.get(appointment_id)
            if current.state in TERMINAL_STATES:
                raise InvalidTransitionError(f"A {current.state} appointment cannot be modified")
            new_type = changes.get("type", current.type)
            if changes.get("meeting_id", current.meeting_id) and new_type != AppointmentType.VIRTUAL:
                raise ValidationError("Only virtual appointments can reference a meeting")

            moved = any(f in changes and changes[f] != getattr(current, f) for f in PLACEMENT_FIELDS)
            intent = IntervalIntent()
            target = None
            if moved:
                target = _placement(
                    changes.get("doctor_id", current.doctor_id),
                    changes.get("date", current.date),
                    changes.get("time", current.time),
                )
                intent = IntervalIntent(release=interval_of(current), occupy=target)
            new_doctor_id = changes.get("doctor_id")

            async def precheck(session: AsyncSession) -> None:
                if new_doctor_id and target is None and await session.get(self._doctors, new_doctor_id) is None:
                    raise DoctorNotFoundError("Doctor not found")

            async def write(session: AsyncSession) -> Appointment:
                appointment = await self._reload(session, current)
                for field, value in changes.items():
                    setattr(appointment, field, value)
                if moved:
                    # Rescheduling puts a confirmed appointment back to scheduled.
                    appointment.state = AppointmentState.SCHEDULED if target else AppointmentState.PENDING_SCHEDULE
                appointment.updated_at = utc_naive_now()
                session.add(appointment)
                await session.flush()
                return appointment

            appointment = await self._commit(intent, write, precheck=precheck)

        self._emit(
            AuditAction.APPOINTMENT_UPDATED,
            appointment,
            f"Appointment updated - {_describe_changes(current, changes)} - state: {appointment.state}",
        )
        return appointment

    async def cancel(self, appointment_id: str, reason: str | None = None) -> Appointment:
        appointment = await self._transition(
            appointment_id,
            AppointmentState.CANCELLED,
            notes=lambda current: reason or "Appointment cancelled",
        )
        self._emit(
            AuditAction.APPOINTMENT_CANCELLED,
            appointment,
            f"Appointment cancelled - reason: {reason or 'not specified'}",
        )
        return appointment

    async def confirm(self, appointment_id: str) -> Appointment:
        appointment = await self._transition(appointment_id, AppointmentState.CONFIRMED)
        self._emit(AuditAction.APPOINTMENT_UPDATED, appointment, "Appointment confirmed")
        return appointment

    async def complete(self, appointment_id: str, notes: str | None = None) -> Appointment:
        appointment = await self._transition(
            appointment_id,
            AppointmentState.COMPLETED,
            notes=lambda current: notes or current.notes,
        )
        self._emit(AuditAction.APPOINTMENT_UPDATED, appointment, "Appointment marked as completed")
        return appointment

    async def mark_no_show(self, appointment_id: str, reason: str | None = None) -> Appointment:
        appointment = await self._transition(
            appointment_id,
            AppointmentState.NO_SHOW,
            notes=lambda current: f"No show - {reason}" if reason else "Patient did not attend",
        )
        self._emit(
            AuditAction.APPOINTMENT_UPDATED,
            appointment,
            f"Appointment marked as no-show - reason: {reason or 'not specified'}",
        )
        return appointment

    async def delete(self, appointment_id: str) -> None:
        async with self._locks.hold(self._lock_key("appointment", appointment_id)):
            current = await self.get(appointment_id)

            async def remove(session: AsyncSession) -> Appointment:
                appointment = await self._reload(session, current)
                await session.delete(appointment)
                await session.flush()
                return appointment

            await self._commit(IntervalIntent(release=interval_of(current)), remove)
        self._emit(AuditAction.APPOINTMENT_DELETED, current, f"Appointment deleted ({current.state})")

    # -- internals ---------------------------------------------------------

    async def _transition(
        self,
        appointment_id: str,
        target: AppointmentState,
        notes: Callable[[Appointment], str] | None = None,
    ) -> Appointment:
        async with self._locks.hold(self._lock_key("appointment", appointment_id)):
            current = await self.get(appointment_id)
            if target not in TRANSITIONS.get(current.state, frozenset()):
                raise InvalidTransitionError(f"Cannot move a {current.state} appointment to {target}")
            # Only cancelling gives the interval back; completing or a no-show consumed it.
            release = interval_of(current) if target == AppointmentState.CANCELLED else None

            async def write(session: AsyncSession) -> Appointment:
                appointment = await self._reload(session, current)
                appointment.state = target
                if notes is not None:
                    appointment.notes = notes(current)
                appointment.updated_at = utc_naive_now()
                session.add(appointment)
                await session.flush()
                return appointment

            return await self._commit(IntervalIntent(release=release), write)

    async def _reload(self, session: AsyncSession, snapshot: Appointment) -> Appointment:
        result = await session.execute(
            select(self._appointments).where(self._appointments.id == snapshot.id).with_for_update()
        )
        appointment = result.scalars().first()
        if appointment is None:
            raise AppointmentNotFoundError("Appointment not found")
        if (appointment.state, appointment.doctor_id, appointment.date, appointment.time) != (
            snapshot.state,
            snapshot.doctor_id,
            snapshot.date,
            snapshot.time,
        ):
            raise ConcurrentModificationError("Appointment was modified concurrently, retry")
        return appointment

    async def _commit(
        self,
        intent: IntervalIntent,
        write: Callable[[AsyncSession], Awaitable[Appointment]],
        *,
        precheck: Callable[[AsyncSession], Awaitable[None]] | None = None,
    ) -> Appointment:
        keys = [self._lock_key("doctor", doctor_id) for doctor_id in intent.doctor_ids]
        async with self._locks.hold(*keys):
            for attempt in range(1, self._max_retries + 1):
                try:
                    async with self._connection.session() as session:
                        if precheck is not None:
                            await precheck(session)
                        await self._apply_intent(session, intent)
                        return await write(session)
                except _StaleSchedule:
                    logger.warning(
                        "Doctor schedule changed during booking (attempt %d/%d), retrying",
                        attempt,
                        self._max_retries,
                    )
        raise ConcurrentModificationError("Doctor schedule keeps changing, please retry")

    async def _apply_intent(self, session: AsyncSession, intent: IntervalIntent) -> None:
        if intent.release is None and intent.occupy is None:
            return
        loaded: dict[str, tuple[DoctorSchedule, int]] = {}
        for doctor_id in sorted(intent.doctor_ids):
            result = await session.execute(
                select(self._doctors).where(self._doctors.id == doctor_id).with_for_update()
            )
            doctor = result.scalars().first()
            if doctor is not None:
                loaded[doctor_id] = (doctor.schedule(), doctor.availability_version)

        schedules = {doctor_id: schedule for doctor_id, (schedule, _) in loaded.items()}
        if intent.release is not None:
            ref = intent.release
            released = set_occupied(schedules[ref.doctor_id], ref.date, ref.time, False) if ref.doctor_id in schedules else None
            if released is None:
                logger.warning("Interval %s %s of doctor %s no longer exists, nothing to release", ref.date, ref.time, ref.doctor_id)
            else:
                schedules[ref.doctor_id] = released
        if intent.occupy is not None:
            ref = intent.occupy
            if ref.doctor_id not in schedules:
                raise DoctorNotFoundError("Doctor not found")
            result = check_availability(schedules[ref.doctor_id], ref.date, ref.time)
            if not result.available:
                raise SlotUnavailableError(result.reason or "unavailable")
            schedules[ref.doctor_id] = set_occupied(schedules[ref.doctor_id], ref.date, ref.time, True)

        for doctor_id, schedule in schedules.items():
            if schedule is loaded[doctor_id][0]:
                continue
            version = loaded[doctor_id][1]
            result = await session.execute(
                update(self._doctors)
                .where(self._doctors.id == doctor_id, self._doctors.availability_version == version)
                .values(
                    weekly_template=[d.model_dump(mode="json") for d in schedule.weekly_template],
                    date_exceptions=[e.model_dump(mode="json") for e in schedule.date_exceptions],
                    availability_version=version + 1,
                    updated_at=utc_naive_now(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise _StaleSchedule(doctor_id)

    def _emit(self, action: AuditAction, appointment: Appointment, details: str, entity_name: str | None = None) -> None:
        event = AuditEvent.by(
            self._actor,
            self._tenant_id,
            action=action,
            entity_type=AuditEntity.APPOINTMENT,
            entity_id=appointment.id,
            entity_name=entity_name or f"{appointment.type} appointment",
            details=details,
        )
        try:
            self._audit.emit(event)
        except Exception as e:
            report_audit_failure(event, e)
