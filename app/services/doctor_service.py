import logging
from collections.abc import Callable
from datetime import date

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ConcurrentModificationError, ConflictError, DoctorNotFoundError, ValidationError
from app.core.security import Actor
from app.core.tenant_db import EntityKind, TenantConnection
from app.models.appointment import Appointment, AppointmentState
from app.models.availability import (
    DateAvailabilityPublic,
    DateExceptionCreate,
    DoctorSchedule,
    Weekday,
    WeeklyAvailabilitySave,
)
from app.models.common import is_object_id, utc_naive_now
from app.models.doctor import Doctor, DoctorAvailabilityPublic, dump_schedule
from app.services.appointment_service import OCCUPYING_STATES
from app.services.audit_service import AuditAction, AuditEntity, AuditEvent, AuditSink, report_audit_failure
from app.services.availability_service import (
    build_weekly_template,
    find_exception,
    free_slots,
    hold_intervals,
    make_date_exception,
    release_all,
    resolve_day,
    with_exception,
    without_exception,
)
from app.services.locks import KeyedLocks

logger = logging.getLogger(__name__)

# Appointments whose interval is kept marked across schedule edits
MARKING_STATES = OCCUPYING_STATES | {AppointmentState.COMPLETED, AppointmentState.NO_SHOW}


class DoctorAvailabilityService:
    """Reads and edits a doctor's weekly template and date exceptions."""

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
        self._doctors: type[Doctor] = connection.model(EntityKind.DOCTOR)  # type: ignore[assignment]
        self._appointments: type[Appointment] = connection.model(EntityKind.APPOINTMENT)  # type: ignore[assignment]

    async def get_doctor(self, doctor_id: str) -> Doctor:
        if not is_object_id(doctor_id):
            raise ValidationError("Invalid doctor id")
        async with self._connection.session() as session:
            doctor = await session.get(self._doctors, doctor_id)
        if doctor is None:
            raise DoctorNotFoundError("Doctor not found")
        return doctor

    async def get_availability(self, doctor_id: str) -> DoctorAvailabilityPublic:
        doctor = await self.get_doctor(doctor_id)
        schedule = doctor.schedule()
        return DoctorAvailabilityPublic(
            doctor_id=doctor.id,
            doctor_name=doctor.full_name,
            appointment_duration=schedule.appointment_duration,
            weekly_template=schedule.weekly_template,
            date_exceptions=schedule.date_exceptions,
        )

    async def availability_for_date(self, doctor_id: str, day: date, *, free_only: bool = False) -> DateAvailabilityPublic:
        doctor = await self.get_doctor(doctor_id)
        schedule = doctor.schedule()
        return DateAvailabilityPublic(
            doctor_id=doctor.id,
            doctor_name=doctor.full_name,
            date=day,
            weekday=Weekday.of(day),
            appointment_duration=schedule.appointment_duration,
            has_exception=find_exception(schedule, day) is not None,
            slots=free_slots(schedule, day) if free_only else resolve_day(schedule, day),
        )

    async def save_weekly_availability(self, doctor_id: str, data: WeeklyAvailabilitySave) -> DoctorAvailabilityPublic:
        def change(schedule: DoctorSchedule) -> DoctorSchedule:
            template = build_weekly_template(data.days, data.appointment_duration)
            return schedule.model_copy(
                update={"appointment_duration": data.appointment_duration, "weekly_template": template}
            )

        doctor = await self._write(doctor_id, change)
        active_days = {d.weekday for d in data.days if d.active}
        active = ", ".join(w for w in Weekday if w in active_days) or "none"
        self._emit(
            AuditAction.AVAILABILITY_UPDATED,
            doctor,
            f"Weekly availability saved - active days: {active}; duration: {data.appointment_duration} min",
        )
        return await self.get_availability(doctor_id)

    async def add_date_exception(self, doctor_id: str, data: DateExceptionCreate) -> DoctorAvailabilityPublic:
        def change(schedule: DoctorSchedule) -> DoctorSchedule:
            duration = data.appointment_duration or schedule.appointment_duration
            return with_exception(schedule, make_date_exception(data.date, data.day_start, data.day_end, duration))

        doctor = await self._write(doctor_id, change)
        self._emit(
            AuditAction.DATE_EXCEPTION_ADDED,
            doctor,
            f"Date exception for {data.date.isoformat()}: {data.day_start}-{data.day_end}",
        )
        return await self.get_availability(doctor_id)

    async def remove_date_exception(self, doctor_id: str, exception_id: str) -> DoctorAvailabilityPublic:
        doctor = await self._write(doctor_id, lambda schedule: without_exception(schedule, exception_id))
        self._emit(AuditAction.DATE_EXCEPTION_REMOVED, doctor, f"Date exception {exception_id} removed")
        return await self.get_availability(doctor_id)

    async def _bookings(self, session: AsyncSession, doctor_id: str) -> list[Appointment]:
        """Placed appointments of the doctor that mark an interval, oldest first."""
        model = self._appointments
        result = await session.execute(
            select(model)
            .where(
                model.doctor_id == doctor_id,
                model.state.in_(list(MARKING_STATES)),
                model.date.is_not(None),
                model.time.is_not(None),
            )
            .order_by(model.created_at)
        )
        return list(result.scalars().all())

    def _reoccupy(self, schedule: DoctorSchedule, bookings: list[Appointment]) -> DoctorSchedule:
        """Rebuild the occupied flags of `schedule` from the doctor's appointments.

        Scheduled and confirmed appointments must land on a free interval of the new
        layout, otherwise the edit is refused. Completed and no-show ones are marked
        where their interval still exists.
        """
        live = [a for a in bookings if a.state in OCCUPYING_STATES]
        schedule, missing = hold_intervals(release_all(schedule), [(a.date, a.time) for a in live])
        if missing:
            lost = [a.id for a in live if (a.date, a.time) in missing]
            raise ConflictError(
                f"Change would leave {len(lost)} booked appointment(s) without an interval",
                details={"appointments": lost},
            )
        spent = [(a.date, a.time) for a in bookings if a.state not in OCCUPYING_STATES]
        schedule, _ = hold_intervals(schedule, spent)
        return schedule

    async def _write(self, doctor_id: str, change: Callable[[DoctorSchedule], DoctorSchedule]) -> Doctor:
        if not is_object_id(doctor_id):
            raise ValidationError("Invalid doctor id")
        model = self._doctors
        async with self._locks.hold((self._connection.locator.key, "doctor", doctor_id)):
            for attempt in range(1, self._max_retries + 1):
                async with self._connection.session() as session:
                    result = await session.execute(select(model).where(model.id == doctor_id).with_for_update())
                    doctor = result.scalars().first()
                    if doctor is None:
                        raise DoctorNotFoundError("Doctor not found")
                    version = doctor.availability_version
                    schedule = self._reoccupy(change(doctor.schedule()), await self._bookings(session, doctor_id))
                    written = await session.execute(
                        update(model)
                        .where(model.id == doctor_id, model.availability_version == version)
                        .values(**dump_schedule(schedule), availability_version=version + 1, updated_at=utc_naive_now())
                        .execution_options(synchronize_session=False)
                    )
                    if written.rowcount == 1:
                        return doctor
                logger.warning("Availability of doctor %s changed concurrently (attempt %d)", doctor_id, attempt)
        raise ConcurrentModificationError("Doctor availability keeps changing, please retry")

    def _emit(self, action: AuditAction, doctor: Doctor, details: str) -> None:
        event = AuditEvent.by(
            self._actor,
            self._tenant_id,
            action=action,
            entity_type=AuditEntity.DOCTOR,
            entity_id=doctor.id,
            entity_name=doctor.full_name,
            details=details,
        )
        try:
            self._audit.emit(event)
        except Exception as e:
            report_audit_failure(event, e)
