import asyncio

import pytest

from app.core.exceptions import (
    AppointmentNotFoundError,
    ConcurrentModificationError,
    ConsistencyWarning,
    DoctorNotFoundError,
    InvalidTransitionError,
    PatientNotFoundError,
    SlotUnavailableError,
    ValidationError,
)
from app.models.appointment import Appointment, AppointmentCreate, AppointmentState, AppointmentType, AppointmentUpdate
from app.services import appointment_service
from app.services.appointment_service import BookingCoordinator
from app.services.availability_service import (
    REASON_BOOKED,
    REASON_INACTIVE,
    REASON_OUTSIDE_HOURS,
    check_availability,
    make_date_exception,
    with_exception,
)
from tests.factories import MONDAY, SUNDAY, TENANT_ID, TUESDAY, RecordingSink, reload_doctor, seed_doctor, seed_patient


@pytest.fixture
def coordinator(connection, actor, sink, locks) -> BookingCoordinator:
    return BookingCoordinator(connection, tenant_id=TENANT_ID, actor=actor, audit=sink, locks=locks)


@pytest.fixture
async def doctor(connection):
    return await seed_doctor(connection)


@pytest.fixture
async def patient(connection):
    return await seed_patient(connection)


def _booking(patient, doctor, day=MONDAY, time="09:00", **kwargs) -> AppointmentCreate:
    return AppointmentCreate(
        patient_id=patient.id,
        doctor_id=doctor.id,
        date=day,
        time=time,
        type=AppointmentType.IN_PERSON,
        reason="Control",
        **kwargs,
    )


async def _slot(connection, doctor_id, day=MONDAY, time="09:00"):
    doctor = await reload_doctor(connection, doctor_id)
    return check_availability(doctor.schedule(), day, time)


async def test_create_occupies_interval(coordinator, connection, doctor, patient, sink):
    appointment = await coordinator.create(_booking(patient, doctor))

    assert appointment.state == AppointmentState.SCHEDULED
    assert appointment.duration == 30
    result = await _slot(connection, doctor.id)
    assert result.available is False
    assert result.reason == REASON_BOOKED
    assert (await reload_doctor(connection, doctor.id)).availability_version == 1
    assert sink.actions() == ["APPOINTMENT_CREATED"]
    assert sink.events[0].entity_id == appointment.id
    assert sink.events[0].actor_id == "staff-1"
    assert "Luis Perez" in sink.events[0].details


async def test_create_without_time_is_pending(coordinator, connection, doctor, patient):
    appointment = await coordinator.create(
        AppointmentCreate(patient_id=patient.id, doctor_id=doctor.id, type=AppointmentType.PHONE)
    )
    assert appointment.state == AppointmentState.PENDING_SCHEDULE
    assert (await reload_doctor(connection, doctor.id)).availability_version == 0


@pytest.mark.parametrize(
    "day,time,reason",
    [
        (MONDAY, "13:00", REASON_OUTSIDE_HOURS),
        (MONDAY, "09:10", REASON_OUTSIDE_HOURS),
        (SUNDAY, "09:00", REASON_INACTIVE),
    ],
)
async def test_create_unavailable_writes_nothing(coordinator, doctor, patient, day, time, reason, sink):
    with pytest.raises(SlotUnavailableError) as exc_info:
        await coordinator.create(_booking(patient, doctor, day=day, time=time))
    assert exc_info.value.reason == reason
    items, total = await coordinator.list()
    assert total == 0
    assert sink.events == []


async def test_create_on_booked_slot(coordinator, doctor, patient):
    await coordinator.create(_booking(patient, doctor))
    with pytest.raises(SlotUnavailableError) as exc_info:
        await coordinator.create(_booking(patient, doctor))
    assert exc_info.value.reason == REASON_BOOKED


async def test_create_checks_references(coordinator, connection, doctor, patient):
    with pytest.raises(PatientNotFoundError):
        await coordinator.create(
            AppointmentCreate(patient_id="65f0000000000000000000ff", doctor_id=doctor.id, type=AppointmentType.PHONE)
        )
    with pytest.raises(DoctorNotFoundError):
        await coordinator.create(
            AppointmentCreate(patient_id=patient.id, doctor_id="65f0000000000000000000ff", type=AppointmentType.PHONE)
        )
    with pytest.raises(ValidationError):
        await coordinator.create(AppointmentCreate(patient_id="nope", type=AppointmentType.PHONE))
    with pytest.raises(ValidationError):
        await coordinator.create(_booking(patient, doctor, time="9:00"))
    with pytest.raises(ValidationError):
        await coordinator.create(_booking(patient, doctor, meeting_id="abc-123"))
    assert (await coordinator.list())[1] == 0


async def test_concurrent_creates_for_one_slot(coordinator, connection, doctor, patient):
    results = await asyncio.gather(
        coordinator.create(_booking(patient, doctor)),
        coordinator.create(_booking(patient, doctor)),
        return_exceptions=True,
    )
    booked = [r for r in results if isinstance(r, Appointment)]
    rejected = [r for r in results if isinstance(r, SlotUnavailableError)]
    assert len(booked) == 1
    assert len(rejected) == 1
    assert rejected[0].reason == REASON_BOOKED
    assert (await coordinator.list())[1] == 1


async def test_concurrent_creates_for_different_slots_keep_both(coordinator, connection, doctor, patient):
    times = ["08:00", "08:30", "09:00", "09:30"]
    await asyncio.gather(*(coordinator.create(_booking(patient, doctor, time=t)) for t in times))
    refreshed = await reload_doctor(connection, doctor.id)
    for t in times:
        assert check_availability(refreshed.schedule(), MONDAY, t).reason == REASON_BOOKED
    assert check_availability(refreshed.schedule(), MONDAY, "10:00").available is True
    assert refreshed.availability_version == len(times)


async def test_create_on_date_exception(coordinator, connection, doctor, patient):
    refreshed = await reload_doctor(connection, doctor.id)
    schedule = with_exception(refreshed.schedule(), make_date_exception(MONDAY, "14:00", "15:00", 30))
    async with connection.session() as session:
        refreshed.date_exceptions = [e.model_dump(mode="json") for e in schedule.date_exceptions]
        session.add(refreshed)

    with pytest.raises(SlotUnavailableError) as exc_info:
        await coordinator.create(_booking(patient, doctor, time="09:00"))
    assert exc_info.value.reason == REASON_OUTSIDE_HOURS

    await coordinator.create(_booking(patient, doctor, time="14:30"))
    assert (await _slot(connection, doctor.id, time="14:30")).reason == REASON_BOOKED


async def test_reschedule_moves_interval(coordinator, connection, doctor, patient, sink):
    appointment = await coordinator.create(_booking(patient, doctor))
    moved = await coordinator.update(appointment.id, AppointmentUpdate(date=TUESDAY, time="14:30"))

    assert moved.state == AppointmentState.SCHEDULED
    assert moved.date == TUESDAY
    assert (await _slot(connection, doctor.id)).available is True
    assert (await _slot(connection, doctor.id, day=TUESDAY, time="14:30")).reason == REASON_BOOKED
    assert sink.actions() == ["APPOINTMENT_CREATED", "APPOINTMENT_UPDATED"]
    assert "time: 09:00 -> 14:30" in sink.events[-1].details


async def test_reschedule_to_booked_slot_reverts_everything(coordinator, connection, doctor, patient):
    first = await coordinator.create(_booking(patient, doctor, time="09:00"))
    await coordinator.create(_booking(patient, doctor, time="10:00"))

    with pytest.raises(SlotUnavailableError) as exc_info:
        await coordinator.update(first.id, AppointmentUpdate(time="10:00", notes="moved"))
    assert exc_info.value.reason == REASON_BOOKED

    # The old interval is still held and the appointment is untouched.
    assert (await _slot(connection, doctor.id, time="09:00")).reason == REASON_BOOKED
    unchanged = await coordinator.get(first.id)
    assert unchanged.time == "09:00"
    assert unchanged.notes == ""


async def test_reschedule_to_another_doctor(coordinator, connection, doctor, patient):
    other = await seed_doctor(connection, email="juan@clinic.test")
    appointment = await coordinator.create(_booking(patient, doctor))
    moved = await coordinator.update(appointment.id, AppointmentUpdate(doctor_id=other.id))

    assert moved.doctor_id == other.id
    assert (await _slot(connection, doctor.id)).available is True
    assert (await _slot(connection, other.id)).reason == REASON_BOOKED


async def test_clearing_time_releases_and_returns_to_pending(coordinator, connection, doctor, patient):
    appointment = await coordinator.create(_booking(patient, doctor))
    updated = await coordinator.update(appointment.id, AppointmentUpdate(time=None))

    assert updated.state == AppointmentState.PENDING_SCHEDULE
    assert updated.time is None
    assert (await _slot(connection, doctor.id)).available is True


async def test_scheduling_pending_appointment(coordinator, connection, doctor, patient):
    appointment = await coordinator.create(AppointmentCreate(patient_id=patient.id, type=AppointmentType.VIRTUAL))
    scheduled = await coordinator.update(
        appointment.id, AppointmentUpdate(doctor_id=doctor.id, date=MONDAY, time="11:30")
    )
    assert scheduled.state == AppointmentState.SCHEDULED
    assert (await _slot(connection, doctor.id, time="11:30")).reason == REASON_BOOKED


async def test_plain_patch_leaves_interval_alone(coordinator, connection, doctor, patient):
    appointment = await coordinator.create(_booking(patient, doctor))
    updated = await coordinator.update(appointment.id, AppointmentUpdate(notes="Bring exams", consent_signed=True))
    assert updated.notes == "Bring exams"
    assert updated.consent_signed is True
    assert (await reload_doctor(connection, doctor.id)).availability_version == 1


async def test_cancel_releases_interval(coordinator, connection, doctor, patient, sink):
    appointment = await coordinator.create(_booking(patient, doctor))
    cancelled = await coordinator.cancel(appointment.id, "Patient travelling")

    assert cancelled.state == AppointmentState.CANCELLED
    assert cancelled.notes == "Patient travelling"
    assert (await _slot(connection, doctor.id)).available is True
    assert sink.actions()[-1] == "APPOINTMENT_CANCELLED"

    with pytest.raises(InvalidTransitionError):
        await coordinator.cancel(appointment.id)
    with pytest.raises(InvalidTransitionError):
        await coordinator.update(appointment.id, AppointmentUpdate(notes="late"))


async def test_slot_can_be_rebooked_after_cancel(coordinator, doctor, patient):
    appointment = await coordinator.create(_booking(patient, doctor))
    await coordinator.cancel(appointment.id)
    again = await coordinator.create(_booking(patient, doctor))
    assert again.state == AppointmentState.SCHEDULED


async def test_confirm_then_complete(coordinator, connection, doctor, patient):
    appointment = await coordinator.create(_booking(patient, doctor))
    confirmed = await coordinator.confirm(appointment.id)
    assert confirmed.state == AppointmentState.CONFIRMED

    completed = await coordinator.complete(appointment.id, "All good")
    assert completed.state == AppointmentState.COMPLETED
    assert completed.notes == "All good"
    # Completing consumes the interval, it is not handed back.
    assert (await _slot(connection, doctor.id)).reason == REASON_BOOKED

    with pytest.raises(InvalidTransitionError):
        await coordinator.confirm(appointment.id)


async def test_pending_cannot_be_confirmed_or_completed(coordinator, patient):
    appointment = await coordinator.create(AppointmentCreate(patient_id=patient.id, type=AppointmentType.PHONE))
    with pytest.raises(InvalidTransitionError):
        await coordinator.confirm(appointment.id)
    with pytest.raises(InvalidTransitionError):
        await coordinator.complete(appointment.id)
    cancelled = await coordinator.cancel(appointment.id)
    assert cancelled.state == AppointmentState.CANCELLED


async def test_no_show(coordinator, doctor, patient, sink):
    appointment = await coordinator.create(_booking(patient, doctor))
    missed = await coordinator.mark_no_show(appointment.id, "did not answer")
    assert missed.state == AppointmentState.NO_SHOW
    assert missed.notes == "No show - did not answer"
    assert "no-show" in sink.events[-1].details


async def test_delete_releases_interval(coordinator, connection, doctor, patient, sink):
    appointment = await coordinator.create(_booking(patient, doctor))
    await coordinator.delete(appointment.id)

    assert (await _slot(connection, doctor.id)).available is True
    with pytest.raises(AppointmentNotFoundError):
        await coordinator.get(appointment.id)
    assert sink.actions()[-1] == "APPOINTMENT_DELETED"


async def test_list_and_stats(coordinator, doctor, patient):
    first = await coordinator.create(_booking(patient, doctor, time="08:00"))
    await coordinator.create(_booking(patient, doctor, time="08:30"))
    await coordinator.create(AppointmentCreate(patient_id=patient.id, type=AppointmentType.PHONE))
    await coordinator.cancel(first.id)

    items, total = await coordinator.list(state=AppointmentState.SCHEDULED)
    assert total == 1
    assert items[0].time == "08:30"

    page, total = await coordinator.list(page=2, limit=2)
    assert total == 3
    assert len(page) == 1

    _, total = await coordinator.list(doctor_id=doctor.id, day=MONDAY)
    assert total == 2

    stats = await coordinator.stats()
    assert stats["scheduled"] == 1
    assert stats["cancelled"] == 1
    assert stats["pending_schedule"] == 1
    assert stats["completed"] == 0


async def test_check(coordinator, doctor, patient):
    assert (await coordinator.check(doctor.id, MONDAY, "09:00")).available is True
    await coordinator.create(_booking(patient, doctor))
    assert (await coordinator.check(doctor.id, MONDAY, "09:00")).reason == REASON_BOOKED
    with pytest.raises(DoctorNotFoundError):
        await coordinator.check("65f0000000000000000000ff", MONDAY, "09:00")


async def test_audit_failure_does_not_fail_booking(connection, actor, locks, doctor, patient):
    coordinator = BookingCoordinator(
        connection, tenant_id=TENANT_ID, actor=actor, audit=RecordingSink(fail=True), locks=locks
    )
    with pytest.warns(ConsistencyWarning):
        appointment = await coordinator.create(_booking(patient, doctor))
    assert appointment.state == AppointmentState.SCHEDULED
    assert (await _slot(connection, doctor.id)).reason == REASON_BOOKED


class _FlakyCoordinator(BookingCoordinator):
    def __init__(self, *args, stale_attempts: int, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.stale_attempts = stale_attempts
        self.attempts = 0

    async def _apply_intent(self, session, intent):
        self.attempts += 1
        if self.attempts <= self.stale_attempts:
            raise appointment_service._StaleSchedule("changed elsewhere")
        await super()._apply_intent(session, intent)


async def test_stale_schedule_is_retried(connection, actor, sink, locks, doctor, patient):
    coordinator = _FlakyCoordinator(
        connection, tenant_id=TENANT_ID, actor=actor, audit=sink, locks=locks, max_retries=3, stale_attempts=2
    )
    appointment = await coordinator.create(_booking(patient, doctor))
    assert coordinator.attempts == 3
    assert appointment.state == AppointmentState.SCHEDULED
    assert (await coordinator.list())[1] == 1


async def test_stale_schedule_gives_up(connection, actor, sink, locks, doctor, patient):
    coordinator = _FlakyCoordinator(
        connection, tenant_id=TENANT_ID, actor=actor, audit=sink, locks=locks, max_retries=2, stale_attempts=5
    )
    with pytest.raises(ConcurrentModificationError):
        await coordinator.create(_booking(patient, doctor))
    assert coordinator.attempts == 2
    assert (await coordinator.list())[1] == 0
    assert sink.events == []


async def test_locks_are_released(coordinator, locks, doctor, patient):
    await coordinator.create(_booking(patient, doctor))
    with pytest.raises(SlotUnavailableError):
        await coordinator.create(_booking(patient, doctor))
    assert len(locks) == 0
