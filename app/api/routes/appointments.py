import logging
from datetime import date

from fastapi import APIRouter, Depends, Query, Response, status

from app.api.deps import get_coordinator, require_roles
from app.api.schemas.appointment import CancelAppointmentRequest, CompleteAppointmentRequest, NoShowRequest
from app.core.security import Role
from app.models.appointment import (
    Appointment,
    AppointmentCreate,
    AppointmentPage,
    AppointmentPublic,
    AppointmentState,
    AppointmentStats,
    AppointmentUpdate,
)
from app.models.availability import AvailabilityResult
from app.services.appointment_service import BookingCoordinator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/appointments", tags=["appointments"])

# Anyone working at the practice may book; only admins delete records.
_staff = require_roles(Role.ADMIN, Role.DOCTOR, Role.STAFF)
_admin = require_roles(Role.ADMIN)


def _to_public(a: Appointment) -> AppointmentPublic:
    return AppointmentPublic.model_validate(a, from_attributes=True)


@router.post("", response_model=AppointmentPublic, status_code=status.HTTP_201_CREATED, dependencies=[Depends(_staff)])
async def create_appointment(
    body: AppointmentCreate,
    coordinator: BookingCoordinator = Depends(get_coordinator),
) -> AppointmentPublic:
    return _to_public(await coordinator.create(body))


@router.get("", response_model=AppointmentPage, dependencies=[Depends(_staff)])
async def list_appointments(
    state: AppointmentState | None = None,
    doctor_id: str | None = None,
    patient_id: str | None = None,
    date_param: date | None = Query(default=None, alias="date"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    coordinator: BookingCoordinator = Depends(get_coordinator),
) -> AppointmentPage:
    items, total = await coordinator.list(
        state=state, doctor_id=doctor_id, patient_id=patient_id, day=date_param, page=page, limit=limit
    )
    return AppointmentPage(items=[_to_public(a) for a in items], page=page, limit=limit, total=total)


@router.get("/stats", response_model=AppointmentStats, dependencies=[Depends(_staff)])
async def appointment_stats(coordinator: BookingCoordinator = Depends(get_coordinator)) -> AppointmentStats:
    by_state = await coordinator.stats()
    return AppointmentStats(total=sum(by_state.values()), by_state=by_state)


@router.get("/availability", response_model=AvailabilityResult, dependencies=[Depends(_staff)])
async def check_availability(
    doctor_id: str,
    date_param: date = Query(..., alias="date"),
    time: str = Query(...),
    coordinator: BookingCoordinator = Depends(get_coordinator),
) -> AvailabilityResult:
    """Whether the doctor's interval starting at `time` on `date` can be booked."""
    return await coordinator.check(doctor_id, date_param, time)


@router.get("/{appointment_id}", response_model=AppointmentPublic, dependencies=[Depends(_staff)])
async def get_appointment(
    appointment_id: str,
    coordinator: BookingCoordinator = Depends(get_coordinator),
) -> AppointmentPublic:
    return _to_public(await coordinator.get(appointment_id))


@router.patch("/{appointment_id}", response_model=AppointmentPublic, dependencies=[Depends(_staff)])
async def update_appointment(
    appointment_id: str,
    body: AppointmentUpdate,
    coordinator: BookingCoordinator = Depends(get_coordinator),
) -> AppointmentPublic:
    return _to_public(await coordinator.update(appointment_id, body))


@router.post("/{appointment_id}/cancel", response_model=AppointmentPublic, dependencies=[Depends(_staff)])
async def cancel_appointment(
    appointment_id: str,
    body: CancelAppointmentRequest | None = None,
    coordinator: BookingCoordinator = Depends(get_coordinator),
) -> AppointmentPublic:
    return _to_public(await coordinator.cancel(appointment_id, body.reason if body else None))


@router.post("/{appointment_id}/confirm", response_model=AppointmentPublic, dependencies=[Depends(_staff)])
async def confirm_appointment(
    appointment_id: str,
    coordinator: BookingCoordinator = Depends(get_coordinator),
) -> AppointmentPublic:
    return _to_public(await coordinator.confirm(appointment_id))


@router.post("/{appointment_id}/complete", response_model=AppointmentPublic, dependencies=[Depends(_staff)])
async def complete_appointment(
    appointment_id: str,
    body: CompleteAppointmentRequest | None = None,
    coordinator: BookingCoordinator = Depends(get_coordinator),
) -> AppointmentPublic:
    return _to_public(await coordinator.complete(appointment_id, body.notes if body else None))


@router.post("/{appointment_id}/no-show", response_model=AppointmentPublic, dependencies=[Depends(_staff)])
async def mark_no_show(
    appointment_id: str,
    body: NoShowRequest | None = None,
    coordinator: BookingCoordinator = Depends(get_coordinator),
) -> AppointmentPublic:
    return _to_public(await coordinator.mark_no_show(appointment_id, body.reason if body else None))


@router.delete("/{appointment_id}", status_code=status.HTTP_204_NO_CONTENT, dependencies=[Depends(_admin)])
async def delete_appointment(
    appointment_id: str,
    coordinator: BookingCoordinator = Depends(get_coordinator),
) -> Response:
    await coordinator.delete(appointment_id)
    logger.info("Appointment %s deleted", appointment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
