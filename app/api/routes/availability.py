from datetime import date

from fastapi import APIRouter, Depends

from app.api.deps import get_availability_service, get_current_actor, require_roles
from app.core.exceptions import PermissionDeniedError
from app.core.security import Actor, Role
from app.models.availability import DateAvailabilityPublic, DateExceptionCreate, WeeklyAvailabilitySave
from app.models.doctor import DoctorAvailabilityPublic
from app.services.doctor_service import DoctorAvailabilityService

router = APIRouter(prefix="/doctors", tags=["availability"])

_staff = require_roles(Role.ADMIN, Role.DOCTOR, Role.STAFF)


async def _may_edit(
    doctor_id: str,
    actor: Actor = Depends(require_roles(Role.ADMIN, Role.DOCTOR)),
    service: DoctorAvailabilityService = Depends(get_availability_service),
) -> None:
    """Admins edit any schedule, doctors only their own."""
    if actor.role == Role.DOCTOR:
        doctor = await service.get_doctor(doctor_id)
        if doctor.user_id != actor.user_id:
            raise PermissionDeniedError("Doctors can only edit their own availability")


@router.get("/{doctor_id}/availability", response_model=DoctorAvailabilityPublic, dependencies=[Depends(_staff)])
async def get_availability(
    doctor_id: str,
    service: DoctorAvailabilityService = Depends(get_availability_service),
) -> DoctorAvailabilityPublic:
    return await service.get_availability(doctor_id)


@router.put("/{doctor_id}/availability", response_model=DoctorAvailabilityPublic, dependencies=[Depends(_may_edit)])
async def save_weekly_availability(
    doctor_id: str,
    body: WeeklyAvailabilitySave,
    service: DoctorAvailabilityService = Depends(get_availability_service),
) -> DoctorAvailabilityPublic:
    return await service.save_weekly_availability(doctor_id, body)


@router.get(
    "/{doctor_id}/availability/{day}",
    response_model=DateAvailabilityPublic,
    dependencies=[Depends(get_current_actor)],
)
async def availability_for_date(
    doctor_id: str,
    day: date,
    free_only: bool = False,
    service: DoctorAvailabilityService = Depends(get_availability_service),
) -> DateAvailabilityPublic:
    """Intervals for one calendar day, after applying any date exception."""
    return await service.availability_for_date(doctor_id, day, free_only=free_only)


@router.post(
    "/{doctor_id}/availability/exceptions",
    response_model=DoctorAvailabilityPublic,
    dependencies=[Depends(_may_edit)],
)
async def add_date_exception(
    doctor_id: str,
    body: DateExceptionCreate,
    service: DoctorAvailabilityService = Depends(get_availability_service),
) -> DoctorAvailabilityPublic:
    return await service.add_date_exception(doctor_id, body)


@router.delete(
    "/{doctor_id}/availability/exceptions/{exception_id}",
    response_model=DoctorAvailabilityPublic,
    dependencies=[Depends(_may_edit)],
)
async def remove_date_exception(
    doctor_id: str,
    exception_id: str,
    service: DoctorAvailabilityService = Depends(get_availability_service),
) -> DoctorAvailabilityPublic:
    return await service.remove_date_exception(doctor_id, exception_id)
