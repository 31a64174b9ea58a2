from app.models.tenant import Tenant, TenantCreate, TenantLocator, TenantPublic
from app.models.patient import Patient
from app.models.doctor import Doctor, DoctorAvailabilityPublic
from app.models.appointment import (
    Appointment,
    AppointmentCreate,
    AppointmentPublic,
    AppointmentState,
    AppointmentType,
    AppointmentUpdate,
)
from app.models.catalog import Hospital, Insurance, Specialty
from app.models.log import AuditLog
from app.models.meeting import Meeting

__all__ = [
    "Tenant",
    "TenantCreate",
    "TenantLocator",
    "TenantPublic",
    "Patient",
    "Doctor",
    "DoctorAvailabilityPublic",
    "Appointment",
    "AppointmentCreate",
    "AppointmentPublic",
    "AppointmentState",
    "AppointmentType",
    "AppointmentUpdate",
    "Hospital",
    "Insurance",
    "Specialty",
    "AuditLog",
    "Meeting",
]
