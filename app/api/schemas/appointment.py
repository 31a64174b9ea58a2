from pydantic import BaseModel


class CancelAppointmentRequest(BaseModel):
    reason: str | None = None


class CompleteAppointmentRequest(BaseModel):
    notes: str | None = None


class NoShowRequest(BaseModel):
    reason: str | None = None
