from datetime import date, datetime

from sqlmodel import Field, SQLModel

from app.models.common import new_object_id, utc_naive_now


class Patient(SQLModel, table=True):
    __tablename__ = "patients"
    id: str = Field(default_factory=new_object_id, primary_key=True, max_length=24)
    first_name: str
    last_name: str
    id_type: str
    id_number: str = Field(unique=True, index=True)
    phone: str = Field(index=True)
    email: str | None = Field(default=None, index=True)
    birth_date: date | None = None
    hospital: str | None = None
    has_insurance: bool = False
    insurance_name: str | None = None
    policy_number: str | None = None
    visible: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=utc_naive_now)
    updated_at: datetime = Field(default_factory=utc_naive_now)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"
