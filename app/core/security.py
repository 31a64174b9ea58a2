from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from jose import JWTError, jwt

from app.core.config import settings


class Role(StrEnum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    DOCTOR = "doctor"
    STAFF = "staff"
    PATIENT = "patient"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as bound by the identity service. The tenant binding is trusted."""

    user_id: str
    name: str
    role: str
    tenant_id: str | None = None

    @property
    def is_superadmin(self) -> bool:
        return self.role == Role.SUPERADMIN


def create_access_token(
    subject: str,
    *,
    name: str,
    role: str,
    tenant_id: str | None = None,
    expires_minutes: int | None = None,
) -> str:
    expire = datetime.now(UTC) + timedelta(minutes=expires_minutes or settings.access_token_expire_minutes)
    to_encode = {
        "sub": str(subject),
        "name": name,
        "role": role,
        "tenant_id": tenant_id,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> Actor | None:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    if payload.get("type") != "access":
        return None
    sub = payload.get("sub")
    role = payload.get("role")
    if not sub or not role:
        return None
    return Actor(
        user_id=str(sub),
        name=str(payload.get("name") or sub),
        role=str(role),
        tenant_id=payload.get("tenant_id"),
    )
