"""User schemas for request/response validation."""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class UserRole(str, Enum):
    """Closed set of actor roles."""

    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"
    ADMIN = "ADMIN"


class CurrentUser(BaseModel):
    """Authenticated actor performing a request."""

    id: UUID
    role: UserRole
    # Doctor profile id when role is DOCTOR
    doctor_id: UUID | None = None
