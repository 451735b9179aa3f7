"""Schedule and slot schemas."""

import datetime as dt
import re
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class SlotStatus(str, Enum):
    """Slot status enumeration."""

    AVAILABLE = "AVAILABLE"
    BOOKED = "BOOKED"
    BLOCKED = "BLOCKED"


class ScheduleWindow(BaseModel):
    """Date plus HH:MM window shared by create and update."""

    date: dt.date
    start_time: str = Field(..., examples=["09:00"])
    end_time: str = Field(..., examples=["12:00"])
    max_patients: int = Field(..., ge=1)

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        """Validate HH:MM format."""
        v = v.strip()
        if not TIME_PATTERN.match(v):
            raise ValueError("Time must be in HH:MM format")
        return v


class ScheduleCreate(ScheduleWindow):
    """Schema for creating a capacity schedule."""

    doctor_id: UUID


class ScheduleUpdate(ScheduleWindow):
    """Schema for updating a capacity schedule."""


class ScheduleResponse(BaseModel):
    """Schema for schedule response."""

    id: UUID
    doctor_id: UUID
    date: dt.date
    start_time: str
    end_time: str
    max_patients: int
    created_by_id: UUID | None = None
    created_at: dt.datetime

    model_config = {"from_attributes": True}


class ScheduleWithCapacity(ScheduleResponse):
    """Schedule plus capacity derived from confirmed appointments."""

    confirmed_count: int
    remaining: int


class ScheduleFilters(BaseModel):
    """Schema for schedule filtering."""

    doctor_id: UUID | None = None
    date: dt.date | None = None
    start_date: dt.date | None = None
    end_date: dt.date | None = None


class SlotResponse(BaseModel):
    """Schema for slot response."""

    id: UUID
    doctor_id: UUID
    start_time: dt.datetime
    end_time: dt.datetime
    status: SlotStatus

    model_config = {"from_attributes": True}
