"""Reminder schemas."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class ReminderType(str, Enum):
    """How long before the appointment the reminder fires."""

    TWENTY_FOUR_HOUR = "TWENTY_FOUR_HOUR"
    ONE_HOUR = "ONE_HOUR"

    @property
    def hours_before(self) -> int:
        """Lead time in hours."""
        return 24 if self is ReminderType.TWENTY_FOUR_HOUR else 1


class ReminderResponse(BaseModel):
    """Schema for reminder response."""

    id: UUID
    appointment_id: UUID
    scheduled_for: datetime
    reminder_type: ReminderType
    sent_at: datetime | None = None
    cancelled_at: datetime | None = None

    model_config = {"from_attributes": True}
