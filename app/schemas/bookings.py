"""Booking schemas for the capacity (queue) booking flows."""

from uuid import UUID

from pydantic import BaseModel, Field

from app.schemas.appointments import PaymentProvider


class BookingStartRequest(BaseModel):
    """Schema for starting a payment-gated booking."""

    schedule_id: UUID


class BookingStartResponse(BaseModel):
    """Client secret for the gateway plus the reserved appointment."""

    client_secret: str
    appointment_id: UUID


class ManualBookingRequest(BaseModel):
    """Schema for a staff-assisted, already-paid booking."""

    schedule_id: UUID
    patient_id: UUID
    payment_provider: PaymentProvider = PaymentProvider.CASH
    note: str | None = Field(None, max_length=1000)


class ManualBookingResponse(BaseModel):
    """Confirmed appointment id with its queue position."""

    id: UUID
    queue_number: int
