"""Appointment schemas for request/response validation."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from app.schemas.payments import RefundDecision
from app.schemas.users import UserRole


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    PENDING = "PENDING"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    CONFIRMED = "CONFIRMED"
    OVERFLOW = "OVERFLOW"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW}
)


class AppointmentPaymentStatus(str, Enum):
    """Payment state tracked on the appointment itself."""

    UNPAID = "UNPAID"
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PAID = "PAID"


class PaymentProvider(str, Enum):
    """How an appointment was paid for."""

    STRIPE = "STRIPE"
    CASH = "CASH"
    ESEWA = "ESEWA"


class RefundStatus(str, Enum):
    """Outcome of the refund side effect of a cancellation."""

    NOT_APPLICABLE = "NOT_APPLICABLE"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


class AppointmentResponse(BaseModel):
    """Schema for appointment response."""

    id: UUID
    patient_id: UUID
    doctor_id: UUID
    schedule_id: UUID | None = None
    slot_id: UUID | None = None
    start_time: datetime
    end_time: datetime
    status: AppointmentStatus
    payment_status: AppointmentPaymentStatus
    payment_provider: PaymentProvider | None = None
    payment_intent_id: str | None = None
    paid_at: datetime | None = None
    queue_number: int | None = None
    notes: str | None = None
    is_archived: bool = False
    rescheduled_from_id: UUID | None = None
    cancelled_by: UserRole | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AppointmentListResponse(BaseModel):
    """Schema for paginated appointment list response."""

    total: int
    page: int
    page_size: int
    items: list[AppointmentResponse]


class AppointmentFilters(BaseModel):
    """Schema for appointment filtering."""

    status: AppointmentStatus | None = None
    doctor_id: UUID | None = None
    schedule_id: UUID | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    include_archived: bool = False
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class AppointmentStatusUpdate(BaseModel):
    """Schema for updating appointment status."""

    status: AppointmentStatus
    reason: str | None = Field(None, max_length=1000)


class CancelAppointmentRequest(BaseModel):
    """Schema for cancelling an appointment."""

    reason: str | None = Field(None, max_length=1000)


class CancelAppointmentResponse(BaseModel):
    """Cancelled appointment together with its refund outcome."""

    appointment: AppointmentResponse
    refund_decision: RefundDecision
    refund_status: RefundStatus = RefundStatus.NOT_APPLICABLE
    refund_error: str | None = None


class RescheduleAppointmentRequest(BaseModel):
    """Schema for moving an appointment to another slot."""

    new_slot_id: UUID
    reason: str | None = Field(None, max_length=1000)
