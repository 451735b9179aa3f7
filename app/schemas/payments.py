"""Payment and refund schemas."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class PaymentStatus(str, Enum):
    """Lifecycle of a gateway-linked payment record."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    REFUND_FAILED = "REFUND_FAILED"


class RefundType(str, Enum):
    """Amount class of a refund."""

    FULL = "FULL"
    PARTIAL = "PARTIAL"
    NONE = "NONE"


class RefundDecision(BaseModel):
    """Refund eligibility computed for a cancellation."""

    eligible: bool
    type: RefundType
    reason: str

    model_config = {"frozen": True}


class PaymentResponse(BaseModel):
    """Schema for payment response."""

    id: UUID
    appointment_id: UUID | None
    patient_id: UUID
    doctor_id: UUID
    amount: int
    currency: str
    status: PaymentStatus
    external_intent_id: str
    external_charge_id: str | None = None
    refunded_amount: int
    refund_reason: str | None = None
    refund_id: str | None = None
    refunded_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class WebhookAck(BaseModel):
    """Acknowledgement returned to the payment gateway."""

    received: bool = True
