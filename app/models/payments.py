"""Payment, reminder and webhook ledger tables using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    Table,
    Text,
    Uuid,
    func,
    text,
)

from app.models.base import UTCDateTime, metadata, utcnow

# Gateway-linked financial records; amounts in minor currency units
payments = Table(
    "payments",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    # Set at most once, immutable afterwards
    Column(
        "appointment_id",
        Uuid,
        ForeignKey("appointments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    ),
    Column("patient_id", Uuid, nullable=False),
    Column("doctor_id", Uuid, nullable=False),
    Column("amount", Integer, nullable=False),
    Column("currency", Text, nullable=False, server_default=text("'usd'")),
    Column("status", Text, nullable=False, server_default=text("'PENDING'")),
    Column("external_intent_id", Text, nullable=False, unique=True),
    Column("external_charge_id", Text, nullable=True),
    Column("refunded_amount", Integer, nullable=False, server_default=text("0")),
    Column("refund_reason", Text, nullable=True),
    Column("refund_id", Text, nullable=True),
    Column("refunded_at", UTCDateTime, nullable=True),
    Column("created_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Column(
        "updated_at",
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    ),
    CheckConstraint("refunded_amount >= 0", name="payments_refunded_non_negative"),
    CheckConstraint("refunded_amount <= amount", name="payments_refund_within_amount"),
    CheckConstraint(
        "status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', "
        "'REFUNDED', 'PARTIALLY_REFUNDED', 'REFUND_FAILED')",
        name="payments_status_check",
    ),
)

reminders = Table(
    "reminders",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column(
        "appointment_id",
        Uuid,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    ),
    Column("scheduled_for", UTCDateTime, nullable=False, index=True),
    Column("sent_at", UTCDateTime, nullable=True),
    Column("cancelled_at", UTCDateTime, nullable=True),
    Column("reminder_type", Text, nullable=False, server_default=text("'TWENTY_FOUR_HOUR'")),
    Column("created_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Column(
        "updated_at",
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    ),
)

# Processed gateway events, keyed by the gateway's event id
webhook_events = Table(
    "webhook_events",
    metadata,
    Column("event_id", Text, primary_key=True),
    Column("event_type", Text, nullable=False),
    Column("payment_intent_id", Text, nullable=True, index=True),
    Column("received_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
)
