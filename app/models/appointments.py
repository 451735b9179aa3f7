"""Appointments table model using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    Table,
    Text,
    Uuid,
    func,
    text,
)

from app.models.base import UTCDateTime, metadata, utcnow

appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    # Ownership / references
    Column("patient_id", Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("doctor_id", Uuid, ForeignKey("doctors.id", ondelete="CASCADE"), nullable=False),
    Column(
        "schedule_id",
        Uuid,
        ForeignKey("schedules.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    ),
    Column("slot_id", Uuid, ForeignKey("slots.id", ondelete="SET NULL"), nullable=True),
    # Appointment window (UTC)
    Column("start_time", UTCDateTime, nullable=False),
    Column("end_time", UTCDateTime, nullable=False),
    # Status management
    Column("status", Text, nullable=False, server_default=text("'PENDING'")),
    Column("payment_status", Text, nullable=False, server_default=text("'UNPAID'")),
    Column("payment_provider", Text, nullable=True),
    Column("payment_intent_id", Text, nullable=True, index=True),
    Column("paid_at", UTCDateTime, nullable=True),
    # Assigned once on confirmation, never reassigned
    Column("queue_number", Integer, nullable=True),
    # Metadata
    Column("notes", Text, nullable=True),
    Column("is_archived", Boolean, nullable=False, server_default=text("false")),
    Column(
        "rescheduled_from_id",
        Uuid,
        ForeignKey("appointments.id", ondelete="SET NULL"),
        nullable=True,
    ),
    # Cancellation audit
    Column("cancelled_by", Text, nullable=True),
    Column("cancelled_at", UTCDateTime, nullable=True),
    Column("cancel_reason", Text, nullable=True),
    # Audit fields
    Column("created_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Column(
        "updated_at",
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    ),
    # Constraints
    CheckConstraint(
        "status IN ('PENDING', 'PENDING_PAYMENT', 'CONFIRMED', 'OVERFLOW', "
        "'COMPLETED', 'CANCELLED', 'NO_SHOW')",
        name="appointments_status_check",
    ),
    CheckConstraint(
        "payment_status IN ('UNPAID', 'PENDING', 'PROCESSING', 'PAID')",
        name="appointments_payment_status_check",
    ),
    CheckConstraint(
        "cancelled_by IS NULL OR cancelled_by IN ('PATIENT', 'DOCTOR', 'ADMIN')",
        name="appointments_cancelled_by_check",
    ),
    # NULL queue numbers (pending / overflow rows) never collide
    Index(
        "appointments_schedule_queue_number_key",
        "schedule_id",
        "queue_number",
        unique=True,
    ),
    # At most one live appointment per gateway payment intent
    Index(
        "appointments_live_payment_intent_key",
        "payment_intent_id",
        unique=True,
        postgresql_where=text("status <> 'CANCELLED'"),
        sqlite_where=text("status <> 'CANCELLED'"),
    ),
    Index("appointments_doctor_start_idx", "doctor_id", "start_time"),
    Index("appointments_patient_idx", "patient_id"),
)
