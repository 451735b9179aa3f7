"""Capacity schedule and time slot tables using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)

from app.models.base import UTCDateTime, metadata, utcnow

# Fixed-capacity windows. Consumed capacity is never stored here; it is the
# count of CONFIRMED appointments referencing the schedule.
schedules = Table(
    "schedules",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column(
        "doctor_id",
        Uuid,
        ForeignKey("doctors.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("date", Date, nullable=False),
    # HH:MM in the clinic timezone
    Column("start_time", String(5), nullable=False),
    Column("end_time", String(5), nullable=False),
    Column("max_patients", Integer, nullable=False),
    Column("created_by_id", Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    # Audit
    Column("created_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Column(
        "updated_at",
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    ),
    CheckConstraint("max_patients >= 1", name="schedules_max_patients_check"),
    UniqueConstraint(
        "doctor_id", "date", "start_time", "end_time", name="schedules_doctor_window_key"
    ),
    Index("schedules_doctor_date_idx", "doctor_id", "date"),
)

# Single-patient time slots, used as reschedule targets
slots = Table(
    "slots",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column(
        "doctor_id",
        Uuid,
        ForeignKey("doctors.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("start_time", UTCDateTime, nullable=False),
    Column("end_time", UTCDateTime, nullable=False),
    Column("status", Text, nullable=False, server_default=text("'AVAILABLE'")),
    Column("created_at", UTCDateTime, nullable=False, default=utcnow, server_default=func.now()),
    Column(
        "updated_at",
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    ),
    CheckConstraint("status IN ('AVAILABLE', 'BOOKED', 'BLOCKED')", name="slots_status_check"),
)
