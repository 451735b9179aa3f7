"""Doctor model definition using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import Boolean, Column, ForeignKey, Numeric, String, Table, Text, Uuid, func, text

from app.models.base import UTCDateTime, metadata, utcnow

doctors = Table(
    "doctors",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column(
        "user_id",
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    ),
    Column("specialization", String(200), index=True),
    Column("bio", Text),
    # Per-appointment price in major currency units; zero or NULL disables online booking
    Column("consultation_fee", Numeric(10, 2)),
    Column("is_verified", Boolean, nullable=False, server_default=text("false")),
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
)
