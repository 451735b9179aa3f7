"""User model definition using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import Boolean, CheckConstraint, Column, Table, Text, Uuid, func, text

from app.models.base import UTCDateTime, metadata, utcnow

users = Table(
    "users",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("email", Text, nullable=False, unique=True, index=True),
    Column("full_name", Text),
    Column("phone", Text),
    # PATIENT / DOCTOR / ADMIN
    Column("role", Text, nullable=False, server_default=text("'PATIENT'")),
    Column("is_active", Boolean, nullable=False, server_default=text("true")),
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
    CheckConstraint("role IN ('PATIENT', 'DOCTOR', 'ADMIN')", name="users_role_check"),
)
