"""Create users, doctors, schedules, slots, appointments, payments, reminders and webhook ledger.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id", postgresql.UUID(), server_default=sa.text("gen_random_uuid()"), nullable=False
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    """Upgrade database schema."""
    # Enable pgcrypto extension
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    op.create_table(
        "users",
        _uuid_pk(),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("role", sa.Text(), server_default="PATIENT", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("role IN ('PATIENT', 'DOCTOR', 'ADMIN')", name="users_role_check"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "doctors",
        _uuid_pk(),
        sa.Column("user_id", postgresql.UUID(), nullable=False),
        sa.Column("specialization", sa.String(length=200), nullable=True),
        sa.Column("bio", sa.Text(), nullable=True),
        sa.Column("consultation_fee", sa.Numeric(10, 2), nullable=True),
        sa.Column("is_verified", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_doctors_user_id", "doctors", ["user_id"], unique=True)
    op.create_index("ix_doctors_specialization", "doctors", ["specialization"])

    op.create_table(
        "schedules",
        _uuid_pk(),
        sa.Column("doctor_id", postgresql.UUID(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.String(length=5), nullable=False),
        sa.Column("end_time", sa.String(length=5), nullable=False),
        sa.Column("max_patients", sa.Integer(), nullable=False),
        sa.Column("created_by_id", postgresql.UUID(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("max_patients >= 1", name="schedules_max_patients_check"),
        sa.ForeignKeyConstraint(["doctor_id"], ["doctors.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint(
            "doctor_id", "date", "start_time", "end_time", name="schedules_doctor_window_key"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_schedules_doctor_id", "schedules", ["doctor_id"])
    op.create_index("schedules_doctor_date_idx", "schedules", ["doctor_id", "date"])

    op.create_table(
        "slots",
        _uuid_pk(),
        sa.Column("doctor_id", postgresql.UUID(), nullable=False),
        sa.Column("start_time", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("end_time", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("status", sa.Text(), server_default="AVAILABLE", nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('AVAILABLE', 'BOOKED', 'BLOCKED')", name="slots_status_check"
        ),
        sa.ForeignKeyConstraint(["doctor_id"], ["doctors.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_slots_doctor_id", "slots", ["doctor_id"])

    op.create_table(
        "appointments",
        _uuid_pk(),
        sa.Column("patient_id", postgresql.UUID(), nullable=False),
        sa.Column("doctor_id", postgresql.UUID(), nullable=False),
        sa.Column("schedule_id", postgresql.UUID(), nullable=True),
        sa.Column("slot_id", postgresql.UUID(), nullable=True),
        sa.Column("start_time", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("end_time", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("status", sa.Text(), server_default="PENDING", nullable=False),
        sa.Column("payment_status", sa.Text(), server_default="UNPAID", nullable=False),
        sa.Column("payment_provider", sa.Text(), nullable=True),
        sa.Column("payment_intent_id", sa.Text(), nullable=True),
        sa.Column("paid_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("queue_number", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_archived", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("rescheduled_from_id", postgresql.UUID(), nullable=True),
        sa.Column("cancelled_by", sa.Text(), nullable=True),
        sa.Column("cancelled_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PENDING_PAYMENT', 'CONFIRMED', 'OVERFLOW', "
            "'COMPLETED', 'CANCELLED', 'NO_SHOW')",
            name="appointments_status_check",
        ),
        sa.CheckConstraint(
            "payment_status IN ('UNPAID', 'PENDING', 'PROCESSING', 'PAID')",
            name="appointments_payment_status_check",
        ),
        sa.CheckConstraint(
            "cancelled_by IS NULL OR cancelled_by IN ('PATIENT', 'DOCTOR', 'ADMIN')",
            name="appointments_cancelled_by_check",
        ),
        sa.ForeignKeyConstraint(["patient_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["doctor_id"], ["doctors.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["schedule_id"], ["schedules.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["slot_id"], ["slots.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["rescheduled_from_id"], ["appointments.id"], ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_appointments_schedule_id", "appointments", ["schedule_id"])
    op.create_index("ix_appointments_payment_intent_id", "appointments", ["payment_intent_id"])
    op.create_index("appointments_doctor_start_idx", "appointments", ["doctor_id", "start_time"])
    op.create_index("appointments_patient_idx", "appointments", ["patient_id"])
    op.create_index(
        "appointments_schedule_queue_number_key",
        "appointments",
        ["schedule_id", "queue_number"],
        unique=True,
    )
    op.create_index(
        "appointments_live_payment_intent_key",
        "appointments",
        ["payment_intent_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'CANCELLED'"),
    )

    op.create_table(
        "payments",
        _uuid_pk(),
        sa.Column("appointment_id", postgresql.UUID(), nullable=True),
        sa.Column("patient_id", postgresql.UUID(), nullable=False),
        sa.Column("doctor_id", postgresql.UUID(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.Text(), server_default="usd", nullable=False),
        sa.Column("status", sa.Text(), server_default="PENDING", nullable=False),
        sa.Column("external_intent_id", sa.Text(), nullable=False),
        sa.Column("external_charge_id", sa.Text(), nullable=True),
        sa.Column("refunded_amount", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("refund_id", sa.Text(), nullable=True),
        sa.Column("refunded_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("refunded_amount >= 0", name="payments_refunded_non_negative"),
        sa.CheckConstraint("refunded_amount <= amount", name="payments_refund_within_amount"),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', "
            "'REFUNDED', 'PARTIALLY_REFUNDED', 'REFUND_FAILED')",
            name="payments_status_check",
        ),
        sa.ForeignKeyConstraint(["appointment_id"], ["appointments.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("external_intent_id", name="payments_external_intent_id_key"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payments_appointment_id", "payments", ["appointment_id"])

    op.create_table(
        "reminders",
        _uuid_pk(),
        sa.Column("appointment_id", postgresql.UUID(), nullable=False),
        sa.Column("scheduled_for", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("sent_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("cancelled_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("reminder_type", sa.Text(), server_default="TWENTY_FOUR_HOUR", nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["appointment_id"], ["appointments.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("appointment_id", name="reminders_appointment_id_key"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_reminders_scheduled_for", "reminders", ["scheduled_for"])

    op.create_table(
        "webhook_events",
        sa.Column("event_id", sa.Text(), nullable=False),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("payment_intent_id", sa.Text(), nullable=True),
        sa.Column(
            "received_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index(
        "ix_webhook_events_payment_intent_id", "webhook_events", ["payment_intent_id"]
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("webhook_events")
    op.drop_table("reminders")
    op.drop_table("payments")
    op.drop_table("appointments")
    op.drop_table("slots")
    op.drop_table("schedules")
    op.drop_table("doctors")
    op.drop_table("users")
