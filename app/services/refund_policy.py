"""Refund policy for appointment cancellations.

All timestamps are compared as UTC instants so daylight-saving and local
timezone shifts never change a decision.
"""

from datetime import UTC, datetime, timedelta

from app.schemas.payments import RefundDecision, RefundType
from app.schemas.users import UserRole

HOURS_THRESHOLD_FULL_REFUND = 24


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def compute_refund_decision(
    cancelled_by: UserRole,
    cancelled_at: datetime,
    appointment_start: datetime,
    full_refund_hours: int = HOURS_THRESHOLD_FULL_REFUND,
) -> RefundDecision:
    """
    Compute refund eligibility for a cancellation.

    Rules:
    - DOCTOR or ADMIN: full refund, regardless of timing.
    - PATIENT: full refund when cancelling at least ``full_refund_hours``
      before the start, otherwise none.

    Args:
        cancelled_by: Role of the acting user
        cancelled_at: Moment of cancellation
        appointment_start: Appointment start time

    Returns:
        The refund decision
    """
    match cancelled_by:
        case UserRole.DOCTOR | UserRole.ADMIN:
            return RefundDecision(
                eligible=True,
                type=RefundType.FULL,
                reason="Doctor or clinic cancellation: full refund per policy.",
            )
        case UserRole.PATIENT:
            notice = _as_utc(appointment_start) - _as_utc(cancelled_at)
            if notice >= timedelta(hours=full_refund_hours):
                return RefundDecision(
                    eligible=True,
                    type=RefundType.FULL,
                    reason=(
                        f"Cancelled at least {full_refund_hours} hours before "
                        "appointment: full refund."
                    ),
                )
            return RefundDecision(
                eligible=False,
                type=RefundType.NONE,
                reason=(
                    f"Cancelled less than {full_refund_hours} hours before "
                    "appointment: no refund per policy."
                ),
            )
        case _:
            return RefundDecision(
                eligible=False,
                type=RefundType.NONE,
                reason="Unknown canceller: no refund.",
            )
