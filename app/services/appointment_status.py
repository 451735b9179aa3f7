"""Appointment status transition validation."""

from datetime import datetime

from app.core.exceptions import ValidationException
from app.schemas.appointments import TERMINAL_STATUSES, AppointmentStatus

# Allowed targets per non-terminal state
ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.PENDING_PAYMENT: frozenset(
        {
            AppointmentStatus.CONFIRMED,
            AppointmentStatus.OVERFLOW,
            AppointmentStatus.CANCELLED,
        }
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {
            AppointmentStatus.COMPLETED,
            AppointmentStatus.CANCELLED,
            AppointmentStatus.NO_SHOW,
        }
    ),
    AppointmentStatus.OVERFLOW: frozenset({AppointmentStatus.CANCELLED}),
}


def terminal_state_error(status: AppointmentStatus) -> ValidationException:
    """Error raised for any attempt to change a finished appointment."""
    return ValidationException(
        f"Appointment is already {status.value}; no further changes allowed."
    )


def assert_valid_status_transition(
    current_status: AppointmentStatus,
    next_status: AppointmentStatus,
    appointment_start: datetime,
    now: datetime,
) -> None:
    """
    Validate that a status transition is allowed.

    Rules:
    - CANCELLED, COMPLETED and NO_SHOW are terminal.
    - Same-status updates are no-ops.
    - PENDING -> CONFIRMED only while the appointment has not started.
    - CONFIRMED -> COMPLETED / NO_SHOW only once the appointment has started.
    - PENDING_PAYMENT -> CONFIRMED / OVERFLOW is reserved for the payment webhook.

    Raises:
        ValidationException: If the transition is not allowed
    """
    if current_status in TERMINAL_STATUSES:
        raise terminal_state_error(current_status)

    if current_status == next_status:
        return

    if next_status not in ALLOWED_TRANSITIONS.get(current_status, frozenset()):
        if next_status == AppointmentStatus.COMPLETED:
            raise ValidationException("Cannot complete an unconfirmed appointment.")
        raise ValidationException(
            f"Invalid status transition from {current_status.value} to {next_status.value}."
        )

    if current_status == AppointmentStatus.PENDING_PAYMENT and next_status in (
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.OVERFLOW,
    ):
        raise ValidationException(
            "Appointments awaiting payment are confirmed by the payment gateway."
        )

    if next_status == AppointmentStatus.CONFIRMED and now > appointment_start:
        raise ValidationException("Cannot confirm a past appointment.")

    if next_status == AppointmentStatus.COMPLETED and now < appointment_start:
        raise ValidationException("Cannot complete an appointment that hasn't started.")

    if next_status == AppointmentStatus.NO_SHOW and now < appointment_start:
        raise ValidationException("Cannot mark a no-show before the appointment has started.")
