"""Moves appointments to another slot in one transaction."""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConflictException, NotFoundException, ValidationException
from app.database import TransactionalStore
from app.models.appointments import appointments
from app.models.schedules import slots
from app.schemas.appointments import (
    TERMINAL_STATUSES,
    AppointmentResponse,
    AppointmentStatus,
)
from app.schemas.schedules import SlotStatus
from app.schemas.users import CurrentUser
from app.services.appointment_service import (
    append_note,
    authorize_appointment_access,
    get_appointment_for_update,
)
from app.services.appointment_status import terminal_state_error
from app.services.reminder_service import ReminderService

logger = structlog.get_logger()

# Statuses that keep their confirmation when moved
CONFIRMED_LIKE = frozenset({AppointmentStatus.CONFIRMED, AppointmentStatus.OVERFLOW})


class RescheduleService:
    """Service for rescheduling appointments onto free slots.

    Releasing the old reservation and booking the new slot happen in the same
    transaction, so a failure on either side leaves both untouched. No refund
    policy applies: the original row is closed as CANCELLED with a note and a
    new appointment referencing it via ``rescheduled_from_id`` takes its place.
    """

    def __init__(self, store: TransactionalStore, reminders: ReminderService | None = None):
        """Initialize service with the transactional store and reminder service."""
        self.store = store
        self.reminders = reminders

    async def reschedule_appointment(
        self,
        appointment_id: UUID,
        new_slot_id: UUID,
        actor: CurrentUser,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> AppointmentResponse:
        """
        Move an appointment to another slot.

        Args:
            appointment_id: Appointment to move
            new_slot_id: Target slot
            actor: Acting user
            reason: Optional reason, kept in the notes
            now: Override for the current time

        Returns:
            The new appointment

        Raises:
            NotFoundException: Unknown appointment or slot
            ForbiddenException: Actor may not reschedule the appointment
            ValidationException: Appointment cannot move, or slot in the past or of another doctor
            ConflictException: Target slot is no longer available
        """
        now = now or datetime.now(UTC)

        async def _reschedule(session: AsyncSession) -> tuple[dict[str, Any], dict[str, Any]]:
            old = await get_appointment_for_update(session, appointment_id)
            authorize_appointment_access(old, actor, action="reschedule")

            status = AppointmentStatus(old["status"])
            if status in TERMINAL_STATUSES:
                raise terminal_state_error(status)
            if status == AppointmentStatus.PENDING_PAYMENT:
                raise ValidationException(
                    "Appointments awaiting payment cannot be rescheduled. "
                    "Complete or cancel the payment first."
                )

            result = await session.execute(
                select(slots).where(slots.c.id == new_slot_id).with_for_update()
            )
            slot = result.mappings().first()
            if slot is None:
                raise NotFoundException("Slot not found")
            if slot["id"] == old["slot_id"]:
                raise ValidationException("The appointment is already booked in this slot.")
            if slot["status"] != SlotStatus.AVAILABLE.value:
                raise ConflictException("The selected slot is no longer available.")
            if slot["doctor_id"] != old["doctor_id"]:
                raise ValidationException("The selected slot belongs to a different doctor.")
            if slot["start_time"] <= now:
                raise ValidationException("Cannot reschedule to a slot in the past.")

            moved_note = f"Rescheduled to {slot['start_time'].isoformat()}"
            if reason:
                moved_note = f"{moved_note}. Reason: {reason}"

            await session.execute(
                update(appointments)
                .where(appointments.c.id == appointment_id)
                .values(
                    status=AppointmentStatus.CANCELLED.value,
                    cancelled_by=actor.role.value,
                    cancelled_at=now,
                    cancel_reason=reason or "Rescheduled",
                    notes=append_note(old["notes"], moved_note),
                )
            )

            if old["slot_id"]:
                await session.execute(
                    update(slots)
                    .where(slots.c.id == old["slot_id"])
                    .values(status=SlotStatus.AVAILABLE.value)
                )

            await session.execute(
                update(slots)
                .where(slots.c.id == new_slot_id)
                .values(status=SlotStatus.BOOKED.value)
            )

            new_status = (
                AppointmentStatus.CONFIRMED if status in CONFIRMED_LIKE else AppointmentStatus.PENDING
            )
            inserted = await session.execute(
                insert(appointments)
                .values(
                    patient_id=old["patient_id"],
                    doctor_id=old["doctor_id"],
                    slot_id=new_slot_id,
                    start_time=slot["start_time"],
                    end_time=slot["end_time"],
                    status=new_status.value,
                    payment_status=old["payment_status"],
                    payment_provider=old["payment_provider"],
                    payment_intent_id=old["payment_intent_id"],
                    paid_at=old["paid_at"],
                    notes=append_note(
                        old["notes"],
                        f"Rescheduled from {old['start_time'].isoformat()}",
                    ),
                    rescheduled_from_id=appointment_id,
                )
                .returning(appointments)
            )
            return old, dict(inserted.mappings().one())

        old, new = await self.store.run_in_transaction(_reschedule)

        logger.info(
            "appointment_rescheduled",
            appointment_id=str(appointment_id),
            new_appointment_id=str(new["id"]),
            schedule_id=str(old["schedule_id"]) if old["schedule_id"] else None,
            old_slot_id=str(old["slot_id"]) if old["slot_id"] else None,
            new_slot_id=str(new_slot_id),
            payment_intent_id=new["payment_intent_id"],
            actor_role=actor.role.value,
        )

        await self._move_reminder(appointment_id, new, now)

        return AppointmentResponse.model_validate(new)

    async def _move_reminder(
        self, old_appointment_id: UUID, new: dict[str, Any], now: datetime
    ) -> None:
        if self.reminders is None:
            return
        # Reminder failures must not fail the reschedule
        try:
            await self.reminders.cancel_reminder(old_appointment_id, now=now)
            await self.reminders.update_reminder_for_reschedule(
                new["id"], new["start_time"], now=now
            )
        except Exception as e:
            logger.warning(
                "reminder_reschedule_failed",
                appointment_id=str(new["id"]),
                error=str(e),
            )
