"""Appointment service: reads, status updates and cancellation."""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import AppException, ForbiddenException, NotFoundException
from app.database import TransactionalStore
from app.models.appointments import appointments
from app.models.schedules import slots
from app.schemas.appointments import (
    TERMINAL_STATUSES,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentPaymentStatus,
    AppointmentResponse,
    AppointmentStatus,
    AppointmentStatusUpdate,
    CancelAppointmentResponse,
    RefundStatus,
)
from app.schemas.payments import RefundDecision
from app.schemas.schedules import SlotStatus
from app.schemas.users import CurrentUser, UserRole
from app.services.appointment_status import assert_valid_status_transition, terminal_state_error
from app.services.payment_service import PaymentService
from app.services.refund_policy import HOURS_THRESHOLD_FULL_REFUND, compute_refund_decision
from app.services.reminder_service import ReminderService

logger = structlog.get_logger()


def append_note(notes: str | None, line: str) -> str:
    """Append a line to appointment notes, keeping what is already there."""
    if notes:
        return f"{notes}\n\n{line}"
    return line


def authorize_appointment_access(
    appointment: dict[str, Any], actor: CurrentUser, action: str = "access"
) -> None:
    """
    Check that the actor may act on an appointment.

    Patients may act on their own appointments, doctors on appointments of
    their own practice, admins on any.

    Raises:
        ForbiddenException: If the actor has no claim on the appointment
    """
    match actor.role:
        case UserRole.ADMIN:
            return
        case UserRole.PATIENT:
            if appointment["patient_id"] != actor.id:
                raise ForbiddenException(f"You can only {action} your own appointments")
        case UserRole.DOCTOR:
            if actor.doctor_id is None or appointment["doctor_id"] != actor.doctor_id:
                raise ForbiddenException(
                    f"You can only {action} appointments of your own practice"
                )
        case _:
            raise ForbiddenException("Unknown role")


async def get_appointment_for_update(
    session: AsyncSession, appointment_id: UUID
) -> dict[str, Any]:
    """Load an appointment with a row lock, or raise NotFoundException."""
    result = await session.execute(
        select(appointments).where(appointments.c.id == appointment_id).with_for_update()
    )
    row = result.mappings().first()
    if row is None:
        raise NotFoundException("Appointment not found")
    return dict(row)


class AppointmentService:
    """Service for managing appointments."""

    def __init__(
        self,
        store: TransactionalStore,
        payments: PaymentService | None = None,
        reminders: ReminderService | None = None,
        full_refund_hours: int = HOURS_THRESHOLD_FULL_REFUND,
    ):
        """Initialize service with the transactional store and side-effect services."""
        self.store = store
        self.payments = payments
        self.reminders = reminders
        self.full_refund_hours = full_refund_hours

    async def get_appointment(
        self,
        appointment_id: UUID,
        actor: CurrentUser,
    ) -> AppointmentResponse:
        """
        Get appointment by ID.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If user doesn't have access
        """

        async def _get(session: AsyncSession) -> dict[str, Any] | None:
            result = await session.execute(
                select(appointments).where(appointments.c.id == appointment_id)
            )
            row = result.mappings().first()
            return dict(row) if row else None

        row = await self.store.run_in_transaction(_get)
        if row is None:
            raise NotFoundException("Appointment not found")

        authorize_appointment_access(row, actor)
        return AppointmentResponse.model_validate(row)

    async def list_appointments(
        self,
        actor: CurrentUser,
        filters: AppointmentFilters,
    ) -> AppointmentListResponse:
        """
        List appointments visible to the actor, with filtering and pagination.

        Patients see their own appointments, doctors those of their practice.
        """
        conditions = []

        match actor.role:
            case UserRole.PATIENT:
                conditions.append(appointments.c.patient_id == actor.id)
            case UserRole.DOCTOR:
                if actor.doctor_id is None:
                    raise ForbiddenException("Doctor profile not found")
                conditions.append(appointments.c.doctor_id == actor.doctor_id)
            case UserRole.ADMIN:
                pass

        if filters.status:
            conditions.append(appointments.c.status == filters.status.value)

        if filters.doctor_id:
            conditions.append(appointments.c.doctor_id == filters.doctor_id)

        if filters.schedule_id:
            conditions.append(appointments.c.schedule_id == filters.schedule_id)

        if filters.from_date:
            conditions.append(appointments.c.start_time >= filters.from_date)

        if filters.to_date:
            conditions.append(appointments.c.start_time <= filters.to_date)

        if not filters.include_archived:
            conditions.append(appointments.c.is_archived.is_(False))

        count_stmt = select(func.count()).select_from(appointments).where(*conditions)

        offset = (filters.page - 1) * filters.page_size
        stmt = (
            select(appointments)
            .where(*conditions)
            .order_by(appointments.c.start_time.desc())
            .limit(filters.page_size)
            .offset(offset)
        )

        async def _list(session: AsyncSession) -> AppointmentListResponse:
            total = (await session.execute(count_stmt)).scalar() or 0
            result = await session.execute(stmt)
            items = [AppointmentResponse.model_validate(dict(row)) for row in result.mappings()]
            return AppointmentListResponse(
                total=total,
                page=filters.page,
                page_size=filters.page_size,
                items=items,
            )

        return await self.store.run_in_transaction(_list)

    async def update_appointment_status(
        self,
        appointment_id: UUID,
        data: AppointmentStatusUpdate,
        actor: CurrentUser,
        now: datetime | None = None,
    ) -> AppointmentResponse:
        """
        Move an appointment along its status state machine.

        CANCELLED is delegated to ``cancel_appointment`` so the refund policy and
        audit fields always apply.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If the actor may not change the appointment
            ValidationException: If the transition is not allowed
        """
        if data.status == AppointmentStatus.CANCELLED:
            cancellation = await self.cancel_appointment(
                appointment_id, actor, data.reason, now=now
            )
            return cancellation.appointment

        now = now or datetime.now(UTC)

        async def _update(session: AsyncSession) -> tuple[dict[str, Any], bool]:
            appointment = await get_appointment_for_update(session, appointment_id)
            authorize_appointment_access(appointment, actor, action="update")
            if actor.role == UserRole.PATIENT:
                raise ForbiddenException("Patients can only cancel appointments")

            current = AppointmentStatus(appointment["status"])
            assert_valid_status_transition(current, data.status, appointment["start_time"], now)
            if current == data.status:
                return appointment, False

            result = await session.execute(
                update(appointments)
                .where(appointments.c.id == appointment_id)
                .values(status=data.status.value)
                .returning(appointments)
            )
            return dict(result.mappings().one()), True

        row, changed = await self.store.run_in_transaction(_update)
        if changed:
            logger.info(
                "appointment_status_updated",
                appointment_id=str(appointment_id),
                schedule_id=str(row["schedule_id"]) if row["schedule_id"] else None,
                status=row["status"],
                actor_id=str(actor.id),
                actor_role=actor.role.value,
            )
        return AppointmentResponse.model_validate(row)

    async def cancel_appointment(
        self,
        appointment_id: UUID,
        actor: CurrentUser,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> CancelAppointmentResponse:
        """
        Cancel an appointment and apply the refund policy.

        Cancelling an already cancelled appointment returns its current state
        and the same refund decision without any side effect. The status change
        commits before any refund is attempted; a refund failure is reported on
        the response and never undoes the cancellation.

        Args:
            appointment_id: Appointment ID
            actor: Acting user
            reason: Optional cancellation reason, appended to the notes
            now: Override for the current time

        Returns:
            The cancelled appointment, the refund decision and the refund outcome

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If the actor may not cancel the appointment
            ValidationException: If the appointment already finished
        """
        now = now or datetime.now(UTC)

        async def _cancel(session: AsyncSession) -> tuple[dict[str, Any], RefundDecision, bool]:
            appointment = await get_appointment_for_update(session, appointment_id)
            authorize_appointment_access(appointment, actor, action="cancel")

            status = AppointmentStatus(appointment["status"])
            if status == AppointmentStatus.CANCELLED:
                decision = compute_refund_decision(
                    UserRole(appointment["cancelled_by"] or actor.role),
                    appointment["cancelled_at"] or now,
                    appointment["start_time"],
                    self.full_refund_hours,
                )
                return appointment, decision, False

            if status in TERMINAL_STATUSES:
                raise terminal_state_error(status)

            decision = compute_refund_decision(
                actor.role, now, appointment["start_time"], self.full_refund_hours
            )

            note = f"Cancellation reason: {reason}" if reason else "Cancelled"
            result = await session.execute(
                update(appointments)
                .where(appointments.c.id == appointment_id)
                .values(
                    status=AppointmentStatus.CANCELLED.value,
                    cancelled_by=actor.role.value,
                    cancelled_at=now,
                    cancel_reason=reason,
                    notes=append_note(appointment["notes"], note),
                )
                .returning(appointments)
            )
            cancelled = dict(result.mappings().one())

            if appointment["slot_id"]:
                await session.execute(
                    update(slots)
                    .where(slots.c.id == appointment["slot_id"])
                    .values(status=SlotStatus.AVAILABLE.value)
                )

            return cancelled, decision, True

        row, decision, changed = await self.store.run_in_transaction(_cancel)
        response = CancelAppointmentResponse(
            appointment=AppointmentResponse.model_validate(row),
            refund_decision=decision,
        )
        if not changed:
            logger.info("appointment_already_cancelled", appointment_id=str(appointment_id))
            return response

        logger.info(
            "appointment_cancelled",
            appointment_id=str(appointment_id),
            schedule_id=str(row["schedule_id"]) if row["schedule_id"] else None,
            payment_intent_id=row["payment_intent_id"],
            cancelled_by=actor.role.value,
            refund_eligible=decision.eligible,
            refund_type=decision.type.value,
        )

        await self._cancel_reminder(appointment_id)

        if row["payment_status"] == AppointmentPaymentStatus.PAID.value:
            if decision.eligible:
                response.refund_status, response.refund_error = await self._refund(
                    row, decision
                )
            else:
                response.refund_status = RefundStatus.NOT_ELIGIBLE

        return response

    async def _refund(
        self, appointment: dict[str, Any], decision: RefundDecision
    ) -> tuple[RefundStatus, str | None]:
        if self.payments is None:
            return RefundStatus.NOT_APPLICABLE, None

        payment = await self.payments.get_refundable_payment_for_appointment(
            appointment["id"], appointment["payment_intent_id"]
        )
        if payment is None:
            # Paid outside the gateway (cash, manual)
            return RefundStatus.NOT_APPLICABLE, None

        try:
            await self.payments.process_refund(payment.id, reason=decision.reason)
        except AppException as e:
            logger.error(
                "refund_failed",
                appointment_id=str(appointment["id"]),
                payment_id=str(payment.id),
                payment_intent_id=payment.external_intent_id,
                error=e.message,
            )
            return RefundStatus.FAILED, e.message

        return RefundStatus.REFUNDED, None

    async def _cancel_reminder(self, appointment_id: UUID) -> None:
        if self.reminders is None:
            return
        try:
            await self.reminders.cancel_reminder(appointment_id)
        except Exception as e:
            logger.warning(
                "reminder_cancel_failed",
                appointment_id=str(appointment_id),
                error=str(e),
            )
