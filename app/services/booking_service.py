"""Capacity booking engine: payment-gated and staff-assisted bookings."""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AppException,
    ConflictException,
    ForbiddenException,
    InvalidAmountException,
    NotFoundException,
    PaymentNotConfiguredException,
    ValidationException,
)
from app.core.payment_gateway import StripePaymentGateway
from app.database import TransactionalStore, integrity_error_mentions
from app.models.appointments import appointments
from app.models.doctors import doctors
from app.models.schedules import schedules
from app.models.users import users
from app.schemas.appointments import (
    AppointmentPaymentStatus,
    AppointmentStatus,
    PaymentProvider,
)
from app.schemas.bookings import (
    BookingStartResponse,
    ManualBookingRequest,
    ManualBookingResponse,
)
from app.schemas.users import CurrentUser, UserRole
from app.services.payment_service import to_minor_units
from app.services.reminder_service import ReminderService
from app.services.schedule_service import (
    count_confirmed_for_schedule,
    lock_schedule,
    next_queue_number,
    schedule_window_utc,
)

logger = structlog.get_logger()

QUEUE_NUMBER_TAKEN = (
    "appointments_schedule_queue_number_key",
    "appointments.schedule_id, appointments.queue_number",
)
PAYMENT_INTENT_TAKEN = (
    "appointments_live_payment_intent_key",
    "appointments.payment_intent_id",
)


class BookingService:
    """Service for reserving queue positions on capacity schedules."""

    def __init__(
        self,
        store: TransactionalStore,
        gateway: StripePaymentGateway,
        currency: str = "usd",
        timezone: str = "UTC",
        reminders: ReminderService | None = None,
    ):
        """Initialize service with its collaborators."""
        self.store = store
        self.gateway = gateway
        self.currency = currency.lower()
        self.tz = ZoneInfo(timezone)
        self.reminders = reminders

    def _window(self, schedule: dict[str, Any]) -> tuple[datetime, datetime]:
        return schedule_window_utc(
            schedule["date"], schedule["start_time"], schedule["end_time"], self.tz
        )

    def _assert_open(self, schedule: dict[str, Any], now: datetime) -> tuple[datetime, datetime]:
        start, end = self._window(schedule)
        if end <= now:
            raise ValidationException(
                "This schedule is in the past. Please choose an upcoming date."
            )
        return start, end

    async def start_booking(
        self,
        schedule_id: UUID,
        patient_id: UUID,
        now: datetime | None = None,
    ) -> BookingStartResponse:
        """
        Start a payment-gated booking.

        The appointment is reserved as PENDING_PAYMENT before any capacity is
        consumed; admission is decided when the payment webhook arrives.

        Args:
            schedule_id: Capacity schedule to book
            patient_id: Patient making the booking
            now: Override for the current time

        Returns:
            Gateway client secret and the reserved appointment id

        Raises:
            NotFoundException: Unknown schedule or doctor
            ValidationException: Schedule already over
            ConflictException: Schedule visibly full already
            PaymentNotConfiguredException: Gateway has no credentials
            InvalidAmountException: Doctor has no price configured
        """
        now = now or datetime.now(UTC)

        async def _reserve(session: AsyncSession) -> dict[str, Any]:
            result = await session.execute(
                select(schedules, doctors.c.consultation_fee)
                .join(doctors, doctors.c.id == schedules.c.doctor_id)
                .where(schedules.c.id == schedule_id)
            )
            row = result.mappings().first()
            if row is None:
                raise NotFoundException("Schedule not found")
            schedule = dict(row)

            start, end = self._assert_open(schedule, now)

            # Early rejection only; admission is decided at confirmation
            confirmed = await count_confirmed_for_schedule(session, schedule_id)
            if confirmed >= schedule["max_patients"]:
                raise ConflictException(
                    "This schedule window is full. Please choose another time."
                )

            if not self.gateway.is_configured:
                raise PaymentNotConfiguredException(
                    "Online payment is not available. Please contact the clinic."
                )

            fee = schedule["consultation_fee"]
            if fee is None or to_minor_units(fee) <= 0:
                raise InvalidAmountException(
                    "Appointment price must be greater than zero. "
                    "Please contact the clinic to configure pricing."
                )

            insert_result = await session.execute(
                insert(appointments)
                .values(
                    patient_id=patient_id,
                    doctor_id=schedule["doctor_id"],
                    schedule_id=schedule_id,
                    start_time=start,
                    end_time=end,
                    status=AppointmentStatus.PENDING_PAYMENT.value,
                    payment_status=AppointmentPaymentStatus.PENDING.value,
                    payment_provider=PaymentProvider.STRIPE.value,
                )
                .returning(appointments.c.id)
            )
            return {
                "appointment_id": insert_result.scalar_one(),
                "doctor_id": schedule["doctor_id"],
                "amount": to_minor_units(fee),
            }

        reservation = await self.store.run_in_transaction(_reserve)
        appointment_id = reservation["appointment_id"]

        try:
            intent = await self.gateway.create_payment_intent(
                amount_minor_units=reservation["amount"],
                currency=self.currency,
                metadata={
                    "scheduleId": str(schedule_id),
                    "doctorId": str(reservation["doctor_id"]),
                    "patientId": str(patient_id),
                    "appointmentId": str(appointment_id),
                },
            )
        except AppException:
            await self._abandon_reservation(appointment_id)
            raise

        async def _attach_intent(session: AsyncSession) -> None:
            await session.execute(
                update(appointments)
                .where(appointments.c.id == appointment_id)
                .values(payment_intent_id=intent.id)
            )

        try:
            await self.store.run_in_transaction(_attach_intent)
        except IntegrityError as e:
            await self._abandon_reservation(appointment_id)
            if not integrity_error_mentions(e, *PAYMENT_INTENT_TAKEN):
                raise
            raise ConflictException("Payment intent is already attached to an appointment") from e

        logger.info(
            "booking_started",
            appointment_id=str(appointment_id),
            schedule_id=str(schedule_id),
            patient_id=str(patient_id),
            payment_intent_id=intent.id,
            amount=reservation["amount"],
            currency=self.currency,
        )

        return BookingStartResponse(
            client_secret=intent.client_secret or "",
            appointment_id=appointment_id,
        )

    async def _abandon_reservation(self, appointment_id: UUID) -> None:
        async def _cancel(session: AsyncSession) -> None:
            await session.execute(
                update(appointments)
                .where(appointments.c.id == appointment_id)
                .values(
                    status=AppointmentStatus.CANCELLED.value,
                    payment_status=AppointmentPaymentStatus.UNPAID.value,
                )
            )

        await self.store.run_in_transaction(_cancel)
        logger.warning("booking_abandoned", appointment_id=str(appointment_id))

    async def create_manual_booking(
        self,
        data: ManualBookingRequest,
        actor: CurrentUser | None = None,
        now: datetime | None = None,
    ) -> ManualBookingResponse:
        """
        Create an already-paid, confirmed booking on behalf of a patient.

        Count, capacity check and insert run in one transaction holding the
        schedule row lock.

        Raises:
            NotFoundException: Unknown schedule or patient
            ValidationException: Schedule already over
            ConflictException: Schedule is full
        """
        now = now or datetime.now(UTC)

        async def _book(session: AsyncSession) -> dict[str, Any]:
            schedule = await lock_schedule(session, data.schedule_id)
            if schedule is None:
                raise NotFoundException("Schedule not found")
            if (
                actor is not None
                and actor.role == UserRole.DOCTOR
                and schedule["doctor_id"] != actor.doctor_id
            ):
                raise ForbiddenException("You can only book on your own schedules")

            start, end = self._assert_open(schedule, now)

            patient = await session.execute(
                select(users.c.id, users.c.role).where(users.c.id == data.patient_id)
            )
            patient_row = patient.first()
            if patient_row is None or patient_row.role != UserRole.PATIENT.value:
                raise NotFoundException("Patient not found")

            confirmed = await count_confirmed_for_schedule(session, data.schedule_id)
            if confirmed >= schedule["max_patients"]:
                logger.info(
                    "manual_booking_rejected_full",
                    schedule_id=str(data.schedule_id),
                    confirmed_count=confirmed,
                    max_patients=schedule["max_patients"],
                )
                raise ConflictException("This schedule is full.")

            queue_number = await next_queue_number(session, data.schedule_id, confirmed)
            result = await session.execute(
                insert(appointments)
                .values(
                    patient_id=data.patient_id,
                    doctor_id=schedule["doctor_id"],
                    schedule_id=data.schedule_id,
                    start_time=start,
                    end_time=end,
                    status=AppointmentStatus.CONFIRMED.value,
                    payment_status=AppointmentPaymentStatus.PAID.value,
                    payment_provider=data.payment_provider.value,
                    paid_at=now,
                    queue_number=queue_number,
                    notes=data.note,
                )
                .returning(appointments.c.id, appointments.c.queue_number, appointments.c.start_time)
            )
            return dict(result.mappings().one())

        try:
            row = await self.store.run_in_transaction(_book)
        except IntegrityError as e:
            if not integrity_error_mentions(e, *QUEUE_NUMBER_TAKEN):
                raise
            logger.warning(
                "manual_booking_conflict",
                schedule_id=str(data.schedule_id),
                error=str(e.orig),
            )
            raise ConflictException("This schedule is full.") from e

        logger.info(
            "manual_booking_created",
            appointment_id=str(row["id"]),
            schedule_id=str(data.schedule_id),
            patient_id=str(data.patient_id),
            queue_number=row["queue_number"],
            payment_provider=data.payment_provider.value,
        )

        await self._schedule_reminder(row["id"], row["start_time"], now)

        return ManualBookingResponse(id=row["id"], queue_number=row["queue_number"])

    async def _schedule_reminder(
        self, appointment_id: UUID, start_time: datetime, now: datetime
    ) -> None:
        if self.reminders is None:
            return
        try:
            await self.reminders.create_reminder(appointment_id, start_time, now=now)
        except Exception as e:
            # Reminder failure must not fail the booking
            logger.warning(
                "reminder_schedule_failed",
                appointment_id=str(appointment_id),
                error=str(e),
            )
