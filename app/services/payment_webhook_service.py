"""Reconciles asynchronous payment gateway events with capacity bookings.

Deliveries are at-least-once and may arrive out of order. Two guards make
processing idempotent, both checked in the transaction that performs the
write: the event id ledger, and the PENDING_PAYMENT status of the appointment.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.payment_gateway import (
    EVENT_PAYMENT_CANCELED,
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SUCCEEDED,
    GatewayEvent,
    PaymentIntent,
    StripePaymentGateway,
)
from app.database import TransactionalStore
from app.models.appointments import appointments
from app.models.payments import payments, webhook_events
from app.schemas.appointments import AppointmentPaymentStatus, AppointmentStatus
from app.schemas.payments import WebhookAck
from app.services.payment_service import record_completed_payment
from app.services.reminder_service import ReminderService
from app.services.schedule_service import (
    count_confirmed_for_schedule,
    lock_schedule,
    next_queue_number,
)

logger = structlog.get_logger()

HANDLED_EVENTS = frozenset({EVENT_PAYMENT_SUCCEEDED, EVENT_PAYMENT_FAILED, EVENT_PAYMENT_CANCELED})


async def _event_recorded(session: AsyncSession, event_id: str) -> bool:
    existing = await session.execute(
        select(webhook_events.c.event_id).where(webhook_events.c.event_id == event_id)
    )
    return existing.first() is not None


async def _claim_event(session: AsyncSession, event: GatewayEvent, intent: PaymentIntent) -> bool:
    """Record the event id; False when it was already processed."""
    if await _event_recorded(session, event.id):
        return False

    await session.execute(
        insert(webhook_events).values(
            event_id=event.id,
            event_type=event.type,
            payment_intent_id=intent.id,
        )
    )
    return True


async def _find_live_appointment(
    session: AsyncSession, payment_intent_id: str
) -> dict[str, Any] | None:
    result = await session.execute(
        select(appointments)
        .where(
            and_(
                appointments.c.payment_intent_id == payment_intent_id,
                appointments.c.status != AppointmentStatus.CANCELLED.value,
            )
        )
        .with_for_update()
    )
    row = result.mappings().first()
    return dict(row) if row else None


class PaymentWebhookService:
    """Service applying verified gateway events to appointments."""

    def __init__(
        self,
        store: TransactionalStore,
        gateway: StripePaymentGateway,
        webhook_secret: str | None,
        reminders: ReminderService | None = None,
    ):
        """Initialize service with its collaborators."""
        self.store = store
        self.gateway = gateway
        self.webhook_secret = webhook_secret
        self.reminders = reminders

    async def handle_webhook(
        self,
        raw_body: bytes,
        signature_header: str | None,
        now: datetime | None = None,
    ) -> WebhookAck:
        """
        Verify and apply a webhook delivery.

        Raises:
            WebhookSignatureException: If the delivery cannot be authenticated;
                nothing is written in that case
        """
        event = self.gateway.construct_event(raw_body, signature_header, self.webhook_secret)
        return await self.handle_event(event, now=now)

    async def handle_event(self, event: GatewayEvent, now: datetime | None = None) -> WebhookAck:
        """Apply an already verified event."""
        now = now or datetime.now(UTC)

        if event.type not in HANDLED_EVENTS or event.payment_intent is None:
            logger.info("webhook_event_ignored", event_id=event.id, event_type=event.type)
            return WebhookAck()

        try:
            if event.type == EVENT_PAYMENT_SUCCEEDED:
                await self._handle_succeeded(event, event.payment_intent, now)
            else:
                await self._handle_failed(event, event.payment_intent)
        except IntegrityError:
            # Only a concurrent delivery of the same event committing first is benign
            async def _recorded(session: AsyncSession) -> bool:
                return await _event_recorded(session, event.id)

            if not await self.store.run_in_transaction(_recorded):
                raise
            logger.info(
                "webhook_duplicate_event",
                event_id=event.id,
                payment_intent_id=event.payment_intent.id,
            )

        return WebhookAck()

    async def _handle_succeeded(
        self,
        event: GatewayEvent,
        intent: PaymentIntent,
        now: datetime,
    ) -> None:
        async def _reconcile(session: AsyncSession) -> dict[str, Any] | None:
            if not await _claim_event(session, event, intent):
                logger.info(
                    "webhook_duplicate_event",
                    event_id=event.id,
                    payment_intent_id=intent.id,
                )
                return None

            appointment = await _find_live_appointment(session, intent.id)
            if appointment is None:
                logger.warning(
                    "webhook_appointment_not_found",
                    event_id=event.id,
                    payment_intent_id=intent.id,
                )
                return None

            if appointment["status"] != AppointmentStatus.PENDING_PAYMENT.value:
                logger.info(
                    "webhook_already_processed",
                    event_id=event.id,
                    appointment_id=str(appointment["id"]),
                    payment_intent_id=intent.id,
                    status=appointment["status"],
                )
                return None

            values: dict[str, Any] = {
                "payment_status": AppointmentPaymentStatus.PAID.value,
                "paid_at": now,
            }
            schedule_id: UUID | None = appointment["schedule_id"]
            schedule = await lock_schedule(session, schedule_id) if schedule_id else None

            if schedule is None:
                # Schedule deleted under a pending reservation
                values["status"] = AppointmentStatus.OVERFLOW.value
                logger.warning(
                    "schedule_missing_after_payment",
                    appointment_id=str(appointment["id"]),
                    schedule_id=str(schedule_id) if schedule_id else None,
                    payment_intent_id=intent.id,
                )
            else:
                confirmed = await count_confirmed_for_schedule(session, schedule_id)
                if confirmed >= schedule["max_patients"]:
                    values["status"] = AppointmentStatus.OVERFLOW.value
                    logger.warning(
                        "overflow_after_payment",
                        appointment_id=str(appointment["id"]),
                        schedule_id=str(schedule_id),
                        payment_intent_id=intent.id,
                        confirmed_count=confirmed,
                        max_patients=schedule["max_patients"],
                    )
                else:
                    values["status"] = AppointmentStatus.CONFIRMED.value
                    values["queue_number"] = await next_queue_number(
                        session, schedule_id, confirmed
                    )

            result = await session.execute(
                update(appointments)
                .where(appointments.c.id == appointment["id"])
                .values(**values)
                .returning(appointments)
            )
            updated = dict(result.mappings().one())

            existing_payment = await session.execute(
                select(payments.c.id).where(payments.c.external_intent_id == intent.id)
            )
            if existing_payment.first() is None:
                await record_completed_payment(session, updated, intent)

            return updated

        updated = await self.store.run_in_transaction(_reconcile)
        if updated is None:
            return

        if updated["status"] == AppointmentStatus.CONFIRMED.value:
            logger.info(
                "token_assigned",
                appointment_id=str(updated["id"]),
                schedule_id=str(updated["schedule_id"]),
                payment_intent_id=intent.id,
                queue_number=updated["queue_number"],
            )
            await self._schedule_reminder(updated, now)

    async def _handle_failed(self, event: GatewayEvent, intent: PaymentIntent) -> None:
        async def _cancel(session: AsyncSession) -> dict[str, Any] | None:
            if not await _claim_event(session, event, intent):
                logger.info(
                    "webhook_duplicate_event",
                    event_id=event.id,
                    payment_intent_id=intent.id,
                )
                return None

            appointment = await _find_live_appointment(session, intent.id)
            if (
                appointment is None
                or appointment["status"] != AppointmentStatus.PENDING_PAYMENT.value
            ):
                return None

            await session.execute(
                update(appointments)
                .where(appointments.c.id == appointment["id"])
                .values(
                    status=AppointmentStatus.CANCELLED.value,
                    payment_status=AppointmentPaymentStatus.UNPAID.value,
                )
            )
            return appointment

        appointment = await self.store.run_in_transaction(_cancel)
        if appointment is not None:
            logger.info(
                "payment_failed_appointment_cancelled",
                event_id=event.id,
                event_type=event.type,
                appointment_id=str(appointment["id"]),
                schedule_id=str(appointment["schedule_id"]),
                payment_intent_id=intent.id,
            )

    async def _schedule_reminder(self, appointment: dict[str, Any], now: datetime) -> None:
        if self.reminders is None:
            return
        try:
            await self.reminders.create_reminder(
                appointment["id"], appointment["start_time"], now=now
            )
        except Exception as e:
            logger.warning(
                "reminder_schedule_failed",
                appointment_id=str(appointment["id"]),
                error=str(e),
            )
