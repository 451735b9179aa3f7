"""Payment records and refunds."""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    NotFoundException,
    PaymentGatewayException,
    PaymentNotConfiguredException,
    RefundFailedException,
    ValidationException,
)
from app.core.payment_gateway import PaymentIntent, StripePaymentGateway
from app.database import TransactionalStore
from app.models.payments import payments
from app.schemas.payments import PaymentResponse, PaymentStatus

logger = structlog.get_logger()

REFUNDABLE_STATUSES = (
    PaymentStatus.COMPLETED.value,
    PaymentStatus.PARTIALLY_REFUNDED.value,
    PaymentStatus.REFUND_FAILED.value,
)


def to_minor_units(amount: Any) -> int:
    """Convert a major-unit price (e.g. Decimal dollars) to minor units."""
    return int(round(float(amount) * 100))


async def record_completed_payment(
    session: AsyncSession,
    appointment: dict[str, Any],
    intent: PaymentIntent,
) -> dict[str, Any]:
    """
    Insert the payment row for a succeeded intent.

    Runs on the caller's session so the record commits together with the
    appointment transition it belongs to.
    """
    result = await session.execute(
        insert(payments)
        .values(
            appointment_id=appointment["id"],
            patient_id=appointment["patient_id"],
            doctor_id=appointment["doctor_id"],
            amount=intent.amount,
            currency=intent.currency,
            status=PaymentStatus.COMPLETED.value,
            external_intent_id=intent.id,
            external_charge_id=intent.latest_charge_id,
        )
        .returning(payments)
    )
    return dict(result.mappings().one())


class PaymentService:
    """Service for payment records and gateway refunds."""

    def __init__(self, store: TransactionalStore, gateway: StripePaymentGateway):
        """Initialize service with the transactional store and payment gateway."""
        self.store = store
        self.gateway = gateway

    async def get_refundable_payment_for_appointment(
        self,
        appointment_id: UUID,
        payment_intent_id: str | None = None,
    ) -> PaymentResponse | None:
        """
        Latest captured payment of an appointment that still has money to refund.

        A rescheduled appointment carries the payment intent of the original one
        while the payment row stays linked to the original, so the intent id is
        matched as well.
        """
        owner = payments.c.appointment_id == appointment_id
        if payment_intent_id:
            owner = or_(owner, payments.c.external_intent_id == payment_intent_id)
        stmt = (
            select(payments)
            .where(and_(owner, payments.c.status.in_(REFUNDABLE_STATUSES)))
            .order_by(payments.c.created_at.desc())
        )

        async def _get(session: AsyncSession) -> dict[str, Any] | None:
            result = await session.execute(stmt)
            row = result.mappings().first()
            return dict(row) if row else None

        row = await self.store.run_in_transaction(_get)
        return PaymentResponse.model_validate(row) if row else None

    async def process_refund(
        self,
        payment_id: UUID,
        reason: str | None = None,
        amount: int | None = None,
        now: datetime | None = None,
    ) -> PaymentResponse:
        """
        Refund a captured payment through the gateway.

        The payment is claimed (status PROCESSING) in its own transaction before
        the gateway is called, so two concurrent refunds of the same payment
        cannot both reach the gateway.

        Args:
            payment_id: Payment ID
            reason: Reason stored with the refund
            amount: Minor units to refund; defaults to everything not yet refunded
            now: Override for the current time

        Returns:
            Updated payment

        Raises:
            NotFoundException: Unknown payment
            ValidationException: Payment not refundable or amount out of range
            RefundFailedException: Gateway rejected the refund
        """
        now = now or datetime.now(UTC)

        async def _claim(session: AsyncSession) -> tuple[dict[str, Any], int]:
            result = await session.execute(
                select(payments).where(payments.c.id == payment_id).with_for_update()
            )
            payment = result.mappings().first()
            if payment is None:
                raise NotFoundException("Payment not found")

            if payment["status"] not in REFUNDABLE_STATUSES:
                raise ValidationException(
                    f"Cannot refund a payment with status {payment['status']}"
                )

            refundable = payment["amount"] - payment["refunded_amount"]
            refund_amount = refundable if amount is None else amount
            if refund_amount <= 0 or refund_amount > refundable:
                raise ValidationException(
                    f"Refund amount must be between 1 and {refundable} minor units"
                )

            await session.execute(
                update(payments)
                .where(payments.c.id == payment_id)
                .values(status=PaymentStatus.PROCESSING.value)
            )
            return dict(payment), refund_amount

        payment, refund_amount = await self.store.run_in_transaction(_claim)

        try:
            refund = await self.gateway.create_refund(
                payment["external_intent_id"], refund_amount, reason
            )
        except (PaymentGatewayException, PaymentNotConfiguredException) as e:

            async def _mark_failed(session: AsyncSession) -> None:
                await session.execute(
                    update(payments)
                    .where(payments.c.id == payment_id)
                    .values(status=PaymentStatus.REFUND_FAILED.value, refund_reason=reason)
                )

            await self.store.run_in_transaction(_mark_failed)
            logger.error(
                "refund_failed",
                payment_id=str(payment_id),
                appointment_id=str(payment["appointment_id"]),
                payment_intent_id=payment["external_intent_id"],
                amount=refund_amount,
                error=e.message,
            )
            raise RefundFailedException(f"Refund failed: {e.message}") from e

        refunded_total = payment["refunded_amount"] + refund.amount
        status = (
            PaymentStatus.REFUNDED
            if refunded_total >= payment["amount"]
            else PaymentStatus.PARTIALLY_REFUNDED
        )

        async def _complete(session: AsyncSession) -> dict[str, Any]:
            result = await session.execute(
                update(payments)
                .where(payments.c.id == payment_id)
                .values(
                    status=status.value,
                    refunded_amount=min(refunded_total, payment["amount"]),
                    refund_id=refund.id,
                    refund_reason=reason,
                    refunded_at=now,
                )
                .returning(payments)
            )
            return dict(result.mappings().one())

        row = await self.store.run_in_transaction(_complete)
        logger.info(
            "refund_processed",
            payment_id=str(payment_id),
            appointment_id=str(payment["appointment_id"]),
            payment_intent_id=payment["external_intent_id"],
            refund_id=refund.id,
            amount=refund.amount,
            status=status.value,
        )
        return PaymentResponse.model_validate(row)
