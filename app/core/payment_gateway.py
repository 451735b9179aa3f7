"""Stripe payment gateway adapter.

All amounts are in minor currency units (cents) and currency codes are
lowercase ISO identifiers, matching what Stripe expects on the wire.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import stripe
import structlog

from app.config import Settings
from app.core.exceptions import (
    PaymentGatewayException,
    PaymentNotConfiguredException,
    WebhookSignatureException,
)

logger = structlog.get_logger()

EVENT_PAYMENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_PAYMENT_FAILED = "payment_intent.payment_failed"
EVENT_PAYMENT_CANCELED = "payment_intent.canceled"


@dataclass(frozen=True)
class PaymentIntent:
    """Gateway handle for an in-progress charge."""

    id: str
    status: str
    amount: int
    currency: str
    client_secret: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    latest_charge_id: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "PaymentIntent":
        """Build from a Stripe object or the plain dict inside a webhook event."""
        latest_charge = _field(payload, "latest_charge")
        if isinstance(latest_charge, dict):
            latest_charge = latest_charge.get("id")
        return cls(
            id=_field(payload, "id"),
            status=_field(payload, "status") or "",
            amount=int(_field(payload, "amount") or 0),
            currency=(_field(payload, "currency") or "").lower(),
            client_secret=_field(payload, "client_secret"),
            metadata=dict(_field(payload, "metadata") or {}),
            latest_charge_id=latest_charge,
        )


@dataclass(frozen=True)
class GatewayEvent:
    """A verified webhook event."""

    id: str
    type: str
    payment_intent: PaymentIntent | None
    created: int | None = None


@dataclass(frozen=True)
class GatewayRefund:
    """Result of a refund request."""

    id: str
    amount: int
    status: str


def _field(payload: Any, name: str) -> Any:
    if isinstance(payload, dict):
        return payload.get(name)
    return getattr(payload, name, None)


class StripePaymentGateway:
    """Thin async wrapper around the blocking Stripe SDK."""

    def __init__(self, api_key: str | None, webhook_tolerance_seconds: int = 300):
        """Initialize with the secret API key (None disables the gateway)."""
        self._api_key = api_key
        self._webhook_tolerance = webhook_tolerance_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripePaymentGateway":
        """Create the gateway from application settings."""
        return cls(settings.stripe_secret_key)

    @property
    def is_configured(self) -> bool:
        """Whether the gateway can be used at all."""
        return bool(self._api_key)

    def _require_configured(self) -> None:
        if not self.is_configured:
            raise PaymentNotConfiguredException()

    async def create_payment_intent(
        self,
        amount_minor_units: int,
        currency: str,
        metadata: dict[str, str],
    ) -> PaymentIntent:
        """
        Create a payment intent.

        Args:
            amount_minor_units: Amount in the currency's smallest unit
            currency: Lowercase ISO currency code
            metadata: Correlation ids echoed back on webhook events

        Returns:
            The created intent, including the client-side confirmation secret
        """
        self._require_configured()
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=amount_minor_units,
                currency=currency.lower(),
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                api_key=self._api_key,
            )
        except stripe.StripeError as e:
            logger.error("payment_intent_create_failed", error=str(e), metadata=metadata)
            raise PaymentGatewayException("Failed to create payment intent") from e

        return PaymentIntent.from_payload(intent)

    async def get_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        """Retrieve the current state of a payment intent."""
        self._require_configured()
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.retrieve,
                payment_intent_id,
                api_key=self._api_key,
            )
        except stripe.StripeError as e:
            logger.error(
                "payment_intent_retrieve_failed",
                error=str(e),
                payment_intent_id=payment_intent_id,
            )
            raise PaymentGatewayException("Failed to retrieve payment intent") from e

        return PaymentIntent.from_payload(intent)

    async def create_refund(
        self,
        payment_intent_id: str,
        amount_minor_units: int,
        reason: str | None = None,
    ) -> GatewayRefund:
        """Refund (part of) a captured payment intent."""
        self._require_configured()
        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create,
                payment_intent=payment_intent_id,
                amount=amount_minor_units,
                reason="requested_by_customer",
                metadata={"reason": reason or ""},
                api_key=self._api_key,
            )
        except stripe.StripeError as e:
            logger.error(
                "refund_create_failed",
                error=str(e),
                payment_intent_id=payment_intent_id,
                amount=amount_minor_units,
            )
            raise PaymentGatewayException("Failed to create refund") from e

        return GatewayRefund(
            id=_field(refund, "id"),
            amount=int(_field(refund, "amount") or amount_minor_units),
            status=_field(refund, "status") or "",
        )

    def construct_event(
        self,
        raw_body: bytes,
        signature_header: str | None,
        webhook_secret: str | None,
    ) -> GatewayEvent:
        """
        Verify and decode a webhook delivery.

        Args:
            raw_body: The unparsed request body exactly as received
            signature_header: Value of the ``Stripe-Signature`` header
            webhook_secret: Endpoint signing secret

        Returns:
            The verified event

        Raises:
            WebhookSignatureException: If the payload cannot be authenticated
        """
        if not webhook_secret or not signature_header:
            raise WebhookSignatureException("Missing stripe-signature or webhook secret")

        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise WebhookSignatureException("Webhook payload is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                webhook_secret,
                self._webhook_tolerance,
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureException(f"Webhook Error: {e}") from e

        try:
            body = json.loads(payload)
        except ValueError as e:
            raise WebhookSignatureException("Webhook payload is not valid JSON") from e

        data_object = (body.get("data") or {}).get("object") or {}
        intent = None
        if data_object.get("object") == "payment_intent":
            intent = PaymentIntent.from_payload(data_object)

        return GatewayEvent(
            id=body.get("id", ""),
            type=body.get("type", ""),
            payment_intent=intent,
            created=body.get("created"),
        )
