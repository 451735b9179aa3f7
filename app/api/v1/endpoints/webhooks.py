"""Payment gateway webhook endpoint."""

from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request, status

from app.dependencies import get_webhook_service
from app.schemas.payments import WebhookAck
from app.services.payment_webhook_service import PaymentWebhookService

router = APIRouter()

Webhooks = Annotated[PaymentWebhookService, Depends(get_webhook_service)]


@router.post(
    "/payment",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    summary="Receive payment gateway events",
)
async def payment_webhook(
    request: Request,
    service: Webhooks,
    stripe_signature: Annotated[str | None, Header(alias="stripe-signature")] = None,
) -> WebhookAck:
    """
    Receive a payment gateway event.

    The body is read raw because the signature covers the exact bytes sent.
    Unknown, duplicate and unrelated events are acknowledged with 200; a bad
    signature is rejected with 400 and nothing is written.
    """
    raw_body = await request.body()
    return await service.handle_webhook(raw_body, stripe_signature)
