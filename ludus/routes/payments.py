# ludus/routes/payments.py
"""
Payment gateway callbacks

Endpoints:
    POST /webhook   - Moyasar payment events (HMAC-signed)
"""

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from ..api.dependencies import get_booking_service, get_settings
from ..core.config import Settings
from ..core.constants import MOYASAR_SIGNATURE_HEADER
from ..core.exceptions import ValidationException
from ..integrations.moyasar_client import verify_webhook_signature
from ..schemas.payment import PaymentWebhookAck
from ..services.booking_service import BookingService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


@router.post(
    "/webhook",
    response_model=PaymentWebhookAck,
    responses={400: {"description": "Unsigned, badly signed or unreadable event"}},
)
async def payment_webhook(
    request: Request,
    config: Settings = Depends(get_settings),
    booking_service: BookingService = Depends(get_booking_service),
) -> PaymentWebhookAck:
    """
    Reconcile a booking with a Moyasar payment event.

    The signature is an HMAC-SHA256 of the raw body under the webhook secret.
    Unsigned events are only accepted in mock mode. Events that match no
    booking are acknowledged so the gateway stops retrying them.
    """
    payload = await request.body()
    secret = config.moyasar_webhook_secret.get_secret_value()
    if secret:
        signature = request.headers.get(MOYASAR_SIGNATURE_HEADER, "")
        if not verify_webhook_signature(payload, signature, secret):
            logger.warning("Rejected payment webhook with a bad signature")
            raise ValidationException("Invalid webhook signature", code="INVALID_SIGNATURE")
    elif not config.use_fake_payments:
        logger.error("Payment webhook received but no webhook secret is configured")
        raise ValidationException(
            "Payment webhooks are not configured", code="WEBHOOK_NOT_CONFIGURED"
        )

    event = _parse_event(payload)
    data = event["data"]
    payment: Dict[str, Any] = data.get("object", data)

    logger.info(f"Payment webhook {event['type']} for payment {payment.get('id')}")
    await booking_service.apply_payment_event(event["type"], payment)
    return PaymentWebhookAck(received=True)


def _parse_event(payload: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(payload)
    except ValueError:
        raise ValidationException("Webhook body is not valid JSON", code="INVALID_WEBHOOK")
    if (
        not isinstance(event, dict)
        or not isinstance(event.get("type"), str)
        or not isinstance(event.get("data"), dict)
    ):
        raise ValidationException(
            "Webhook event needs a type and a data object", code="INVALID_WEBHOOK"
        )
    return event
