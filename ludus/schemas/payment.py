"""Payment webhook schemas."""

from .base import StandardizedModel


class PaymentWebhookAck(StandardizedModel):
    received: bool = True
