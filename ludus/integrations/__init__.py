"""Third-party integrations."""

from .moyasar_client import (
    FakeMoyasarClient,
    MoyasarClient,
    MoyasarError,
    MoyasarPaymentGateway,
    PaymentGateway,
)

__all__ = [
    "FakeMoyasarClient",
    "MoyasarClient",
    "MoyasarError",
    "MoyasarPaymentGateway",
    "PaymentGateway",
]
