"""Moyasar payment gateway client and the booking-facing gateway adapter."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional, Protocol, Union, cast
from uuid import uuid4

import httpx
from pydantic import SecretStr

from ..core.constants import DEFAULT_CURRENCY
from ..core.enums import PaymentStatus

logger = logging.getLogger(__name__)

VALID_PAYMENT_METHODS = ("creditcard", "mada", "applepay", "stcpay", "sadad", "token")

# Gateway status -> local payment status; anything unknown is treated as pending
_STATUS_MAP: Dict[str, PaymentStatus] = {
    "paid": PaymentStatus.PAID,
    "captured": PaymentStatus.PAID,
    "failed": PaymentStatus.FAILED,
    "pending": PaymentStatus.PENDING,
    "initiated": PaymentStatus.PENDING,
    "authorized": PaymentStatus.PENDING,
    "refunded": PaymentStatus.REFUNDED,
    "partially_refunded": PaymentStatus.REFUNDED,
}


class MoyasarError(RuntimeError):
    """Raised when the Moyasar API responds with an error or cannot be reached."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        *,
        error_type: str | None = None,
        error_body: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type
        self.error_body = error_body


def to_halalas(amount: Union[Decimal, float, str]) -> int:
    """SAR -> halalas, rounded half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_halalas(halalas: int) -> Decimal:
    return (Decimal(halalas) / 100).quantize(Decimal("0.01"))


def map_payment_status(gateway_status: Optional[str]) -> PaymentStatus:
    return _STATUS_MAP.get((gateway_status or "").lower(), PaymentStatus.PENDING)


def verify_webhook_signature(payload: bytes, signature: str, secret: Optional[str]) -> bool:
    """Check an HMAC-SHA256 hex signature over the raw webhook body."""
    if not secret or not signature:
        return False
    computed = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(computed, signature)


class MoyasarClient:
    """Thin async client for the Moyasar REST API."""

    def __init__(
        self,
        *,
        secret_key: str | SecretStr,
        base_url: str = "https://api.moyasar.com/v1",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        secret_value = (
            secret_key.get_secret_value() if isinstance(secret_key, SecretStr) else secret_key
        )
        if not secret_value:
            raise ValueError("Moyasar secret key must be provided")

        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        # Moyasar uses HTTP Basic auth: secret key as username, blank password
        self._auth = httpx.BasicAuth(secret_value, "")

    async def create_payment(
        self,
        *,
        amount: Union[Decimal, float, str],
        description: str,
        source: Optional[Dict[str, Any]] = None,
        callback_url: Optional[str] = None,
        currency: str = DEFAULT_CURRENCY,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Create (and, for card tokens, capture) a payment."""
        body: Dict[str, Any] = {
            "amount": to_halalas(amount),
            "currency": currency,
            "description": description,
            "callback_url": callback_url,
            "source": source,
            "metadata": metadata or {},
        }
        body = {key: value for key, value in body.items() if value is not None}
        return await self.request("POST", "/payments", json_body=body)

    async def retrieve_payment(self, payment_id: str) -> Dict[str, Any]:
        if not payment_id:
            raise ValueError("payment_id must be provided")
        return await self.request("GET", f"/payments/{payment_id}")

    async def refund_payment(
        self,
        payment_id: str,
        *,
        amount: Union[Decimal, float, str],
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Refund part or all of a captured payment."""
        if not payment_id:
            raise ValueError("payment_id must be provided")
        body = {
            "amount": to_halalas(amount),
            "description": reason or "Booking cancellation refund",
        }
        return await self.request("POST", f"/payments/{payment_id}/refund", json_body=body)

    async def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Perform a raw Moyasar API request and return the parsed JSON payload."""

        url = f"{self._base_url}{path}"
        async with httpx.AsyncClient(
            timeout=self._timeout,
            transport=self._transport,
            auth=self._auth,
            headers={"Accept": "application/json"},
        ) as client:
            try:
                response = await client.request(method, url, json=json_body, params=params)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                error_payload: Any | None = None
                error_type: str | None = None
                try:
                    error_payload = exc.response.json()
                    if isinstance(error_payload, dict):
                        error_type = error_payload.get("type") or error_payload.get("message")
                except json.JSONDecodeError:
                    error_payload = exc.response.text

                logger.error(
                    "Moyasar API error %s for %s %s: %s",
                    status,
                    method,
                    path,
                    exc.response.text[:500],
                )
                raise MoyasarError(
                    message=f"Moyasar API responded with status {status}",
                    status_code=status,
                    error_type=error_type,
                    error_body=error_payload,
                ) from exc
            except httpx.RequestError as exc:
                logger.error("Moyasar request failure for %s %s: %s", method, path, str(exc))
                raise MoyasarError("Failed to reach Moyasar API") from exc

        try:
            return cast(Dict[str, Any], response.json())
        except json.JSONDecodeError as exc:
            logger.error("Invalid JSON from Moyasar for %s %s: %s", method, path, response.text)
            raise MoyasarError("Received malformed JSON from Moyasar") from exc


class FakeMoyasarClient(MoyasarClient):
    """In-memory stand-in used when no secret key is configured or mock mode is on."""

    def __init__(self) -> None:
        super().__init__(secret_key="sk_test_fake", base_url="https://api.moyasar.com/v1")
        self._logger = logging.getLogger(self.__class__.__name__)
        self.payments: Dict[str, Dict[str, Any]] = {}

    async def create_payment(
        self,
        *,
        amount: Union[Decimal, float, str],
        description: str,
        source: Optional[Dict[str, Any]] = None,
        callback_url: Optional[str] = None,
        currency: str = DEFAULT_CURRENCY,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payment_id = f"pay_mock_{uuid4().hex[:8]}"
        payment = {
            "id": payment_id,
            "status": "paid",
            "amount": to_halalas(amount),
            "currency": currency,
            "description": description,
            "source": {
                "type": (source or {}).get("type", "creditcard"),
                "company": "MockCard",
                "last_four": "4242",
            },
            "metadata": metadata or {},
        }
        self.payments[payment_id] = payment
        self._logger.debug("Fake payment created", extra={"payment_id": payment_id})
        return payment

    async def retrieve_payment(self, payment_id: str) -> Dict[str, Any]:
        if payment_id not in self.payments:
            raise MoyasarError("Moyasar API responded with status 404", status_code=404)
        return self.payments[payment_id]

    async def refund_payment(
        self,
        payment_id: str,
        *,
        amount: Union[Decimal, float, str],
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        refund_id = f"refund_mock_{uuid4().hex[:8]}"
        if payment_id in self.payments:
            self.payments[payment_id]["status"] = "refunded"
        self._logger.debug(
            "Fake refund issued", extra={"payment_id": payment_id, "refund_id": refund_id}
        )
        return {
            "id": refund_id,
            "status": "refunded",
            "amount": to_halalas(amount),
            "currency": DEFAULT_CURRENCY,
            "description": reason or "Booking cancellation refund",
        }


@dataclass(frozen=True)
class CaptureResult:
    payment_id: Optional[str]
    status: PaymentStatus
    amount: Decimal
    message: Optional[str] = None
    # 3-D Secure page the customer must visit before the payment settles
    transaction_url: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentStatus.PAID


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    amount: Decimal
    status: PaymentStatus


class PaymentGateway(Protocol):
    """What the booking service needs from a payment provider."""

    async def capture(
        self,
        *,
        booking_id: str,
        amount: Decimal,
        currency: str,
        description: str,
        source: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CaptureResult:
        ...

    async def verify(self, payment_id: str) -> CaptureResult:
        ...

    async def refund(self, *, payment_id: str, amount: Decimal, reason: str) -> RefundResult:
        ...


class MoyasarPaymentGateway:
    """Adapts a Moyasar client (real or fake) to ``PaymentGateway``."""

    def __init__(self, client: MoyasarClient, *, callback_url: Optional[str] = None) -> None:
        self.client = client
        self.callback_url = callback_url

    async def capture(
        self,
        *,
        booking_id: str,
        amount: Decimal,
        currency: str,
        description: str,
        source: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CaptureResult:
        try:
            payment = await self.client.create_payment(
                amount=amount,
                description=description,
                source=source,
                callback_url=self.callback_url,
                currency=currency,
                metadata={"booking_id": booking_id, **(metadata or {})},
            )
        except MoyasarError as exc:
            return CaptureResult(
                payment_id=None,
                status=PaymentStatus.FAILED,
                amount=Decimal(amount),
                message=str(exc),
            )

        return _capture_result(payment, Decimal(amount))

    async def verify(self, payment_id: str) -> CaptureResult:
        """Re-read a payment from the gateway, e.g. after a 3-D Secure redirect."""
        try:
            payment = await self.client.retrieve_payment(payment_id)
        except MoyasarError as exc:
            return CaptureResult(
                payment_id=payment_id,
                status=PaymentStatus.FAILED,
                amount=Decimal("0"),
                message=str(exc),
            )
        return _capture_result(payment, Decimal("0"))

    async def refund(self, *, payment_id: str, amount: Decimal, reason: str) -> RefundResult:
        payload = await self.client.refund_payment(payment_id, amount=amount, reason=reason)
        return RefundResult(
            refund_id=str(payload.get("id") or payment_id),
            amount=from_halalas(int(payload.get("amount", to_halalas(amount)))),
            status=map_payment_status(payload.get("status")),
        )


def _capture_result(payment: Dict[str, Any], requested: Decimal) -> CaptureResult:
    status = map_payment_status(payment.get("status"))
    source = payment.get("source") or {}
    message = None
    if status != PaymentStatus.PAID:
        message = source.get("message") or f"payment status {payment.get('status')}"
    return CaptureResult(
        payment_id=payment.get("id"),
        status=status,
        amount=from_halalas(int(payment.get("amount", to_halalas(requested)))),
        message=message,
        transaction_url=source.get("transaction_url"),
    )


def build_moyasar_client(config: Any) -> MoyasarClient:
    """Real client when a key is configured, fake client otherwise."""
    if config.use_fake_payments:
        logger.info("Moyasar running in mock mode")
        return FakeMoyasarClient()
    return MoyasarClient(
        secret_key=config.moyasar_secret_key,
        base_url=config.moyasar_base_url,
        timeout=config.moyasar_timeout_seconds,
    )
