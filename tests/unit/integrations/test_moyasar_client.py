from decimal import Decimal
import hashlib
import hmac
import json

import httpx
import pytest

from ludus.core.enums import PaymentStatus
from ludus.integrations.moyasar_client import (
    FakeMoyasarClient,
    MoyasarClient,
    MoyasarError,
    MoyasarPaymentGateway,
    build_moyasar_client,
    from_halalas,
    map_payment_status,
    to_halalas,
    verify_webhook_signature,
)


def _client(handler) -> MoyasarClient:
    return MoyasarClient(
        secret_key="sk_test_123",
        base_url="https://moyasar.test/v1/",
        transport=httpx.MockTransport(handler),
    )


class TestHelpers:
    def test_halalas_conversion(self) -> None:
        assert to_halalas(Decimal("150.25")) == 15025
        assert to_halalas("0.005") == 1
        assert from_halalas(15025) == Decimal("150.25")

    def test_status_mapping(self) -> None:
        assert map_payment_status("paid") == PaymentStatus.PAID
        assert map_payment_status("FAILED") == PaymentStatus.FAILED
        assert map_payment_status("partially_refunded") == PaymentStatus.REFUNDED
        assert map_payment_status(None) == PaymentStatus.PENDING
        assert map_payment_status("something_new") == PaymentStatus.PENDING

    def test_webhook_signature(self) -> None:
        body = b'{"id": "pay_1"}'
        signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
        assert verify_webhook_signature(body, signature, "whsec")
        assert not verify_webhook_signature(body, signature, "other")
        assert not verify_webhook_signature(body, "", "whsec")
        assert not verify_webhook_signature(body, signature, None)

    def test_requires_secret_key(self) -> None:
        with pytest.raises(ValueError):
            MoyasarClient(secret_key="")


class TestMoyasarClient:
    @pytest.mark.asyncio
    async def test_create_payment_posts_halalas_with_basic_auth(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "pay_1", "status": "paid", "amount": 30000})

        payment = await _client(handler).create_payment(
            amount=Decimal("300.00"),
            description="Booking ABC",
            source={"type": "token", "token": "tok_1"},
        )

        assert payment["id"] == "pay_1"
        assert seen["url"] == "https://moyasar.test/v1/payments"
        assert seen["auth"].startswith("Basic ")
        assert seen["body"]["amount"] == 30000
        assert seen["body"]["currency"] == "SAR"
        assert "callback_url" not in seen["body"]

    @pytest.mark.asyncio
    async def test_refund_payment_path(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/payments/pay_1/refund"
            return httpx.Response(200, json={"id": "pay_1", "status": "refunded", "amount": 5000})

        payload = await _client(handler).refund_payment("pay_1", amount="50.00")
        assert payload["status"] == "refunded"

    @pytest.mark.asyncio
    async def test_http_error_maps_to_moyasar_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"type": "invalid_request_error", "message": "bad"})

        with pytest.raises(MoyasarError) as exc_info:
            await _client(handler).retrieve_payment("pay_x")

        assert exc_info.value.status_code == 400
        assert exc_info.value.error_type == "invalid_request_error"

    @pytest.mark.asyncio
    async def test_network_error_maps_to_moyasar_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("boom", request=request)

        with pytest.raises(MoyasarError, match="Failed to reach"):
            await _client(handler).retrieve_payment("pay_x")

    @pytest.mark.asyncio
    async def test_malformed_json(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"not json")

        with pytest.raises(MoyasarError, match="malformed JSON"):
            await _client(handler).retrieve_payment("pay_x")


class TestPaymentGateway:
    @pytest.mark.asyncio
    async def test_fake_client_capture_and_refund(self) -> None:
        gateway = MoyasarPaymentGateway(FakeMoyasarClient())

        capture = await gateway.capture(
            booking_id="b1", amount=Decimal("120.00"), currency="SAR", description="Booking"
        )
        assert capture.is_paid
        assert capture.payment_id.startswith("pay_mock_")
        assert capture.amount == Decimal("120.00")

        refund = await gateway.refund(
            payment_id=capture.payment_id, amount=Decimal("60.00"), reason="cancelled"
        )
        assert refund.refund_id.startswith("refund_mock_")
        assert refund.amount == Decimal("60.00")
        assert refund.status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_declined_payment_is_not_paid(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "id": "pay_2",
                    "status": "failed",
                    "amount": 10000,
                    "source": {"message": "Insufficient funds"},
                },
            )

        capture = await MoyasarPaymentGateway(_client(handler)).capture(
            booking_id="b1", amount=Decimal("100.00"), currency="SAR", description="Booking"
        )
        assert not capture.is_paid
        assert capture.status == PaymentStatus.FAILED
        assert capture.payment_id == "pay_2"
        assert capture.message == "Insufficient funds"

    @pytest.mark.asyncio
    async def test_gateway_error_becomes_failed_capture(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        capture = await MoyasarPaymentGateway(_client(handler)).capture(
            booking_id="b1", amount=Decimal("100.00"), currency="SAR", description="Booking"
        )
        assert capture.status == PaymentStatus.FAILED
        assert capture.payment_id is None

    @pytest.mark.asyncio
    async def test_three_d_secure_capture_is_pending_with_redirect(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                201,
                json={
                    "id": "pay_3ds",
                    "status": "initiated",
                    "amount": 10000,
                    "source": {"transaction_url": "https://moyasar.test/3ds/pay_3ds"},
                },
            )

        gateway = MoyasarPaymentGateway(
            _client(handler), callback_url="https://ludus.test/payments/return"
        )
        capture = await gateway.capture(
            booking_id="b1", amount=Decimal("100.00"), currency="SAR", description="Booking"
        )

        assert seen["body"]["callback_url"] == "https://ludus.test/payments/return"
        assert capture.status == PaymentStatus.PENDING
        assert not capture.is_paid
        assert capture.transaction_url == "https://moyasar.test/3ds/pay_3ds"

    @pytest.mark.asyncio
    async def test_verify_reads_the_payment_back(self) -> None:
        client = FakeMoyasarClient()
        gateway = MoyasarPaymentGateway(client)
        capture = await gateway.capture(
            booking_id="b1", amount=Decimal("80.00"), currency="SAR", description="Booking"
        )

        verified = await gateway.verify(capture.payment_id)

        assert verified.is_paid
        assert verified.amount == Decimal("80.00")

    @pytest.mark.asyncio
    async def test_verify_unknown_payment_fails(self) -> None:
        verified = await MoyasarPaymentGateway(FakeMoyasarClient()).verify("pay_missing")

        assert verified.status == PaymentStatus.FAILED
        assert verified.payment_id == "pay_missing"
        assert "404" in verified.message

    def test_build_client_respects_mock_mode(self) -> None:
        from ludus.core.config import Settings

        assert isinstance(build_moyasar_client(Settings(moyasar_mock=True)), FakeMoyasarClient)
        real = build_moyasar_client(Settings(moyasar_mock=False, moyasar_secret_key="sk_live_1"))
        assert type(real) is MoyasarClient
