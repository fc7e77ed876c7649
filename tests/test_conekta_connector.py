"""Tests for the Conekta adapter and HTTP gateway."""

import json
import re
from unittest.mock import patch
import httpx
import pytest

from payments_orchestrator.config import CONEKTA
from payments_orchestrator.connectors.base import ChargeStatus, PaymentMethod
from payments_orchestrator.connectors.conekta_connector import (
    CONEKTA_ACCEPT,
    ConektaConnector,
    ConektaGateway,
    format_phone_number,
    is_customer_rejection,
    map_order_status,
)
from payments_orchestrator.connectors.simulator_connector import (
    CARD_DECLINE,
    SimulatedConektaGateway,
    SimulatorConfig,
)
from payments_orchestrator.exceptions import (
    IncompleteChargeResult,
    NotFound,
    ProcessorRejected,
    ProcessorUnavailable,
    UnsupportedPaymentMethod,
)

PAID_ORDER = {
    "id": "ord_2tUx9v6bRbTaYJhSe",
    "object": "order",
    "amount": 15000,
    "currency": "MXN",
    "payment_status": "paid",
    "charges": {"data": [{"id": "chg_1", "payment_method": {"type": "credit", "last4": "4242"}}]},
}


class RecordingHandler:
    """httpx.MockTransport handler that records requests and replies from a script."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def http_connector(conekta_credentials):
    """ConektaConnector on the real HTTP gateway with a scripted transport."""
    def build(*responses):
        handler = RecordingHandler(*responses)
        connector = ConektaConnector(
            conekta_credentials,
            gateway_factory=lambda creds: ConektaGateway(creds, transport=httpx.MockTransport(handler)),
        )
        return connector, handler
    return build


class TestConektaGateway:
    """Tests for the HTTP gateway against httpx.MockTransport."""

    async def test_card_order_request(self, http_connector, card_request, conekta_credentials):
        connector, handler = http_connector(httpx.Response(200, json=PAID_ORDER))
        request = card_request.model_copy(update={"idempotency_key": "card-1042"})

        result = await connector.create_card_charge(request)

        assert result.status == ChargeStatus.PAID
        assert result.external_transaction_id == "ord_2tUx9v6bRbTaYJhSe"
        sent = handler.requests[0]
        assert sent.method == "POST"
        assert sent.url == "https://api.conekta.io/orders"
        assert sent.headers["Accept"] == CONEKTA_ACCEPT
        assert sent.headers["Authorization"] == f"Bearer {conekta_credentials.private_key}"
        assert sent.headers["Idempotency-Key"] == "card-1042"

        body = json.loads(sent.content)
        assert body["currency"] == "MXN"
        assert body["customer_info"] == {"name": "María López", "email": "maria.lopez@example.com"}
        assert body["line_items"] == [{"name": "Permiso de Circulación", "unit_price": 15000, "quantity": 1}]
        assert body["charges"] == [{
            "payment_method": {"type": "card", "token_id": "sim_card_success"},
            "amount": 15000,
            "device_fingerprint": "fp_8a7d6c5b4a3f2e1d",
        }]
        assert body["metadata"] == {"reference_id": "APP-1042", "application_id": "1042"}

    async def test_validation_error_is_rejected(self, http_connector, card_request):
        error_body = {
            "object": "error",
            "type": "parameter_validation_error",
            "details": [{
                "code": "conekta.errors.parameter_validation.card.declined",
                "param": "payment_method.token_id",
                "message": "El token ya fue utilizado.",
            }],
        }
        connector, _ = http_connector(httpx.Response(422, json=error_body))

        with pytest.raises(ProcessorRejected) as exc_info:
            await connector.create_card_charge(card_request)

        error = exc_info.value
        assert error.processor_id == CONEKTA
        assert error.http_status == 422
        assert error.code == "conekta.errors.parameter_validation.card.declined"
        assert error.param == "payment_method.token_id"
        assert error.message == "El token ya fue utilizado."
        assert error.raw == error_body

    async def test_non_json_error_body(self, http_connector, card_request):
        connector, _ = http_connector(httpx.Response(502, text="Bad Gateway"))

        with pytest.raises(ProcessorRejected) as exc_info:
            await connector.create_card_charge(card_request)
        assert exc_info.value.http_status == 502

    async def test_non_json_success_body_is_rejected(self, http_connector, card_request):
        connector, _ = http_connector(httpx.Response(200, text="<html>maintenance</html>"))

        with pytest.raises(ProcessorRejected) as exc_info:
            await connector.create_card_charge(card_request)

        error = exc_info.value
        assert error.code == "invalid_response"
        assert error.http_status == 200
        assert error.raw == {"body": "<html>maintenance</html>"}

    async def test_transport_error_is_unavailable(self, http_connector, card_request):
        connector, handler = http_connector(httpx.ConnectError("connection refused"))

        with pytest.raises(ProcessorUnavailable) as exc_info:
            await connector.create_card_charge(card_request)

        assert isinstance(exc_info.value.cause, httpx.ConnectError)
        assert len(handler.requests) == 1

    async def test_timeout_is_unavailable_and_not_retried(self, http_connector, card_request):
        request = card_request.model_copy(update={"customer_id": "cus_1"})
        connector, handler = http_connector(httpx.ReadTimeout("timed out"))

        with pytest.raises(ProcessorUnavailable):
            await connector.create_card_charge(request)
        assert len(handler.requests) == 1

    async def test_missing_order_is_not_found(self, http_connector):
        connector, handler = http_connector(httpx.Response(404, json={"type": "resource_not_found_error"}))

        with pytest.raises(NotFound) as exc_info:
            await connector.get_charge("ord_missing")

        assert exc_info.value.resource_id == "ord_missing"
        assert handler.requests[0].url.path == "/orders/ord_missing"

    async def test_customer_search_filters_by_exact_email(self, http_connector):
        customers = {"data": [
            {"id": "cus_a", "email": "maria.lopez@example.org", "name": "María"},
            {"id": "cus_b", "email": "maria.lopez@example.com", "name": "María"},
        ]}
        connector, handler = http_connector(httpx.Response(200, json=customers))

        customer = await connector.find_customer_by_email("Maria.Lopez@example.com")

        assert customer.external_customer_id == "cus_b"
        assert customer.existing is True
        assert handler.requests[0].url.params["search"] == "maria.lopez@example.com"

    async def test_customer_search_rejection_means_not_found(self, http_connector):
        connector, _ = http_connector(httpx.Response(400, json={"type": "parameter_validation_error"}))

        assert await connector.find_customer_by_email("maria@example.com") is None

    async def test_customer_fallback_over_http(self, http_connector, card_request):
        rejection = {
            "type": "resource_not_found_error",
            "details": [{"code": "conekta.errors.resource_not_found.customer",
                         "param": "customer_info.customer_id", "message": "Customer not found"}],
        }
        connector, handler = http_connector(
            httpx.Response(404, json=rejection),
            httpx.Response(200, json=PAID_ORDER),
        )
        request = card_request.model_copy(update={"customer_id": "cus_gone", "idempotency_key": "k-7"})

        result = await connector.create_card_charge(request)

        assert result.used_fallback is True
        assert [r.headers["Idempotency-Key"] for r in handler.requests] == ["k-7", "k-7-fallback"]
        assert "customer_id" not in json.loads(handler.requests[1].content)["customer_info"]

    async def test_aclose_closes_http_client(self, conekta_credentials):
        gateway = ConektaGateway(conekta_credentials, transport=httpx.MockTransport(RecordingHandler()))
        await gateway.aclose()
        assert gateway._http.is_closed


class TestConektaCardCharge:
    """Tests for card orders through the simulated gateway."""

    async def test_card_requires_token(self, conekta_connector, card_request):
        with pytest.raises(ValueError):
            await conekta_connector.create_card_charge(card_request.model_copy(update={"payment_token": None}))

    async def test_paid_card_order(self, conekta_connector, conekta_gateway, card_request):
        result = await conekta_connector.create_card_charge(card_request)

        assert result.status == ChargeStatus.PAID
        assert result.method == PaymentMethod.CARD
        assert result.amount_minor == 15000
        assert result.voucher_reference is None
        assert result.external_transaction_id in conekta_gateway.orders

    async def test_declined_card(self, conekta_connector, card_request):
        with pytest.raises(ProcessorRejected) as exc_info:
            await conekta_connector.create_card_charge(card_request.model_copy(update={"payment_token": CARD_DECLINE}))

        assert exc_info.value.http_status == 402
        assert "rechazada" in exc_info.value.user_message

    async def test_same_key_and_payload_returns_same_order(self, conekta_connector, conekta_gateway, card_request):
        request = card_request.model_copy(update={"idempotency_key": "checkout-77"})

        first = await conekta_connector.create_card_charge(request)
        second = await conekta_connector.create_card_charge(request)

        assert first.external_transaction_id == second.external_transaction_id
        assert len(conekta_gateway.orders) == 1

    async def test_existing_customer_is_attached(self, conekta_connector, conekta_gateway, card_request):
        customer = await conekta_connector.create_customer("María López", "maria.lopez@example.com", "5512345678")
        request = card_request.model_copy(update={"customer_id": customer.external_customer_id})

        result = await conekta_connector.create_card_charge(request)

        assert result.used_fallback is False
        order = conekta_gateway.orders[result.external_transaction_id]
        assert order["customer_info"]["customer_id"] == customer.external_customer_id

    async def test_unknown_customer_falls_back_exactly_once(self, conekta_connector, conekta_gateway, card_request):
        request = card_request.model_copy(update={"customer_id": "cus_unknown"})

        result = await conekta_connector.create_card_charge(request)

        assert result.used_fallback is True
        assert conekta_gateway.count("order.create") == 2
        order = conekta_gateway.orders[result.external_transaction_id]
        assert "customer_id" not in order["customer_info"]


class TestConektaCashVoucher:
    """Tests for OXXO cash orders."""

    async def test_oxxo_reference_returned_synchronously(self, conekta_connector, conekta_gateway, cash_request):
        result = await conekta_connector.create_cash_voucher_charge(cash_request)

        assert re.match(r"^[0-9]{10,14}$", result.voucher_reference)
        assert result.status == ChargeStatus.AWAITING_PAYMENT
        assert result.expires_at == cash_request.requested_at + 86400
        assert conekta_gateway.count("order.create") == 1
        sent = conekta_gateway.orders[result.external_transaction_id]["charges"]["data"][0]
        assert sent["payment_method"]["type"] == "oxxo"

    async def test_replay_after_clock_moves_returns_same_order(self, conekta_connector, conekta_gateway, cash_request):
        request = cash_request.model_copy(update={"idempotency_key": "checkout-oxxo-1"})

        with patch("time.time", return_value=1700000000):
            first = await conekta_connector.create_cash_voucher_charge(request)
        with patch("time.time", return_value=1700000005):
            second = await conekta_connector.create_cash_voucher_charge(request)

        assert first.external_transaction_id == second.external_transaction_id
        assert first.voucher_reference == second.voucher_reference
        assert len(conekta_gateway.orders) == 1

    async def test_explicit_expiry_is_sent(self, conekta_connector, conekta_gateway, cash_request):
        request = cash_request.model_copy(update={"expires_at": 1700086400})

        result = await conekta_connector.create_cash_voucher_charge(request)

        assert result.expires_at == 1700086400

    async def test_missing_reference_raises_incomplete(self, conekta_credentials, cash_request):
        gateway = SimulatedConektaGateway(SimulatorConfig(omit_voucher_reference=True))
        connector = ConektaConnector(conekta_credentials, gateway_factory=lambda creds: gateway)

        with pytest.raises(IncompleteChargeResult) as exc_info:
            await connector.create_cash_voucher_charge(cash_request)

        assert exc_info.value.external_transaction_id in gateway.orders

    async def test_bank_transfer_is_unsupported(self, conekta_connector, conekta_gateway, bank_request):
        assert conekta_connector.supports(PaymentMethod.BANK_TRANSFER) is False
        with pytest.raises(UnsupportedPaymentMethod):
            await conekta_connector.charge(bank_request)
        with pytest.raises(ValueError):
            await conekta_connector.create_bank_transfer_charge(bank_request)
        assert conekta_gateway.calls == []


class TestConektaGetCharge:
    """Tests for get_charge."""

    async def test_lookup_pending_and_paid(self, conekta_connector, conekta_gateway, cash_request):
        created = await conekta_connector.create_cash_voucher_charge(cash_request)

        pending = await conekta_connector.get_charge(created.external_transaction_id)
        assert pending.method == PaymentMethod.CASH_VOUCHER
        assert pending.status == ChargeStatus.AWAITING_PAYMENT
        assert pending.voucher_reference == created.voucher_reference

        conekta_gateway.complete_payment(created.external_transaction_id)
        paid = await conekta_connector.get_charge(created.external_transaction_id)
        assert paid.status == ChargeStatus.PAID

    async def test_lookup_unknown_order(self, conekta_connector):
        with pytest.raises(NotFound):
            await conekta_connector.get_charge("ord_unknown")


class TestConektaCustomers:
    """Tests for customer creation."""

    async def test_phone_is_formatted(self, conekta_connector, conekta_gateway):
        customer = await conekta_connector.create_customer("María López", "maria.lopez@example.com", "55 1234 5678")

        assert conekta_gateway.customers[customer.external_customer_id]["phone"] == "+525512345678"

    async def test_fuzzy_search_match_is_not_reused(self, conekta_connector, conekta_gateway):
        await conekta_connector.create_customer("María López", "maria.lopez@example.org")

        customer = await conekta_connector.create_customer("María López", "maria.lopez@example.com")

        assert customer.existing is False
        assert len(conekta_gateway.customers) == 2


@pytest.mark.parametrize("phone,expected", [
    ("5512345678", "+525512345678"),
    ("(55) 1234-5678", "+525512345678"),
    ("+52 55 1234 5678", "+525512345678"),
    ("12345", "+525555555555"),
    ("", "+525555555555"),
])
def test_format_phone_number(phone, expected):
    assert format_phone_number(phone) == expected


@pytest.mark.parametrize("payment_status,expected", [
    ("paid", ChargeStatus.PAID),
    ("pending_payment", ChargeStatus.AWAITING_PAYMENT),
    ("declined", ChargeStatus.FAILED),
    ("expired", ChargeStatus.EXPIRED),
    ("canceled", ChargeStatus.CANCELED),
    ("voided", ChargeStatus.CANCELED),
    ("refunded", ChargeStatus.CANCELED),
    (None, ChargeStatus.UNKNOWN),
])
def test_map_order_status(payment_status, expected):
    assert map_order_status(payment_status) == expected


class TestIsCustomerRejection:
    """Tests for the Conekta customer-reference matcher."""

    def test_matches_customer_param(self):
        error = ProcessorRejected("bad", http_status=422, param="customer_info.customer_id")
        assert is_customer_rejection(error) is True

    def test_matches_customer_not_found_code_in_details(self):
        error = ProcessorRejected("bad", http_status=404, raw={
            "details": [{"code": "conekta.errors.resource_not_found.customer_not_found"}],
        })
        assert is_customer_rejection(error) is True

    def test_ignores_server_errors(self):
        error = ProcessorRejected("bad", http_status=500, param="customer_info.customer_id")
        assert is_customer_rejection(error) is False

    def test_ignores_other_params(self):
        error = ProcessorRejected("bad", http_status=422, param="payment_method.token_id")
        assert is_customer_rejection(error) is False
