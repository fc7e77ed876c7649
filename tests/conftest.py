"""Shared test fixtures and configuration."""

import logging
import pytest
from decimal import Decimal
from typing import Dict, Any

from payments_orchestrator.config import CONEKTA, STRIPE, Credentials, EnvironmentClass
from payments_orchestrator.connectors import (
    ChargeRequest,
    ConektaConnector,
    PaymentMethod,
    SimulatedConektaGateway,
    SimulatedStripeGateway,
    SimulatorConfig,
    StripeConnector,
)
from payments_orchestrator.logging_config import get_masking_filter
from payments_orchestrator.services import PaymentOrchestrator

STRIPE_SECRET = "sk_test_51HxYzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789wxyz"
CONEKTA_SECRET = "key_tABCDEFGHIJKLMNOPQRSTUV1234"
SPEI_CUSTOMER_ID = "cus_spei_maria"


@pytest.fixture(autouse=True)
def masked_caplog(caplog):
    """Route captured records through the secret masking filter."""
    caplog.handler.addFilter(get_masking_filter())
    caplog.set_level(logging.DEBUG, logger="payments_orchestrator")
    yield caplog
    caplog.handler.removeFilter(get_masking_filter())


@pytest.fixture
def stripe_credentials() -> Credentials:
    return Credentials(
        processor_id=STRIPE,
        public_key="pk_test_51HxYzPublicKey000000",
        private_key=STRIPE_SECRET,
        environment_class=EnvironmentClass.TEST,
    )


@pytest.fixture
def conekta_credentials() -> Credentials:
    return Credentials(
        processor_id=CONEKTA,
        public_key="key_tPublicKey0000000000",
        private_key=CONEKTA_SECRET,
        environment_class=EnvironmentClass.TEST,
    )


@pytest.fixture
def simulator_config() -> SimulatorConfig:
    return SimulatorConfig(seed=42)


@pytest.fixture
def stripe_gateway(simulator_config) -> SimulatedStripeGateway:
    return SimulatedStripeGateway(simulator_config)


@pytest.fixture
def conekta_gateway(simulator_config) -> SimulatedConektaGateway:
    return SimulatedConektaGateway(simulator_config)


@pytest.fixture
def stripe_connector(stripe_credentials, stripe_gateway) -> StripeConnector:
    """StripeConnector wired to the in-memory gateway."""
    return StripeConnector(stripe_credentials, gateway_factory=lambda creds: stripe_gateway)


@pytest.fixture
def conekta_connector(conekta_credentials, conekta_gateway) -> ConektaConnector:
    """ConektaConnector wired to the in-memory gateway."""
    return ConektaConnector(conekta_credentials, gateway_factory=lambda creds: conekta_gateway)


@pytest.fixture
def orchestrator(conekta_connector, stripe_connector) -> PaymentOrchestrator:
    return PaymentOrchestrator({CONEKTA: conekta_connector, STRIPE: stripe_connector})


@pytest.fixture
def charge_request_data() -> Dict[str, Any]:
    """Return valid charge request data."""
    return {
        "amount_decimal": Decimal("150.00"),
        "currency": "MXN",
        "method": PaymentMethod.CARD,
        "application_reference_id": "APP-1042",
        "customer_name": "María López",
        "customer_email": "maria.lopez@example.com",
        "device_fingerprint": "fp_8a7d6c5b4a3f2e1d",
    }


@pytest.fixture
def card_request(charge_request_data) -> ChargeRequest:
    return ChargeRequest(**charge_request_data, payment_token="sim_card_success")


@pytest.fixture
def cash_request(charge_request_data) -> ChargeRequest:
    return ChargeRequest(**{**charge_request_data, "method": PaymentMethod.CASH_VOUCHER})


@pytest.fixture
def bank_request(charge_request_data, stripe_gateway) -> ChargeRequest:
    """SPEI request for a customer the Stripe simulator already knows."""
    stripe_gateway.customers[SPEI_CUSTOMER_ID] = {
        "id": SPEI_CUSTOMER_ID,
        "object": "customer",
        "name": charge_request_data["customer_name"],
        "email": charge_request_data["customer_email"],
    }
    return ChargeRequest(**{
        **charge_request_data,
        "method": PaymentMethod.BANK_TRANSFER,
        "customer_id": SPEI_CUSTOMER_ID,
    })
