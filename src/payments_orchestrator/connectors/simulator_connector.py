"""Simulated processors for testing payment flows without real processor calls."""

import copy
import logging
import random
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..config import CONEKTA, STRIPE, Credentials, EnvironmentClass
from ..exceptions import NotFound, ProcessorRejected, ProcessorUnavailable
from .conekta_connector import ConektaConnector, ConektaGatewayBase
from .stripe_connector import StripeConnector, StripeGatewayBase

logger = logging.getLogger(__name__)


class SimulatorScenario(str, Enum):
    """Predefined card outcomes for the simulator."""
    SUCCESS = "success"
    DECLINE = "decline"
    REQUIRES_3DS = "requires_3ds"
    INSUFFICIENT_FUNDS = "insufficient_funds"


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    omit_voucher_reference: bool = False  # Confirm/create succeeds without the payable reference
    fail_transport: bool = False  # Every call raises ProcessorUnavailable
    oxxo_expires_after_seconds: int = 2 * 24 * 60 * 60
    seed: Optional[int] = None  # Random seed for reproducible references


# Special card tokens for triggering specific behaviors
CARD_SUCCESS = "sim_card_success"
CARD_DECLINE = "sim_card_decline"
CARD_3DS = "sim_card_3ds"
CARD_INSUFFICIENT = "sim_card_insufficient"

CARD_SCENARIOS = {
    CARD_SUCCESS: SimulatorScenario.SUCCESS,
    CARD_DECLINE: SimulatorScenario.DECLINE,
    CARD_3DS: SimulatorScenario.REQUIRES_3DS,
    CARD_INSUFFICIENT: SimulatorScenario.INSUFFICIENT_FUNDS,
}

DECLINE_CODES = {
    SimulatorScenario.DECLINE: "card_declined",
    SimulatorScenario.INSUFFICIENT_FUNDS: "insufficient_funds",
}


def card_scenario(token: Optional[str]) -> SimulatorScenario:
    return CARD_SCENARIOS.get(token, SimulatorScenario.SUCCESS)


class SimulatedGatewayMixin(ABC):
    """
    Behaviour shared by both simulated gateways.

    Features:
    - In-memory storage of every created object
    - Idempotency-key replay: the same key with the same payload returns the
      stored response, the same key with another payload is rejected
    - A ``calls`` log of ``(operation, idempotency_key)`` tuples
    - Scripted transport failures
    """

    processor_id = "simulator"

    def _setup(self, config: Optional[SimulatorConfig]) -> None:
        self.config = config or SimulatorConfig()
        self.calls: List[Tuple[str, Optional[str]]] = []
        self._responses: Dict[Tuple[str, str], Tuple[Dict[str, Any], Dict[str, Any]]] = {}
        self._rng = random.Random(self.config.seed)
        self.closed = False

    def _generate_id(self, prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:24]}"

    def _digits(self, length: int) -> str:
        return "".join(str(self._rng.randint(0, 9)) for _ in range(length))

    def _record(self, operation: str, idempotency_key: Optional[str] = None) -> None:
        self.calls.append((operation, idempotency_key))
        if self.config.fail_transport:
            raise ProcessorUnavailable(
                f"Simulated transport failure on {operation}",
                processor_id=self.processor_id,
                cause=ConnectionError("simulated"),
            )

    def _replay(self, operation: str, idempotency_key: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        stored = self._responses.get((operation, idempotency_key))
        if stored is None:
            return None
        stored_payload, response = stored
        if stored_payload != payload:
            raise self._idempotency_conflict(idempotency_key)
        logger.debug(f"Replaying {operation} for idempotency key {idempotency_key}")
        return copy.deepcopy(response)

    def _store(self, operation: str, idempotency_key: str, payload: Dict[str, Any], response: Dict[str, Any]) -> Dict[str, Any]:
        self._responses[(operation, idempotency_key)] = (copy.deepcopy(payload), copy.deepcopy(response))
        return copy.deepcopy(response)

    @abstractmethod
    def _idempotency_conflict(self, idempotency_key: str) -> ProcessorRejected:
        """Build the processor-shaped error for a reused key."""
        raise NotImplementedError

    def count(self, operation: str) -> int:
        """Number of recorded calls to ``operation``."""
        return sum(1 for name, _ in self.calls if name == operation)

    def keys_for(self, operation: str) -> List[Optional[str]]:
        return [key for name, key in self.calls if name == operation]

    async def aclose(self) -> None:
        self.closed = True


class SimulatedStripeGateway(SimulatedGatewayMixin, StripeGatewayBase):
    """In-memory stand-in for the Stripe PaymentIntents API."""

    processor_id = STRIPE

    def __init__(self, config: Optional[SimulatorConfig] = None):
        self._setup(config)
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.payment_methods: Dict[str, Dict[str, Any]] = {}
        logger.info("SimulatedStripeGateway initialized")

    def _error(self, message: str, http_status: int, code: str, param: Optional[str] = None,
               error_type: str = "invalid_request_error") -> ProcessorRejected:
        error = {"type": error_type, "code": code, "message": message}
        if param:
            error["param"] = param
        return ProcessorRejected(
            message, processor_id=STRIPE, code=code, http_status=http_status, param=param, raw={"error": error}
        )

    def _idempotency_conflict(self, idempotency_key):
        return self._error(
            f"Keys for idempotent requests can only be used with the same parameters they were first used with: {idempotency_key}",
            400,
            "idempotency_key_in_use",
            error_type="idempotency_error",
        )

    async def create_customer(self, params, idempotency_key):
        self._record("customer.create", idempotency_key)
        replayed = self._replay("customer.create", idempotency_key, params)
        if replayed is not None:
            return replayed
        customer = {
            "id": self._generate_id("cus"),
            "object": "customer",
            "name": params.get("name"),
            "email": params.get("email"),
            "phone": params.get("phone"),
            "metadata": params.get("metadata", {}),
        }
        self.customers[customer["id"]] = customer
        return self._store("customer.create", idempotency_key, params, customer)

    async def list_customers(self, email, limit=1):
        self._record("customer.list")
        matches = [c for c in self.customers.values() if c.get("email") == email]
        return copy.deepcopy(matches[:limit])

    async def create_payment_intent(self, params, idempotency_key):
        self._record("payment_intent.create", idempotency_key)
        replayed = self._replay("payment_intent.create", idempotency_key, params)
        if replayed is not None:
            return replayed

        customer = params.get("customer")
        if customer and customer not in self.customers:
            raise self._error(f"No such customer: '{customer}'", 400, "resource_missing", param="customer")
        if not customer and "customer_balance" in params.get("payment_method_types", []):
            raise self._error(
                "PaymentIntents with the customer_balance payment method type require a customer.",
                400,
                "parameter_missing",
                param="customer",
            )

        intent = {
            "id": self._generate_id("pi"),
            "object": "payment_intent",
            "amount": params["amount"],
            "currency": params["currency"],
            "customer": customer,
            "description": params.get("description"),
            "metadata": params.get("metadata", {}),
            "payment_method_types": params.get("payment_method_types", ["card"]),
            "payment_method": None,
            "status": "requires_payment_method",
            "next_action": None,
            "client_secret": None,
        }
        intent["client_secret"] = f"{intent['id']}_secret_{uuid.uuid4().hex[:12]}"

        if params.get("confirm") and params.get("payment_method"):
            scenario = card_scenario(params["payment_method"])
            if scenario in DECLINE_CODES:
                code = DECLINE_CODES[scenario]
                raise self._error("Your card was declined.", 402, code, error_type="card_error")
            intent["payment_method"] = params["payment_method"]
            if scenario == SimulatorScenario.REQUIRES_3DS:
                intent["status"] = "requires_action"
                intent["next_action"] = {"type": "use_stripe_sdk", "use_stripe_sdk": {"type": "three_d_secure_redirect"}}
            else:
                intent["status"] = "succeeded"

        self.intents[intent["id"]] = intent
        return self._store("payment_intent.create", idempotency_key, params, intent)

    async def create_payment_method(self, params, idempotency_key):
        self._record("payment_method.create", idempotency_key)
        replayed = self._replay("payment_method.create", idempotency_key, params)
        if replayed is not None:
            return replayed
        payment_method = {
            "id": self._generate_id("pm"),
            "object": "payment_method",
            "type": params["type"],
            "billing_details": params.get("billing_details", {}),
        }
        self.payment_methods[payment_method["id"]] = payment_method
        return self._store("payment_method.create", idempotency_key, params, payment_method)

    def _oxxo_details(self) -> Dict[str, Any]:
        details = {
            "expires_after": int(time.time()) + self.config.oxxo_expires_after_seconds,
            "hosted_voucher_url": f"https://payments.stripe.com/oxxo/voucher/{uuid.uuid4().hex}",
        }
        if not self.config.omit_voucher_reference:
            details["number"] = self._digits(14)
        return details

    def _bank_transfer_instructions(self, intent: Dict[str, Any]) -> Dict[str, Any]:
        addresses = []
        if not self.config.omit_voucher_reference:
            addresses.append({
                "type": "spei",
                "supported_networks": ["spei"],
                "spei": {"bank_code": "646", "bank_name": "STP", "clabe": "646" + self._digits(15)},
            })
        return {
            "type": "mx_bank_transfer",
            "amount_remaining": intent["amount"],
            "currency": intent["currency"],
            "reference": self._digits(7),
            "financial_addresses": addresses,
            "hosted_instructions_url": f"https://payments.stripe.com/bank_transfers/instructions/{uuid.uuid4().hex}",
        }

    async def confirm_payment_intent(self, intent_id, params, idempotency_key):
        self._record("payment_intent.confirm", idempotency_key)
        payload = {"intent": intent_id, **params}
        replayed = self._replay("payment_intent.confirm", idempotency_key, payload)
        if replayed is not None:
            return replayed

        intent = self.intents.get(intent_id)
        if intent is None:
            raise self._error(f"No such payment_intent: '{intent_id}'", 404, "resource_missing", param="intent")
        payment_method = self.payment_methods.get(params.get("payment_method"))
        if payment_method is None:
            raise self._error(
                f"No such PaymentMethod: '{params.get('payment_method')}'", 400, "resource_missing", param="payment_method"
            )

        intent["payment_method"] = payment_method["id"]
        intent["status"] = "requires_action"
        if payment_method["type"] == "oxxo":
            intent["next_action"] = {"type": "oxxo_display_details", "oxxo_display_details": self._oxxo_details()}
        elif payment_method["type"] == "customer_balance":
            intent["next_action"] = {
                "type": "display_bank_transfer_instructions",
                "display_bank_transfer_instructions": self._bank_transfer_instructions(intent),
            }
        else:
            intent["status"] = "succeeded"
            intent["next_action"] = None
        return self._store("payment_intent.confirm", idempotency_key, payload, intent)

    async def retrieve_payment_intent(self, intent_id):
        self._record("payment_intent.retrieve")
        intent = self.intents.get(intent_id)
        if intent is None:
            raise NotFound(f"No such payment intent: {intent_id}", processor_id=STRIPE, resource_id=intent_id)
        return copy.deepcopy(intent)

    def complete_payment(self, intent_id: str) -> Dict[str, Any]:
        """Mark an intent as paid, as if the customer paid at the store (simulator-specific)."""
        intent = self.intents[intent_id]
        intent["status"] = "succeeded"
        intent["next_action"] = None
        return copy.deepcopy(intent)


class SimulatedConektaGateway(SimulatedGatewayMixin, ConektaGatewayBase):
    """In-memory stand-in for the Conekta orders API."""

    processor_id = CONEKTA

    def __init__(self, config: Optional[SimulatorConfig] = None):
        self._setup(config)
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        logger.info("SimulatedConektaGateway initialized")

    def _error(self, message: str, http_status: int, code: str, param: Optional[str] = None,
               error_type: str = "parameter_validation_error") -> ProcessorRejected:
        detail = {"code": code, "message": message, "debug_message": message}
        if param:
            detail["param"] = param
        return ProcessorRejected(
            message,
            processor_id=CONEKTA,
            code=code,
            http_status=http_status,
            param=param,
            raw={"object": "error", "type": error_type, "details": [detail]},
        )

    def _idempotency_conflict(self, idempotency_key):
        return self._error(
            f"Idempotency key {idempotency_key} was already used with a different request",
            409,
            "conekta.errors.conflict.idempotency",
            error_type="conflict_error",
        )

    async def create_customer(self, payload, idempotency_key):
        self._record("customer.create", idempotency_key)
        replayed = self._replay("customer.create", idempotency_key, payload)
        if replayed is not None:
            return replayed
        customer = {
            "id": self._generate_id("cus"),
            "object": "customer",
            "name": payload.get("name"),
            "email": payload.get("email"),
            "phone": payload.get("phone"),
        }
        self.customers[customer["id"]] = customer
        return self._store("customer.create", idempotency_key, payload, customer)

    async def list_customers(self, email):
        self._record("customer.list")
        # Conekta search is fuzzy; callers must filter the results themselves
        local_part = email.split("@")[0]
        return [copy.deepcopy(c) for c in self.customers.values() if local_part in (c.get("email") or "")]

    def _charge(self, order_id: str, charge: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        payment_method = charge["payment_method"]
        if payment_method["type"] == "oxxo_cash":
            method = {
                "object": "cash_payment",
                "type": "oxxo",
                "service_name": "OxxoPay",
                "expires_at": payment_method.get("expires_at"),
                "barcode_url": f"https://s3.amazonaws.com/cash_payment_barcodes/{uuid.uuid4().hex}.png",
            }
            if not self.config.omit_voucher_reference:
                method["reference"] = self._digits(14)
            status = "pending_payment"
        else:
            scenario = card_scenario(payment_method.get("token_id"))
            if scenario in DECLINE_CODES:
                code = DECLINE_CODES[scenario]
                raise self._error(
                    "The card was declined.",
                    402,
                    f"conekta.errors.processing.{code}",
                    param="payment_method.token_id",
                    error_type="processing_error",
                )
            method = {"object": "card_payment", "type": "credit", "last4": "4242", "brand": "visa"}
            status = "pending_payment" if scenario == SimulatorScenario.REQUIRES_3DS else "paid"

        return status, {
            "id": self._generate_id("chg"),
            "object": "charge",
            "order_id": order_id,
            "amount": charge["amount"],
            "status": status,
            "device_fingerprint": charge.get("device_fingerprint"),
            "payment_method": method,
        }

    async def create_order(self, payload, idempotency_key):
        self._record("order.create", idempotency_key)
        replayed = self._replay("order.create", idempotency_key, payload)
        if replayed is not None:
            return replayed

        customer_id = (payload.get("customer_info") or {}).get("customer_id")
        if customer_id and customer_id not in self.customers:
            raise self._error(
                f"The customer {customer_id} could not be found.",
                404,
                "conekta.errors.resource_not_found.customer",
                param="customer_info.customer_id",
                error_type="resource_not_found_error",
            )

        order_id = self._generate_id("ord")
        status, charge = self._charge(order_id, payload["charges"][0])
        order = {
            "id": order_id,
            "object": "order",
            "livemode": False,
            "amount": payload["charges"][0]["amount"],
            "currency": payload["currency"],
            "payment_status": status,
            "customer_info": payload.get("customer_info", {}),
            "line_items": {"object": "list", "data": payload.get("line_items", [])},
            "metadata": payload.get("metadata", {}),
            "charges": {"object": "list", "data": [charge]},
            "created_at": int(time.time()),
        }
        self.orders[order_id] = order
        return self._store("order.create", idempotency_key, payload, order)

    async def get_order(self, order_id):
        self._record("order.retrieve")
        order = self.orders.get(order_id)
        if order is None:
            raise NotFound(f"No such order: {order_id}", processor_id=CONEKTA, resource_id=order_id)
        return copy.deepcopy(order)

    def complete_payment(self, order_id: str) -> Dict[str, Any]:
        """Mark an order as paid (simulator-specific)."""
        order = self.orders[order_id]
        order["payment_status"] = "paid"
        for charge in order["charges"]["data"]:
            charge["status"] = "paid"
        return copy.deepcopy(order)


SIMULATOR_CREDENTIALS = {
    CONEKTA: Credentials(
        processor_id=CONEKTA,
        public_key="key_tSimulatorPublic0000",
        private_key="key_tSimulatorPrivate000",
        environment_class=EnvironmentClass.TEST,
    ),
    STRIPE: Credentials(
        processor_id=STRIPE,
        public_key="pk_test_simulator000000",
        private_key="sk_test_simulator000000",
        environment_class=EnvironmentClass.TEST,
    ),
}


def build_simulated_adapters(
    config: Optional[SimulatorConfig] = None,
    conekta_gateway: Optional[SimulatedConektaGateway] = None,
    stripe_gateway: Optional[SimulatedStripeGateway] = None,
) -> Dict[str, Any]:
    """Adapters for both processors wired to in-memory gateways."""
    conekta_gateway = conekta_gateway or SimulatedConektaGateway(config)
    stripe_gateway = stripe_gateway or SimulatedStripeGateway(config)
    return {
        CONEKTA: ConektaConnector(SIMULATOR_CREDENTIALS[CONEKTA], gateway_factory=lambda creds: conekta_gateway),
        STRIPE: StripeConnector(SIMULATOR_CREDENTIALS[STRIPE], gateway_factory=lambda creds: stripe_gateway),
    }
