import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import stripe

from ..amounts import to_minor_units
from ..config import DEFAULT_HTTP_TIMEOUT, STRIPE, Credentials
from ..exceptions import (
    IncompleteChargeResult,
    NotFound,
    PaymentError,
    ProcessorRejected,
    ProcessorUnavailable,
)
from ..idempotency import IdempotencyKey
from ..redaction import prefix
from ..retry import run_with_customer_fallback
from .base import (
    ChargeRequest,
    ChargeResult,
    ChargeStatus,
    Customer,
    GatewayFactory,
    PaymentMethod,
    ProcessorAdapter,
)
from .sequencer import EXPECTED_NEXT_ACTION, ConfirmationSequence, PaymentReference, extract_reference

logger = logging.getLogger(__name__)

# Canonical error_type for each Stripe exception family
ERROR_TYPES = (
    (stripe.CardError, "card_error"),
    (stripe.RateLimitError, "rate_limit_error"),
    (stripe.IdempotencyError, "idempotency_error"),
    (stripe.InvalidRequestError, "invalid_request_error"),
    (stripe.AuthenticationError, "authentication_error"),
    (stripe.PermissionError, "permission_error"),
)

INTENT_STATUS_MAP = {
    "succeeded": ChargeStatus.PAID,
    "processing": ChargeStatus.PROCESSING,
    "requires_capture": ChargeStatus.PROCESSING,
    "requires_payment_method": ChargeStatus.AWAITING_PAYMENT,
    "requires_confirmation": ChargeStatus.AWAITING_PAYMENT,
    "canceled": ChargeStatus.CANCELED,
}


def translate_stripe_error(e: stripe.StripeError) -> PaymentError:
    """Map a Stripe exception onto the canonical error taxonomy."""
    if isinstance(e, stripe.APIConnectionError):
        return ProcessorUnavailable(f"Could not reach Stripe: {e.user_message or e}", processor_id=STRIPE, cause=e)

    error_type = "api_error"
    for error_class, name in ERROR_TYPES:
        if isinstance(e, error_class):
            error_type = name
            break

    body = e.json_body or {"error": {"type": error_type, "message": e.user_message or str(e)}}
    error = body.get("error") or {}
    return ProcessorRejected(
        e.user_message or str(e),
        processor_id=STRIPE,
        code=e.code or error.get("code") or error_type,
        http_status=e.http_status,
        param=getattr(e, "param", None) or error.get("param"),
        raw=body,
    )


def map_intent_status(status: Optional[str], method: PaymentMethod) -> ChargeStatus:
    if status == "requires_action":
        # Vouchers and transfers sit in requires_action until the customer pays
        if method == PaymentMethod.CARD:
            return ChargeStatus.REQUIRES_ACTION
        return ChargeStatus.AWAITING_PAYMENT
    return INTENT_STATUS_MAP.get(status, ChargeStatus.UNKNOWN)


def method_from_intent(intent: Dict[str, Any]) -> PaymentMethod:
    types = intent.get("payment_method_types") or []
    if "oxxo" in types:
        return PaymentMethod.CASH_VOUCHER
    if "customer_balance" in types:
        return PaymentMethod.BANK_TRANSFER
    return PaymentMethod.CARD


def is_customer_rejection(error: ProcessorRejected) -> bool:
    """True when Stripe refused the request because of its ``customer`` param."""
    if error.http_status is not None and error.http_status >= 500:
        return False
    if error.param == "customer":
        return True
    body = error.raw.get("error") or {}
    return body.get("param") == "customer"


class StripeGatewayBase(ABC):
    """The Stripe calls the adapter makes, with plain-dict results."""

    @abstractmethod
    async def create_customer(self, params: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    async def list_customers(self, email: str, limit: int = 1) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    async def create_payment_intent(self, params: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    async def create_payment_method(self, params: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    async def confirm_payment_intent(
        self, intent_id: str, params: Dict[str, Any], idempotency_key: str
    ) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    async def retrieve_payment_intent(self, intent_id: str) -> Dict[str, Any]:
        raise NotImplementedError


class StripeGateway(StripeGatewayBase):
    """
    Thin wrapper over ``stripe.StripeClient`` using the async request path.

    The client is built from the injected credentials; the module-level
    ``stripe.api_key`` is never touched.
    """

    def __init__(self, credentials: Credentials, timeout: float = DEFAULT_HTTP_TIMEOUT, client: Any = None):
        if client is None:
            client = stripe.StripeClient(
                credentials.private_key,
                http_client=stripe.HTTPXClient(timeout=timeout),
            )
        self._client = client
        logger.info(f"Stripe client created with key {credentials.masked_private_key}")

    async def _call(self, operation: str, coro):
        try:
            result = await coro
        except stripe.StripeError as e:
            error = translate_stripe_error(e)
            logger.error(
                f"Stripe {operation} failed: {error.message}",
                extra={"code": getattr(error, "code", None), "http_status": getattr(error, "http_status", None)},
            )
            raise error from e
        return result.to_dict()

    async def create_customer(self, params, idempotency_key):
        return await self._call(
            "customer create",
            self._client.customers.create_async(params=params, options={"idempotency_key": idempotency_key}),
        )

    async def list_customers(self, email, limit=1):
        try:
            result = await self._client.customers.list_async(params={"email": email, "limit": limit})
        except stripe.StripeError as e:
            raise translate_stripe_error(e) from e
        return [customer.to_dict() for customer in result.data]

    async def create_payment_intent(self, params, idempotency_key):
        return await self._call(
            "payment intent create",
            self._client.payment_intents.create_async(params=params, options={"idempotency_key": idempotency_key}),
        )

    async def create_payment_method(self, params, idempotency_key):
        return await self._call(
            "payment method create",
            self._client.payment_methods.create_async(params=params, options={"idempotency_key": idempotency_key}),
        )

    async def confirm_payment_intent(self, intent_id, params, idempotency_key):
        return await self._call(
            "payment intent confirm",
            self._client.payment_intents.confirm_async(
                intent_id, params=params, options={"idempotency_key": idempotency_key}
            ),
        )

    async def retrieve_payment_intent(self, intent_id):
        try:
            return await self._call("payment intent retrieve", self._client.payment_intents.retrieve_async(intent_id))
        except ProcessorRejected as e:
            if e.http_status == 404 or e.code == "resource_missing":
                raise NotFound(f"No such payment intent: {intent_id}", processor_id=STRIPE, resource_id=intent_id) from e
            raise


class StripeConnector(ProcessorAdapter):
    """
    Stripe PaymentIntents adapter.

    Cards are a single intent create. OXXO vouchers and SPEI transfers run
    the create -> attach -> confirm sequence because Stripe only mints the
    payable reference on confirmation.
    """

    processor_id = STRIPE
    supported_methods = frozenset({
        PaymentMethod.CARD,
        PaymentMethod.CASH_VOUCHER,
        PaymentMethod.BANK_TRANSFER,
    })

    def __init__(
        self,
        credentials: Optional[Credentials],
        gateway_factory: Optional[GatewayFactory] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        return_url: Optional[str] = None,
        oxxo_expires_after_days: int = 2,
        default_billing_name: str = "Cliente OXXO",
    ):
        if gateway_factory is None:
            def gateway_factory(creds: Credentials) -> StripeGateway:
                return StripeGateway(creds, timeout=timeout)
        super().__init__(credentials, gateway_factory)
        self.return_url = return_url
        self.oxxo_expires_after_days = oxxo_expires_after_days
        self.default_billing_name = default_billing_name

    def _to_customer(self, data: Dict[str, Any], existing: bool = False) -> Customer:
        return Customer(
            processor_id=STRIPE,
            external_customer_id=data["id"],
            name=data.get("name"),
            email=data.get("email"),
            phone=data.get("phone") or None,
            existing=existing,
        )

    async def _create_customer_remote(self, fields, idempotency_key):
        gateway = await self._gateway()
        params = {
            "name": fields["name"],
            "email": fields["email"],
            "metadata": {"source": "payments-orchestrator"},
        }
        if fields["phone"]:
            params["phone"] = fields["phone"]
        customer = await gateway.create_customer(params, idempotency_key)
        return self._to_customer(customer)

    async def find_customer_by_email(self, email: str) -> Optional[Customer]:
        gateway = await self._gateway()
        normalized = email.strip().lower()
        try:
            customers = await gateway.list_customers(normalized)
        except ProcessorRejected as e:
            logger.warning(f"Stripe customer lookup failed, treating as not found: {e.message}")
            return None
        for customer in customers:
            if (customer.get("email") or "").lower() == normalized:
                return self._to_customer(customer, existing=True)
        return None

    def _intent_params(self, request: ChargeRequest, amount: int) -> Dict[str, Any]:
        metadata = {
            **request.metadata,
            "reference_id": request.application_reference_id,
            "application_id": request.application_id,
        }
        if request.device_fingerprint:
            metadata["device_fingerprint"] = request.device_fingerprint
        params = {
            "amount": amount,
            "currency": request.currency.lower(),
            "description": request.description,
            "metadata": metadata,
        }
        if request.customer_id:
            params["customer"] = request.customer_id
        return params

    def _to_result(
        self,
        intent: Dict[str, Any],
        method: PaymentMethod,
        idempotency_key: Optional[str],
        used_fallback: bool = False,
        reference: Optional[PaymentReference] = None,
    ) -> ChargeResult:
        currency = intent.get("currency")
        result = ChargeResult(
            processor_id=STRIPE,
            external_transaction_id=intent["id"],
            method=method,
            status=map_intent_status(intent.get("status"), method),
            amount_minor=intent.get("amount"),
            currency=currency.upper() if currency else None,
            next_action=intent.get("next_action") or None,
            idempotency_key=idempotency_key,
            used_fallback=used_fallback,
            raw=intent,
        )
        if reference is not None:
            result = result.model_copy(update={
                "voucher_reference": reference.voucher_reference,
                "hosted_voucher_url": reference.hosted_voucher_url,
                "expires_at": reference.expires_at,
                "clabe": reference.clabe,
                "next_action": reference.next_action,
            })
        return result

    async def create_card_charge(self, request: ChargeRequest) -> ChargeResult:
        key = IdempotencyKey.for_method(request.method.value, request.idempotency_key)
        amount = to_minor_units(request.amount_decimal, request.currency)
        gateway = await self._gateway()

        logger.debug(
            "Creating Stripe card payment intent",
            extra={
                "reference_id": request.application_reference_id,
                "amount": amount,
                "token": prefix(request.payment_token),
                "device_fingerprint": "present" if request.device_fingerprint else "missing",
                "idempotency_key": key.base_key,
            },
        )

        async def create(req: ChargeRequest, idempotency_key: str) -> Dict[str, Any]:
            params = self._intent_params(req, amount)
            if req.payment_token:
                params["payment_method"] = req.payment_token
                params["payment_method_types"] = ["card"]
                params["confirm"] = True
            else:
                params["automatic_payment_methods"] = {"enabled": True}
            return await gateway.create_payment_intent(params, idempotency_key)

        intent, used_fallback = await run_with_customer_fallback(create, request, key, is_customer_rejection)
        result = self._to_result(intent, request.method, key.current, used_fallback)
        logger.info(
            f"Stripe card intent {result.external_transaction_id} is {result.status.value}",
            extra={"reference_id": request.application_reference_id},
        )
        return result

    async def create_cash_voucher_charge(self, request: ChargeRequest) -> ChargeResult:
        billing_details = {"name": request.customer_name or self.default_billing_name}
        if request.customer_email:
            billing_details["email"] = request.customer_email
        return await self._confirm_sequence(
            request,
            intent_options={
                "payment_method_types": ["oxxo"],
                "payment_method_options": {"oxxo": {"expires_after_days": self.oxxo_expires_after_days}},
            },
            payment_method_params={"type": "oxxo", "billing_details": billing_details},
        )

    async def create_bank_transfer_charge(self, request: ChargeRequest) -> ChargeResult:
        # customer_balance intents are only accepted for an existing customer
        if not request.customer_id:
            raise ValueError("A customer_id is required for SPEI bank transfers")
        return await self._confirm_sequence(
            request,
            intent_options={
                "payment_method_types": ["customer_balance"],
                "payment_method_options": {
                    "customer_balance": {
                        "funding_type": "bank_transfer",
                        "bank_transfer": {"type": "mx_bank_transfer"},
                    },
                },
            },
            payment_method_params={"type": "customer_balance"},
            customer_fallback=False,
        )

    async def _confirm_sequence(
        self,
        request: ChargeRequest,
        intent_options: Dict[str, Any],
        payment_method_params: Dict[str, Any],
        customer_fallback: bool = True,
    ) -> ChargeResult:
        key = IdempotencyKey.for_method(request.method.value, request.idempotency_key)
        amount = to_minor_units(request.amount_decimal, request.currency)
        gateway = await self._gateway()
        confirm_params = {"return_url": self.return_url} if self.return_url else {}

        logger.info(
            f"Processing Stripe {request.method.value} payment",
            extra={"reference_id": request.application_reference_id, "idempotency_key": key.base_key},
        )

        async def run(req: ChargeRequest, idempotency_key: str):
            sequence = ConfirmationSequence(gateway, req.method, STRIPE)
            params = {**self._intent_params(req, amount), **intent_options}
            intent = await sequence.run(params, payment_method_params, confirm_params, idempotency_key)
            return sequence, intent

        (sequence, intent), used_fallback = await run_with_customer_fallback(
            run, request, key, is_customer_rejection if customer_fallback else (lambda error: False)
        )
        reference = sequence.validate(intent)
        result = self._to_result(intent, request.method, key.current, used_fallback, reference)
        logger.info(
            f"Stripe {request.method.value} intent {result.external_transaction_id} awaiting payment",
            extra={
                "reference_id": request.application_reference_id,
                "status": result.status.value,
                "expires_at": result.expires_at,
            },
        )
        return result

    async def get_charge(self, external_transaction_id: str) -> ChargeResult:
        gateway = await self._gateway()
        intent = await gateway.retrieve_payment_intent(external_transaction_id)
        method = method_from_intent(intent)

        reference = None
        next_action = intent.get("next_action") or {}
        if method in EXPECTED_NEXT_ACTION and next_action.get("type") == EXPECTED_NEXT_ACTION[method]:
            try:
                reference = extract_reference(intent, method, STRIPE)
            except IncompleteChargeResult as e:
                logger.warning(f"Stored intent is missing its payable reference: {e.message}")

        logger.debug(f"Fetched Stripe intent {external_transaction_id}: {intent.get('status')}")
        return self._to_result(intent, method, None, reference=reference)
