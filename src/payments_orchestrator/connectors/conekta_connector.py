import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from ..amounts import to_minor_units
from ..config import CONEKTA, DEFAULT_HTTP_TIMEOUT, Credentials
from ..exceptions import IncompleteChargeResult, NotFound, ProcessorRejected, ProcessorUnavailable
from ..idempotency import IdempotencyKey
from ..redaction import prefix, sanitize_payload
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

logger = logging.getLogger(__name__)

CONEKTA_API_URL = "https://api.conekta.io"
CONEKTA_ACCEPT = "application/vnd.conekta-v2.1.0+json"

OXXO_EXPIRATION_SECONDS = 24 * 60 * 60
DEFAULT_PHONE = "+525555555555"

ORDER_STATUS_MAP = {
    "paid": ChargeStatus.PAID,
    "pending_payment": ChargeStatus.AWAITING_PAYMENT,
    "pre_authorized": ChargeStatus.PROCESSING,
    "declined": ChargeStatus.FAILED,
    "expired": ChargeStatus.EXPIRED,
    "canceled": ChargeStatus.CANCELED,
    "voided": ChargeStatus.CANCELED,
    "refunded": ChargeStatus.CANCELED,
}

CASH_METHOD_TYPES = frozenset({"oxxo", "oxxo_cash", "cash"})
CUSTOMER_PARAMS = frozenset({"customer_info.customer_id", "customer_id"})


def format_phone_number(phone: str) -> str:
    """Normalize a phone number to the +52 format Conekta accepts."""
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) < 10:
        return DEFAULT_PHONE
    if len(digits) == 10:
        return f"+52{digits}"
    return f"+{digits}"


def translate_http_error(response: httpx.Response) -> ProcessorRejected:
    """Build a ProcessorRejected from a Conekta error response."""
    try:
        body = response.json()
    except ValueError:
        body = {"message": response.text}
    if not isinstance(body, dict):
        body = {"message": str(body)}

    details = body.get("details") or []
    first = details[0] if details else {}
    message = (
        first.get("message")
        or first.get("debug_message")
        or body.get("message")
        or f"Conekta returned HTTP {response.status_code}"
    )
    return ProcessorRejected(
        message,
        processor_id=CONEKTA,
        code=first.get("code") or body.get("type"),
        http_status=response.status_code,
        param=first.get("param"),
        raw=body,
    )


def map_order_status(payment_status: Optional[str]) -> ChargeStatus:
    return ORDER_STATUS_MAP.get(payment_status, ChargeStatus.UNKNOWN)


def first_charge(order: Dict[str, Any]) -> Dict[str, Any]:
    charges = (order.get("charges") or {}).get("data") or []
    return charges[0] if charges else {}


def method_from_order(order: Dict[str, Any]) -> PaymentMethod:
    payment_method = first_charge(order).get("payment_method") or {}
    if payment_method.get("type") in CASH_METHOD_TYPES:
        return PaymentMethod.CASH_VOUCHER
    return PaymentMethod.CARD


def is_customer_rejection(error: ProcessorRejected) -> bool:
    """True when Conekta refused the order because of ``customer_info.customer_id``."""
    if error.http_status is None or not 400 <= error.http_status < 500:
        return False
    if error.param in CUSTOMER_PARAMS:
        return True
    for detail in error.raw.get("details") or []:
        if detail.get("param") in CUSTOMER_PARAMS:
            return True
        code = detail.get("code") or ""
        if "customer" in code and "not_found" in code:
            return True
    return False


class ConektaGatewayBase(ABC):
    """The Conekta calls the adapter makes, with plain-dict results."""

    @abstractmethod
    async def create_customer(self, payload: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    async def list_customers(self, email: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    async def create_order(self, payload: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    async def get_order(self, order_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class ConektaGateway(ConektaGatewayBase):
    """Conekta REST API over an ``httpx.AsyncClient``."""

    def __init__(
        self,
        credentials: Credentials,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        base_url: str = CONEKTA_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Accept": CONEKTA_ACCEPT,
                "Content-Type": "application/json",
                "Authorization": f"Bearer {credentials.private_key}",
            },
        )
        logger.info(
            f"Conekta client created with key {credentials.masked_private_key}",
            extra={"base_url": base_url},
        )

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            response = await self._http.request(method, path, json=json, params=params, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            error = translate_http_error(e.response)
            logger.error(
                f"Conekta {method} {path} failed: {error.message}",
                extra={"http_status": error.http_status, "code": error.code},
            )
            raise error from e
        except httpx.TransportError as e:
            logger.error(f"Conekta {method} {path} transport failure: {e!r}")
            raise ProcessorUnavailable(f"Could not reach Conekta: {e}", processor_id=CONEKTA, cause=e) from e
        try:
            return response.json()
        except ValueError as e:
            logger.error(
                f"Conekta {method} {path} returned a non-JSON body",
                extra={"http_status": response.status_code},
            )
            raise ProcessorRejected(
                f"Conekta returned an unreadable response for {method} {path}",
                processor_id=CONEKTA,
                code="invalid_response",
                http_status=response.status_code,
                raw={"body": response.text},
            ) from e

    async def create_customer(self, payload, idempotency_key):
        return await self._request("POST", "/customers", json=payload, idempotency_key=idempotency_key)

    async def list_customers(self, email):
        # No server-side email filter; search is fuzzy and filtered by the caller
        body = await self._request("GET", "/customers", params={"search": email, "limit": 20})
        return body.get("data") or []

    async def create_order(self, payload, idempotency_key):
        return await self._request("POST", "/orders", json=payload, idempotency_key=idempotency_key)

    async def get_order(self, order_id):
        try:
            return await self._request("GET", f"/orders/{order_id}")
        except ProcessorRejected as e:
            if e.http_status == 404:
                raise NotFound(f"No such order: {order_id}", processor_id=CONEKTA, resource_id=order_id) from e
            raise

    async def aclose(self) -> None:
        await self._http.aclose()


class ConektaConnector(ProcessorAdapter):
    """
    Conekta orders adapter.

    Conekta returns the OXXO reference synchronously on the order's first
    charge, so cash vouchers are a single call validated in place. Bank
    transfers are not offered through this processor.
    """

    processor_id = CONEKTA
    supported_methods = frozenset({PaymentMethod.CARD, PaymentMethod.CASH_VOUCHER})

    def __init__(
        self,
        credentials: Optional[Credentials],
        gateway_factory: Optional[GatewayFactory] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        oxxo_expiration_seconds: int = OXXO_EXPIRATION_SECONDS,
    ):
        if gateway_factory is None:
            def gateway_factory(creds: Credentials) -> ConektaGateway:
                return ConektaGateway(creds, timeout=timeout)
        super().__init__(credentials, gateway_factory)
        self.oxxo_expiration_seconds = oxxo_expiration_seconds

    def _to_customer(self, data: Dict[str, Any], existing: bool = False) -> Customer:
        return Customer(
            processor_id=CONEKTA,
            external_customer_id=data["id"],
            name=data.get("name"),
            email=data.get("email"),
            phone=data.get("phone") or None,
            existing=existing,
        )

    async def _create_customer_remote(self, fields, idempotency_key):
        gateway = await self._gateway()
        payload = {"name": fields["name"], "email": fields["email"]}
        if fields["phone"]:
            payload["phone"] = format_phone_number(fields["phone"])
        customer = await gateway.create_customer(payload, idempotency_key)
        return self._to_customer(customer)

    async def find_customer_by_email(self, email: str) -> Optional[Customer]:
        gateway = await self._gateway()
        normalized = email.strip().lower()
        try:
            customers = await gateway.list_customers(normalized)
        except ProcessorRejected as e:
            logger.warning(f"Conekta customer lookup failed, treating as not found: {e.message}")
            return None
        for customer in customers:
            if (customer.get("email") or "").lower() == normalized:
                return self._to_customer(customer, existing=True)
        return None

    def _build_order(self, request: ChargeRequest, amount: int, payment_method: Dict[str, Any]) -> Dict[str, Any]:
        customer_info = {}
        if request.customer_name:
            customer_info["name"] = request.customer_name
        if request.customer_email:
            customer_info["email"] = request.customer_email
        if request.customer_id:
            customer_info["customer_id"] = request.customer_id

        charge = {"payment_method": payment_method, "amount": amount}
        if request.device_fingerprint:
            charge["device_fingerprint"] = request.device_fingerprint

        return {
            "currency": request.currency,
            "customer_info": customer_info,
            "line_items": [{"name": request.description, "unit_price": amount, "quantity": 1}],
            "charges": [charge],
            "metadata": {
                **request.metadata,
                "reference_id": request.application_reference_id,
                "application_id": request.application_id,
            },
        }

    def _to_result(
        self,
        order: Dict[str, Any],
        method: PaymentMethod,
        idempotency_key: Optional[str],
        used_fallback: bool = False,
    ) -> ChargeResult:
        payment_method = first_charge(order).get("payment_method") or {}
        result = ChargeResult(
            processor_id=CONEKTA,
            external_transaction_id=order["id"],
            method=method,
            status=map_order_status(order.get("payment_status")),
            amount_minor=order.get("amount"),
            currency=order.get("currency"),
            idempotency_key=idempotency_key,
            used_fallback=used_fallback,
            raw=order,
        )
        if method == PaymentMethod.CASH_VOUCHER and payment_method.get("reference"):
            result = result.model_copy(update={
                "voucher_reference": str(payment_method["reference"]),
                "expires_at": payment_method.get("expires_at"),
                "next_action": {
                    "type": "oxxo_cash",
                    "reference": str(payment_method["reference"]),
                    "expires_at": payment_method.get("expires_at"),
                },
            })
        return result

    async def _create_order(
        self,
        request: ChargeRequest,
        amount: int,
        payment_method: Dict[str, Any],
    ) -> ChargeResult:
        key = IdempotencyKey.for_method(request.method.value, request.idempotency_key)
        gateway = await self._gateway()

        async def create(req: ChargeRequest, idempotency_key: str) -> Dict[str, Any]:
            order = self._build_order(req, amount, payment_method)
            logger.debug(
                "Creating Conekta order",
                extra={
                    "order": sanitize_payload(order),
                    "has_customer_id": bool(req.customer_id),
                    "idempotency_key": idempotency_key,
                },
            )
            return await gateway.create_order(order, idempotency_key)

        order, used_fallback = await run_with_customer_fallback(create, request, key, is_customer_rejection)
        return self._to_result(order, request.method, key.current, used_fallback)

    async def create_card_charge(self, request: ChargeRequest) -> ChargeResult:
        if not request.payment_token:
            raise ValueError("Card token is required for card payments")
        amount = to_minor_units(request.amount_decimal, request.currency)
        logger.debug(
            "Processing Conekta card payment",
            extra={
                "reference_id": request.application_reference_id,
                "token": prefix(request.payment_token),
                "device_fingerprint": "present" if request.device_fingerprint else "missing",
            },
        )
        result = await self._create_order(
            request, amount, {"type": "card", "token_id": request.payment_token}
        )
        logger.info(
            f"Conekta card order {result.external_transaction_id} is {result.status.value}",
            extra={"reference_id": request.application_reference_id},
        )
        return result

    async def create_cash_voucher_charge(self, request: ChargeRequest) -> ChargeResult:
        amount = to_minor_units(request.amount_decimal, request.currency)
        expires_at = request.expires_at or request.requested_at + self.oxxo_expiration_seconds
        result = await self._create_order(
            request, amount, {"type": "oxxo_cash", "expires_at": expires_at}
        )
        if not result.voucher_reference:
            logger.error(
                f"Conekta order {result.external_transaction_id} has no OXXO reference",
                extra={"reference_id": request.application_reference_id},
            )
            raise IncompleteChargeResult(
                f"Conekta order {result.external_transaction_id} did not return an OXXO reference",
                processor_id=CONEKTA,
                external_transaction_id=result.external_transaction_id,
                raw=result.raw,
            )
        logger.info(
            f"Conekta OXXO order {result.external_transaction_id} awaiting payment",
            extra={"reference_id": request.application_reference_id, "expires_at": result.expires_at},
        )
        return result

    async def get_charge(self, external_transaction_id: str) -> ChargeResult:
        gateway = await self._gateway()
        order = await gateway.get_order(external_transaction_id)
        return self._to_result(order, method_from_order(order), None)
