import logging
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..amounts import to_decimal
from ..config import Credentials
from ..exceptions import ConfigurationError, ProcessorRejected, UnsupportedPaymentMethod
from ..idempotency import base_key
from ..lazy import InitState, LazyClient

logger = logging.getLogger(__name__)


class PaymentMethod(str, Enum):
    CARD = "card"
    CASH_VOUCHER = "cash_voucher"
    BANK_TRANSFER = "bank_transfer"


class ChargeStatus(str, Enum):
    """Canonical charge states shared by every processor."""
    AWAITING_PAYMENT = "awaiting_payment"
    PROCESSING = "processing"
    REQUIRES_ACTION = "requires_action"
    PAID = "paid"
    FAILED = "failed"
    CANCELED = "canceled"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


PENDING_STATUSES = frozenset({
    ChargeStatus.AWAITING_PAYMENT,
    ChargeStatus.PROCESSING,
    ChargeStatus.REQUIRES_ACTION,
})


# Canonical models
class Customer(BaseModel):
    processor_id: str
    external_customer_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    existing: bool = False


class ChargeRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount_decimal: Decimal
    currency: str = "MXN"
    method: PaymentMethod
    customer_id: Optional[str] = None
    description: str = "Permiso de Circulación"
    application_reference_id: str
    idempotency_key: Optional[str] = None
    device_fingerprint: Optional[str] = None
    payment_token: Optional[str] = None  # card token / PaymentMethod id
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    # Fixed once per logical request so replays send identical bodies
    requested_at: int = Field(default_factory=lambda: int(time.time()))
    expires_at: Optional[int] = None  # cash voucher expiry override, unix timestamp

    @field_validator("amount_decimal", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Decimal:
        return to_decimal(value)

    @field_validator("amount_decimal")
    @classmethod
    def _positive_amount(cls, value: Decimal) -> Decimal:
        if not value.is_finite() or value <= 0:
            raise ValueError("amount_decimal must be greater than zero")
        return value

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("customer_email")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().lower() if value else value

    @property
    def application_id(self) -> str:
        """``APP-123`` -> ``123``; other references pass through unchanged."""
        reference = self.application_reference_id
        if reference.startswith("APP-") and reference[4:].isdigit():
            return reference[4:]
        return reference

    def without_customer(self) -> "ChargeRequest":
        return self.model_copy(update={"customer_id": None})


class ChargeResult(BaseModel):
    processor_id: str
    external_transaction_id: str
    method: PaymentMethod
    status: ChargeStatus
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    voucher_reference: Optional[str] = None  # cash voucher only
    hosted_voucher_url: Optional[str] = None
    expires_at: Optional[int] = None  # unix timestamp
    clabe: Optional[str] = None  # bank transfer only
    next_action: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = None
    used_fallback: bool = False
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def next_action_required(self) -> bool:
        return self.next_action is not None

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_STATUSES


GatewayFactory = Callable[[Credentials], Union[Any, Awaitable[Any]]]


class ProcessorAdapter(ABC):
    """
    Uniform contract over one external payment processor.

    Adapters never touch the vendor SDK directly: they talk to a gateway
    built lazily from the injected credentials, so a failed build degrades
    every operation to ``ProcessorUnavailable`` instead of crashing.
    """

    processor_id: str = ""
    supported_methods: FrozenSet[PaymentMethod] = frozenset()

    def __init__(self, credentials: Optional[Credentials], gateway_factory: GatewayFactory):
        self.credentials = credentials
        self._gateway_factory = gateway_factory
        self._client = LazyClient(self._build_gateway, name=self.processor_id)

    def _build_gateway(self):
        if self.credentials is None:
            raise ConfigurationError(
                f"{self.processor_id} credentials are not configured",
                processor_id=self.processor_id,
            )
        return self._gateway_factory(self.credentials)

    async def _gateway(self):
        return await self._client.get()

    @property
    def state(self):
        return self._client.state

    def supports(self, method: PaymentMethod) -> bool:
        return method in self.supported_methods

    async def charge(self, request: ChargeRequest) -> ChargeResult:
        """Dispatch ``request`` to the method-specific operation."""
        if not self.supports(request.method):
            raise UnsupportedPaymentMethod(
                f"{self.processor_id} does not support {request.method.value} payments",
                processor_id=self.processor_id,
            )
        if request.method == PaymentMethod.CARD:
            return await self.create_card_charge(request)
        if request.method == PaymentMethod.CASH_VOUCHER:
            return await self.create_cash_voucher_charge(request)
        return await self.create_bank_transfer_charge(request)

    async def create_customer(
        self,
        name: str,
        email: str,
        phone: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Customer:
        """Create a customer, reusing an existing one with the same email.

        A 409 from the processor means another request created the customer
        first; it is resolved by looking the customer up by email.

        Raises:
            ValueError: If name or email is missing.
            ProcessorUnavailable: If the adapter cannot initialize.
            ProcessorRejected: If the processor refuses the customer.
        """
        fields = normalize_customer_input(name, email, phone)
        key = idempotency_key or base_key("customer")

        existing = await self.find_customer_by_email(fields["email"])
        if existing is not None:
            logger.debug(f"{self.processor_id} customer already exists: {existing.external_customer_id}")
            return existing

        logger.debug(
            f"Creating {self.processor_id} customer",
            extra={"email": fields["email"], "idempotency_key": key},
        )
        try:
            customer = await self._create_customer_remote(fields, key)
        except ProcessorRejected as e:
            if e.http_status != 409:
                raise
            logger.debug(f"Duplicate {self.processor_id} customer reported, fetching existing record")
            existing = await self.find_customer_by_email(fields["email"])
            if existing is None:
                raise
            return existing

        logger.info(f"Created {self.processor_id} customer {customer.external_customer_id}")
        return customer

    @abstractmethod
    async def _create_customer_remote(self, fields: Dict[str, str], idempotency_key: str) -> Customer:
        raise NotImplementedError

    @abstractmethod
    async def find_customer_by_email(self, email: str) -> Optional[Customer]:
        """
        Best-effort lookup. Returns None when nothing matches; raises
        ProcessorUnavailable only on transport failure.
        """
        raise NotImplementedError

    @abstractmethod
    async def create_card_charge(self, request: ChargeRequest) -> ChargeResult:
        raise NotImplementedError

    @abstractmethod
    async def create_cash_voucher_charge(self, request: ChargeRequest) -> ChargeResult:
        """
        Create a cash voucher. A result without a voucher reference is never
        returned: IncompleteChargeResult is raised instead.
        """
        raise NotImplementedError

    async def create_bank_transfer_charge(self, request: ChargeRequest) -> ChargeResult:
        raise UnsupportedPaymentMethod(
            f"{self.processor_id} does not support bank transfer payments",
            processor_id=self.processor_id,
        )

    @abstractmethod
    async def get_charge(self, external_transaction_id: str) -> ChargeResult:
        raise NotImplementedError

    def health_check(self) -> Dict[str, Any]:
        return {
            "ok": self._client.state != InitState.FAILED,
            "provider": self.processor_id,
            "state": self._client.state.value,
            "methods": sorted(m.value for m in self.supported_methods),
        }

    async def aclose(self) -> None:
        await self._client.aclose()

    def reset(self) -> None:
        """Drop the gateway so the next call rebuilds it. Test isolation only."""
        self._client.reset()


def normalize_customer_input(name: str, email: str, phone: Optional[str]) -> Dict[str, str]:
    """Validate and trim customer fields shared by every processor."""
    if not name or not name.strip():
        raise ValueError("Customer name is required")
    if not email or not email.strip():
        raise ValueError("Customer email is required")
    return {
        "name": name.strip(),
        "email": email.strip().lower(),
        "phone": phone.strip() if phone else "",
    }
