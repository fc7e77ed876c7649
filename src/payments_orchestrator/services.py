"""Orchestration layer that routes charges to the selected processor adapter."""

import logging
from typing import Any, Dict, Iterable, Mapping, Optional

from .config import CONEKTA, STRIPE, CredentialSource, get_http_timeout
from .connectors.base import ChargeRequest, ChargeResult, Customer, ProcessorAdapter
from .connectors.conekta_connector import ConektaConnector
from .connectors.stripe_connector import StripeConnector
from .exceptions import ConfigurationError, PaymentError, UnsupportedPaymentMethod

logger = logging.getLogger(__name__)

ADAPTER_CLASSES = {
    CONEKTA: ConektaConnector,
    STRIPE: StripeConnector,
}


class PaymentOrchestrator:
    """Service class routing charge operations to processor adapters."""

    def __init__(self, adapters: Mapping[str, ProcessorAdapter]):
        """Initialize the orchestrator with its adapters.

        Args:
            adapters: Adapter per processor id. Callers choose the processor
                explicitly on every operation; there is no automatic failover.
        """
        self.adapters: Dict[str, ProcessorAdapter] = dict(adapters)

    @classmethod
    def from_credential_source(
        cls,
        source: CredentialSource,
        processor_ids: Optional[Iterable[str]] = None,
        timeout: Optional[float] = None,
        adapter_options: Optional[Mapping[str, Dict[str, Any]]] = None,
    ) -> "PaymentOrchestrator":
        """Build real adapters from a credential source.

        Missing credentials are fatal in production. Elsewhere the adapter is
        still created and fails every call with ``ProcessorUnavailable``.

        Raises:
            ConfigurationError: If a processor id is unknown, or credentials
                are missing in production.
        """
        timeout = timeout if timeout is not None else get_http_timeout()
        adapter_options = adapter_options or {}
        adapters = {}
        for processor_id in processor_ids or ADAPTER_CLASSES:
            adapter_class = ADAPTER_CLASSES.get(processor_id)
            if adapter_class is None:
                raise ConfigurationError(f"Unknown processor {processor_id!r}", processor_id=processor_id)
            credentials = source.get_credentials(processor_id) if source.check(processor_id) else None
            adapters[processor_id] = adapter_class(
                credentials, timeout=timeout, **adapter_options.get(processor_id, {})
            )
        logger.info(f"Payment orchestrator configured for {', '.join(adapters)}")
        return cls(adapters)

    def adapter(self, processor_id: str) -> ProcessorAdapter:
        """Return the adapter for ``processor_id``.

        Raises:
            ConfigurationError: If no adapter is registered under that id.
        """
        try:
            return self.adapters[processor_id]
        except KeyError:
            raise ConfigurationError(
                f"Unknown processor {processor_id!r}", processor_id=processor_id
            ) from None

    async def charge(self, request: ChargeRequest, processor_id: str) -> ChargeResult:
        """Create a charge on the selected processor.

        Args:
            request: The charge to create.
            processor_id: Processor chosen by the caller.

        Returns:
            The canonical charge result. Cash vouchers always carry a voucher
            reference; bank transfers always carry a CLABE.

        Raises:
            UnsupportedPaymentMethod: If the processor does not offer the
                method. Raised before any processor call.
            ProcessorUnavailable: If the adapter is degraded or unreachable.
            ProcessorRejected: If the processor refused the charge.
            IncompleteChargeResult: If the payable reference never came back.
        """
        adapter = self.adapter(processor_id)
        if not adapter.supports(request.method):
            raise UnsupportedPaymentMethod(
                f"{processor_id} does not support {request.method.value} payments",
                processor_id=processor_id,
            )

        logger.info(
            f"Charging {request.amount_decimal} {request.currency} via {processor_id} ({request.method.value})",
            extra={"application_reference_id": request.application_reference_id},
        )
        try:
            result = await adapter.charge(request)
        except PaymentError as e:
            logger.error(
                f"{processor_id} {request.method.value} charge failed: {type(e).__name__}: {e.message}",
                extra={"application_reference_id": request.application_reference_id},
            )
            raise

        if result.used_fallback:
            logger.warning(
                f"Charge {result.external_transaction_id} was created without customer {request.customer_id}",
                extra={"application_reference_id": request.application_reference_id},
            )
        logger.info(
            f"Charge {result.external_transaction_id} created with status {result.status.value}",
            extra={"processor_id": processor_id, "idempotency_key": result.idempotency_key},
        )
        return result

    async def lookup_charge(self, processor_id: str, external_transaction_id: str) -> ChargeResult:
        """Fetch the current state of a charge.

        Raises:
            NotFound: If the processor has no such transaction.
        """
        adapter = self.adapter(processor_id)
        result = await adapter.get_charge(external_transaction_id)
        logger.info(f"Charge {external_transaction_id} on {processor_id} is {result.status.value}")
        return result

    async def create_customer(
        self,
        processor_id: str,
        name: str,
        email: str,
        phone: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Customer:
        """Create (or reuse) a customer on the selected processor."""
        return await self.adapter(processor_id).create_customer(
            name, email, phone=phone, idempotency_key=idempotency_key
        )

    def health_check(self) -> Dict[str, Dict[str, Any]]:
        return {processor_id: adapter.health_check() for processor_id, adapter in self.adapters.items()}

    async def aclose(self) -> None:
        for adapter in self.adapters.values():
            await adapter.aclose()

    def reset(self) -> None:
        """Reset every adapter to uninitialized. Test isolation only."""
        for adapter in self.adapters.values():
            adapter.reset()
