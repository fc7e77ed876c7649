"""
Example checkout flows for Mexican payment methods.

Runs against the simulated processors by default. Set PAYMENTS_USE_REAL_PROCESSORS=1
together with CONEKTA_PRIVATE_KEY / STRIPE_API_KEY (test keys) to hit the
processors' sandboxes instead.
"""
import asyncio
import logging
import os
from decimal import Decimal

from payments_orchestrator import (
    CONEKTA,
    STRIPE,
    ChargeRequest,
    EnvironmentCredentialSource,
    PaymentMethod,
    PaymentOrchestrator,
    ProcessorRejected,
    configure_logging,
)
from payments_orchestrator.connectors import build_simulated_adapters


def build_orchestrator() -> PaymentOrchestrator:
    if os.environ.get("PAYMENTS_USE_REAL_PROCESSORS") == "1":
        return PaymentOrchestrator.from_credential_source(EnvironmentCredentialSource())
    return PaymentOrchestrator(build_simulated_adapters())


# =============================================================================
# OXXO cash voucher
# =============================================================================
async def create_oxxo_voucher(orchestrator: PaymentOrchestrator, processor_id: str):
    """
    OXXO lets customers pay in cash at any OXXO store using a printed or
    on-screen reference. The charge stays awaiting_payment until they pay.
    """
    request = ChargeRequest(
        amount_decimal=Decimal("150.00"),  # $150.00 MXN
        method=PaymentMethod.CASH_VOUCHER,
        application_reference_id="APP-1042",
        customer_name="María López",
        customer_email="maria.lopez@example.com",
    )
    result = await orchestrator.charge(request, processor_id)
    print(f"{processor_id} OXXO reference: {result.voucher_reference} (expires at {result.expires_at})")
    return result


# =============================================================================
# SPEI bank transfer (Stripe only)
# =============================================================================
async def create_spei_transfer(orchestrator: PaymentOrchestrator):
    """
    SPEI transfers are paid from the customer's banking app to a CLABE
    assigned to the charge. Stripe only issues a CLABE for a known customer.
    """
    customer = await orchestrator.create_customer(STRIPE, "Juan Pérez", "juan.perez@example.com")
    request = ChargeRequest(
        amount_decimal=Decimal("1250.00"),
        method=PaymentMethod.BANK_TRANSFER,
        customer_id=customer.external_customer_id,
        application_reference_id="APP-1043",
        customer_name="Juan Pérez",
        customer_email="juan.perez@example.com",
    )
    result = await orchestrator.charge(request, STRIPE)
    print(f"Transfer {result.amount_minor} centavos to CLABE {result.clabe}")
    return result


# =============================================================================
# Card
# =============================================================================
async def create_card_payment(orchestrator: PaymentOrchestrator, token: str = "sim_card_success"):
    request = ChargeRequest(
        amount_decimal=Decimal("99.995"),  # rounds half-up to 10000 centavos
        method=PaymentMethod.CARD,
        application_reference_id="APP-1044",
        payment_token=token,
        customer_name="Ana Ruiz",
        customer_email="ana.ruiz@example.com",
        device_fingerprint="fp_0f1e2d3c4b5a",
    )
    try:
        result = await orchestrator.charge(request, CONEKTA)
    except ProcessorRejected as e:
        print(f"Card rejected: {e.user_message}")
        return None
    print(f"Card charge {result.external_transaction_id}: {result.status.value}")
    return result


async def main():
    configure_logging(logging.INFO)
    orchestrator = build_orchestrator()
    try:
        voucher = await create_oxxo_voucher(orchestrator, STRIPE)
        await create_oxxo_voucher(orchestrator, CONEKTA)
        await create_spei_transfer(orchestrator)
        await create_card_payment(orchestrator)
        await create_card_payment(orchestrator, token="sim_card_decline")

        current = await orchestrator.lookup_charge(STRIPE, voucher.external_transaction_id)
        print(f"Voucher {current.external_transaction_id} is {current.status.value}")
    finally:
        await orchestrator.aclose()


if __name__ == "__main__":
    asyncio.run(main())
