"""Create -> attach payment method -> confirm, for intent-based processors.

Cash vouchers and bank transfers only get their payable reference (voucher
number, CLABE) when the intent is confirmed with an attached payment method.
The sequence runs the three calls in order and refuses to report success
unless the confirmed intent actually carries that reference.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..exceptions import IncompleteChargeResult
from ..idempotency import step_key
from .base import PaymentMethod

logger = logging.getLogger(__name__)

OXXO_DISPLAY_DETAILS = "oxxo_display_details"
BANK_TRANSFER_INSTRUCTIONS = "display_bank_transfer_instructions"

# Method -> the next_action type that proves the reference was minted
EXPECTED_NEXT_ACTION = {
    PaymentMethod.CASH_VOUCHER: OXXO_DISPLAY_DETAILS,
    PaymentMethod.BANK_TRANSFER: BANK_TRANSFER_INSTRUCTIONS,
}


class SequenceState(str, Enum):
    PENDING = "pending"
    CREATED = "created"
    METHOD_ATTACHED = "method_attached"
    CONFIRMED = "confirmed"


@dataclass
class PaymentReference:
    """The consumer-facing payment details pulled from a confirmed intent."""
    next_action: Dict[str, Any]
    voucher_reference: Optional[str] = None
    hosted_voucher_url: Optional[str] = None
    expires_at: Optional[int] = None
    clabe: Optional[str] = None


@dataclass
class ConfirmationSequence:
    """One run of the three-step confirmation against a gateway.

    ``history`` records every state reached, in order, so callers and tests
    can check that no step was skipped.
    """
    gateway: Any
    method: PaymentMethod
    processor_id: str = "stripe"
    state: SequenceState = SequenceState.PENDING
    history: List[SequenceState] = field(default_factory=list)
    intent_id: Optional[str] = None
    payment_method_id: Optional[str] = None

    def _advance(self, state: SequenceState) -> None:
        self.state = state
        self.history.append(state)

    async def run(
        self,
        intent_params: Dict[str, Any],
        payment_method_params: Dict[str, Any],
        confirm_params: Dict[str, Any],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        """Run all three steps and return the confirmed intent.

        Raises:
            IncompleteChargeResult: If the confirmed intent lacks the
                payable reference for ``method``.
        """
        intent = await self.gateway.create_payment_intent(intent_params, idempotency_key)
        self.intent_id = intent["id"]
        self._advance(SequenceState.CREATED)
        logger.debug(f"Intent {self.intent_id} created for {self.method.value}")

        payment_method = await self.gateway.create_payment_method(
            payment_method_params, step_key(idempotency_key, "payment-method")
        )
        self.payment_method_id = payment_method["id"]
        self._advance(SequenceState.METHOD_ATTACHED)

        confirmed = await self.gateway.confirm_payment_intent(
            self.intent_id,
            {**confirm_params, "payment_method": self.payment_method_id},
            step_key(idempotency_key, "confirm"),
        )
        self._advance(SequenceState.CONFIRMED)
        logger.info(
            f"Intent {self.intent_id} confirmed",
            extra={
                "processor_id": self.processor_id,
                "status": confirmed.get("status"),
                "next_action_type": (confirmed.get("next_action") or {}).get("type"),
            },
        )
        return confirmed

    def validate(self, intent: Dict[str, Any]) -> PaymentReference:
        return extract_reference(intent, self.method, self.processor_id)


def extract_reference(intent: Dict[str, Any], method: PaymentMethod, processor_id: str = "stripe") -> PaymentReference:
    """Pull the payable reference out of a confirmed intent or raise."""
    intent_id = intent.get("id")
    expected = EXPECTED_NEXT_ACTION[method]
    next_action = intent.get("next_action") or {}

    if next_action.get("type") != expected:
        logger.error(
            f"Intent {intent_id} missing {expected} next action",
            extra={"status": intent.get("status"), "next_action_type": next_action.get("type")},
        )
        raise IncompleteChargeResult(
            f"Confirmed intent {intent_id} did not return {expected}",
            processor_id=processor_id,
            external_transaction_id=intent_id,
            raw=intent,
        )

    details = next_action.get(expected) or {}
    if method == PaymentMethod.CASH_VOUCHER:
        number = details.get("number")
        if not number:
            raise IncompleteChargeResult(
                f"Confirmed intent {intent_id} has no voucher number",
                processor_id=processor_id,
                external_transaction_id=intent_id,
                raw=intent,
            )
        if not details.get("hosted_voucher_url"):
            logger.warning(f"Intent {intent_id} has no hosted voucher URL")
        return PaymentReference(
            next_action=next_action,
            voucher_reference=str(number),
            hosted_voucher_url=details.get("hosted_voucher_url"),
            expires_at=details.get("expires_after"),
        )

    clabe = None
    for address in details.get("financial_addresses") or []:
        spei = address.get("spei") or {}
        if spei.get("clabe"):
            clabe = spei["clabe"]
            break
    if not clabe:
        raise IncompleteChargeResult(
            f"Confirmed intent {intent_id} has no CLABE",
            processor_id=processor_id,
            external_transaction_id=intent_id,
            raw=intent,
        )
    return PaymentReference(
        next_action=next_action,
        hosted_voucher_url=details.get("hosted_instructions_url"),
        clabe=clabe,
    )
