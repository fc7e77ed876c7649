"""The single customer-reference fallback.

Processors sometimes reject a charge because of the customer id it carries
(deleted customer, customer created under another key). Only that case is
recovered: the charge is resubmitted once without the customer, under the
derived idempotency key. Anything else propagates untouched.
"""

import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Tuple, TypeVar

from .exceptions import ProcessorRejected
from .idempotency import IdempotencyKey

if TYPE_CHECKING:
    from .connectors.base import ChargeRequest

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChargeOperation = Callable[["ChargeRequest", str], Awaitable[T]]
RejectionMatcher = Callable[[ProcessorRejected], bool]


async def run_with_customer_fallback(
    operation: ChargeOperation,
    request: "ChargeRequest",
    key: IdempotencyKey,
    is_customer_rejection: RejectionMatcher,
) -> Tuple[T, bool]:
    """Run ``operation`` and retry once without ``customer_id`` if allowed.

    Args:
        operation: Coroutine function taking the request and the idempotency
            key to send.
        request: The original charge request.
        key: Keys for this logical request; the derived key is taken from it
            at most once.
        is_customer_rejection: Adapter-local predicate deciding whether a
            rejection is attributable to the customer reference.

    Returns:
        The operation result and whether the fallback produced it.
    """
    try:
        return await operation(request, key.base_key), False
    except ProcessorRejected as e:
        if not request.customer_id or not is_customer_rejection(e):
            raise
        logger.warning(
            f"Processor rejected customer {request.customer_id}; retrying once without it",
            extra={
                "processor_id": e.processor_id,
                "code": e.code,
                "application_reference_id": request.application_reference_id,
            },
        )

    fallback_key = key.next_attempt()
    result = await operation(request.without_customer(), fallback_key)
    logger.info(
        f"Fallback charge succeeded with key {fallback_key}",
        extra={"application_reference_id": request.application_reference_id},
    )
    return result, True
