"""Tests for the single customer-reference fallback."""

import pytest
from decimal import Decimal
from unittest.mock import AsyncMock

from payments_orchestrator.connectors.base import ChargeRequest, PaymentMethod
from payments_orchestrator.exceptions import ProcessorRejected, ProcessorUnavailable
from payments_orchestrator.idempotency import IdempotencyKey
from payments_orchestrator.retry import run_with_customer_fallback


def customer_rejection(error: ProcessorRejected) -> bool:
    return error.param == "customer"


@pytest.fixture
def request_with_customer() -> ChargeRequest:
    return ChargeRequest(
        amount_decimal=Decimal("150.00"),
        method=PaymentMethod.CARD,
        customer_id="cus_deleted",
        application_reference_id="APP-7",
    )


def rejected(param=None, http_status=400):
    return ProcessorRejected("No such customer", processor_id="stripe", code="resource_missing",
                             http_status=http_status, param=param)


class TestCustomerFallback:
    """Tests for run_with_customer_fallback."""

    async def test_success_on_first_attempt(self, request_with_customer):
        operation = AsyncMock(return_value={"id": "pi_1"})
        key = IdempotencyKey.for_method("card", "k-1")

        result, used_fallback = await run_with_customer_fallback(
            operation, request_with_customer, key, customer_rejection
        )

        assert result == {"id": "pi_1"}
        assert used_fallback is False
        operation.assert_awaited_once_with(request_with_customer, "k-1")

    async def test_customer_rejection_retries_once_without_customer(self, request_with_customer):
        operation = AsyncMock(side_effect=[rejected(param="customer"), {"id": "pi_2"}])
        key = IdempotencyKey.for_method("card", "k-1")

        result, used_fallback = await run_with_customer_fallback(
            operation, request_with_customer, key, customer_rejection
        )

        assert result == {"id": "pi_2"}
        assert used_fallback is True
        assert operation.await_count == 2
        retried_request, retried_key = operation.await_args_list[1].args
        assert retried_request.customer_id is None
        assert retried_request.amount_decimal == request_with_customer.amount_decimal
        assert retried_key == "k-1-fallback"
        assert key.current == "k-1-fallback"

    async def test_second_customer_rejection_propagates(self, request_with_customer):
        operation = AsyncMock(side_effect=[rejected(param="customer"), rejected(param="customer")])
        key = IdempotencyKey.for_method("card", "k-1")

        with pytest.raises(ProcessorRejected):
            await run_with_customer_fallback(operation, request_with_customer, key, customer_rejection)

        assert operation.await_count == 2

    async def test_other_rejections_are_not_retried(self, request_with_customer):
        operation = AsyncMock(side_effect=rejected(param="amount"))
        key = IdempotencyKey.for_method("card", "k-1")

        with pytest.raises(ProcessorRejected):
            await run_with_customer_fallback(operation, request_with_customer, key, customer_rejection)

        assert operation.await_count == 1
        assert key.attempt == 0

    async def test_unavailable_is_not_retried(self, request_with_customer):
        operation = AsyncMock(side_effect=ProcessorUnavailable("timeout", processor_id="stripe"))
        key = IdempotencyKey.for_method("card", "k-1")

        with pytest.raises(ProcessorUnavailable):
            await run_with_customer_fallback(operation, request_with_customer, key, customer_rejection)

        assert operation.await_count == 1

    async def test_no_retry_without_customer_id(self, request_with_customer):
        operation = AsyncMock(side_effect=rejected(param="customer"))
        key = IdempotencyKey.for_method("card", "k-1")

        with pytest.raises(ProcessorRejected):
            await run_with_customer_fallback(
                operation, request_with_customer.without_customer(), key, customer_rejection
            )

        assert operation.await_count == 1
