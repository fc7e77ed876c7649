"""Error taxonomy shared by every processor adapter."""

from typing import Any, Dict, Optional

from .error_messages import user_message_for


class PaymentError(Exception):
    """Base class for all errors raised by the orchestration layer."""

    def __init__(self, message: str, processor_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.processor_id = processor_id


class ConfigurationError(PaymentError):
    """Missing or malformed processor credentials."""


class ProcessorUnavailable(PaymentError):
    """The processor could not be reached or its client failed to initialize."""

    def __init__(
        self,
        message: str,
        processor_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, processor_id)
        self.cause = cause


class ProcessorRejected(PaymentError):
    """The processor answered, but refused the request.

    ``raw`` keeps the provider error payload untouched so callers can log it
    or pick their own user-facing wording.
    """

    def __init__(
        self,
        message: str,
        processor_id: Optional[str] = None,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        param: Optional[str] = None,
        raw: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, processor_id)
        self.code = code
        self.http_status = http_status
        self.param = param
        self.raw = raw or {}

    @property
    def user_message(self) -> str:
        return user_message_for(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processor_id": self.processor_id,
            "code": self.code,
            "http_status": self.http_status,
            "param": self.param,
            "message": self.message,
            "raw": self.raw,
        }


class IncompleteChargeResult(PaymentError):
    """Every call succeeded but the payable reference never came back."""

    def __init__(
        self,
        message: str,
        processor_id: Optional[str] = None,
        external_transaction_id: Optional[str] = None,
        raw: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, processor_id)
        self.external_transaction_id = external_transaction_id
        self.raw = raw or {}


class NotFound(PaymentError):
    """The processor has no transaction with the requested id."""

    def __init__(self, message: str, processor_id: Optional[str] = None, resource_id: Optional[str] = None):
        super().__init__(message, processor_id)
        self.resource_id = resource_id


class UnsupportedPaymentMethod(PaymentError, ValueError):
    """The processor does not offer the requested payment method."""
