# payments_orchestrator package
__version__ = "0.1.0"

from .config import (
    CONEKTA,
    STRIPE,
    Credentials,
    CredentialSource,
    EnvironmentClass,
    EnvironmentCredentialSource,
    StaticCredentialSource,
)
from .connectors import (
    ChargeRequest,
    ChargeResult,
    ChargeStatus,
    Customer,
    PaymentMethod,
    ProcessorAdapter,
)
from .exceptions import (
    PaymentError,
    ConfigurationError,
    ProcessorUnavailable,
    ProcessorRejected,
    IncompleteChargeResult,
    NotFound,
    UnsupportedPaymentMethod,
)
from .logging_config import configure_logging
from .services import PaymentOrchestrator
