"""Payment processor adapters."""

from .base import (
    ProcessorAdapter,
    PaymentMethod,
    ChargeStatus,
    PENDING_STATUSES,
    Customer,
    ChargeRequest,
    ChargeResult,
    GatewayFactory,
    normalize_customer_input,
)
from .sequencer import (
    ConfirmationSequence,
    SequenceState,
    PaymentReference,
    extract_reference,
)
from .conekta_connector import ConektaConnector, ConektaGateway, ConektaGatewayBase
from .stripe_connector import StripeConnector, StripeGateway, StripeGatewayBase
from .simulator_connector import (
    SimulatorConfig,
    SimulatorScenario,
    SimulatedConektaGateway,
    SimulatedStripeGateway,
    build_simulated_adapters,
)

__all__ = [
    # Base classes and models
    "ProcessorAdapter",
    "PaymentMethod",
    "ChargeStatus",
    "PENDING_STATUSES",
    "Customer",
    "ChargeRequest",
    "ChargeResult",
    "GatewayFactory",
    "normalize_customer_input",
    # Confirmation sequence
    "ConfirmationSequence",
    "SequenceState",
    "PaymentReference",
    "extract_reference",
    # Adapters
    "ConektaConnector",
    "ConektaGateway",
    "ConektaGatewayBase",
    "StripeConnector",
    "StripeGateway",
    "StripeGatewayBase",
    # Simulator
    "SimulatorConfig",
    "SimulatorScenario",
    "SimulatedConektaGateway",
    "SimulatedStripeGateway",
    "build_simulated_adapters",
]
