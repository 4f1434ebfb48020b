"""
Stream Meter - Billing Module

Collaborators the metering engine settles through:
- PaymentGateway protocol and the simulated in-process ledger
- Stripe PaymentIntent settlement
- Content catalog (rates) and access control
"""

from .gateway import (
    ContractError,
    PaymentGateway,
    PurchaseResult,
    SimulatedLedgerGateway,
    get_error_message,
)
from .catalog import (
    AccessControl,
    AllowListAccessControl,
    ContentCatalog,
    ContentNotFound,
    StaticCatalog,
)
from .stripe_gateway import StripeSettlementGateway, StripeViewer

__all__ = [
    "ContractError",
    "PaymentGateway",
    "PurchaseResult",
    "SimulatedLedgerGateway",
    "get_error_message",
    "AccessControl",
    "AllowListAccessControl",
    "ContentCatalog",
    "ContentNotFound",
    "StaticCatalog",
    "StripeSettlementGateway",
    "StripeViewer",
]
