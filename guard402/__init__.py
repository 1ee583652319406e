"""
guard402: budget enforcement for metered and pay-per-request HTTP APIs.

Wraps an ``httpx`` client so every outbound request is checked against
spending policies, paid for when the server answers 402 Payment Required,
and recorded in an auditable usage ledger.
"""

from guard402.core.errors import (
    Guard402Error,
    InvalidQuote,
    PaymentFailed,
    PolicyDenied,
    RegistryError,
    StorageError,
    TransportError,
)
from guard402.core.policies import Budget, BudgetGuard, BudgetPolicy, BudgetScope, PolicyConfig, enforce
from guard402.sdk import AsyncGuardedClient, GuardedClient
from guard402.storage.ledger import InMemoryUsageLedger, UsageLedger
from guard402.storage.models import PaymentMeta, UsageEvent, UsageRecord

__version__ = "0.1.0"

__all__ = [
    "AsyncGuardedClient",
    "Budget",
    "BudgetGuard",
    "BudgetPolicy",
    "BudgetScope",
    "Guard402Error",
    "GuardedClient",
    "InMemoryUsageLedger",
    "InvalidQuote",
    "PaymentFailed",
    "PaymentMeta",
    "PolicyConfig",
    "PolicyDenied",
    "RegistryError",
    "StorageError",
    "TransportError",
    "UsageEvent",
    "UsageLedger",
    "UsageRecord",
    "enforce",
]
