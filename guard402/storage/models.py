"""
Data models for storage layer.

Defines the usage events written to the ledger.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class PaymentMeta:
    """Payment details kept alongside a usage record."""
    facilitator_id: Optional[str] = None
    network: Optional[str] = None
    asset: Optional[str] = None
    transaction: Optional[str] = None
    payer: Optional[str] = None


@dataclass(frozen=True)
class UsageEvent:
    """A proposed unit of spend that has not been committed yet.

    The service id is derived from the target host of the request and is the
    primary dimension for per-service budgets.
    """
    service_id: str
    usd_amount: float
    timestamp: datetime
    agent_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payment: Optional[PaymentMeta] = None

    def __post_init__(self):
        """Validate the event before it can reach a policy check."""
        if not self.service_id:
            raise ValueError("service_id is required and cannot be empty")
        if not math.isfinite(self.usd_amount):
            raise ValueError("usd_amount must be a finite number")
        if self.usd_amount < 0:
            raise ValueError("usd_amount must be >= 0")


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of committed spend.

    Append-only entries that form the auditable usage ledger.
    Once written, these records must never be modified.
    """
    id: str
    service_id: str
    usd_amount: float
    timestamp: datetime
    agent_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payment: Optional[PaymentMeta] = None

    @classmethod
    def from_event(cls, event: UsageEvent, record_id: str) -> "UsageRecord":
        return cls(
            id=record_id,
            service_id=event.service_id,
            usd_amount=event.usd_amount,
            timestamp=event.timestamp,
            agent_id=event.agent_id,
            subscription_id=event.subscription_id,
            payment=event.payment,
        )
