"""
Spend analytics over the usage ledger.

Read-only aggregations; nothing here writes to the ledger.
"""

import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from ..storage.ledger import UsageLedger
from ..storage.models import UsageRecord


@dataclass(frozen=True)
class SpendSummary:
    """Request count and total spend for one key."""
    key: str
    count: int
    total_usd: float


def _summarize(ledger: UsageLedger, key_of: Callable[[UsageRecord], Optional[str]]) -> List[SpendSummary]:
    # dicts keep first-seen order, which keeps the output deterministic
    groups: Dict[str, List[float]] = {}
    for record in ledger.get_records():
        key = key_of(record)
        if not key:
            continue
        groups.setdefault(key, []).append(record.usd_amount)

    return [
        SpendSummary(key=key, count=len(amounts), total_usd=math.fsum(amounts))
        for key, amounts in groups.items()
    ]


def summary_by_service(ledger: UsageLedger) -> List[SpendSummary]:
    """Total spend per service across all records."""
    return _summarize(ledger, lambda r: r.service_id)


def summary_by_agent(ledger: UsageLedger) -> List[SpendSummary]:
    """Total spend per agent. Records without an agent are left out."""
    return _summarize(ledger, lambda r: r.agent_id)


def summary_by_subscription(ledger: UsageLedger) -> List[SpendSummary]:
    """Total spend per subscription. Records without a subscription are left out."""
    return _summarize(ledger, lambda r: r.subscription_id)


SUMMARIES = {
    "service": summary_by_service,
    "agent": summary_by_agent,
    "subscription": summary_by_subscription,
}
