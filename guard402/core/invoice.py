"""
Invoice generation from the usage ledger.

Invoices are derived on demand and never stored.
"""

import csv
import io
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..storage.ledger import UsageLedger, matches

CSV_HEADER = ["timestamp", "serviceId", "agentId", "usdAmount"]


@dataclass(frozen=True)
class InvoiceLine:
    """Spend on one service within the invoice period."""
    service_id: str
    count: int
    total_usd: float


@dataclass(frozen=True)
class Invoice:
    """Spend of one subscription over ``[period_start, period_end]``."""
    subscription_id: str
    period_start: datetime
    period_end: datetime
    generated_at: datetime
    lines: List[InvoiceLine] = field(default_factory=list)
    total_usd: float = 0.0
    currency: str = "USD"


def generate_invoice(
    ledger: UsageLedger,
    subscription_id: str,
    period_start: datetime,
    period_end: datetime,
    generated_at: Optional[datetime] = None,
) -> Invoice:
    """Build an invoice for a subscription and time window.

    Only records whose subscription id matches exactly and whose timestamp
    falls inside the inclusive period are billed. Lines are grouped by service
    in first-seen order.

    Args:
        ledger: Ledger to read from
        subscription_id: Subscription to bill
        period_start: Start of the period (inclusive)
        period_end: End of the period (inclusive)
        generated_at: Timestamp to stamp on the invoice (defaults to now)

    Returns:
        Invoice whose total equals the sum of its line totals

    Raises:
        ValueError: If subscription_id is empty or the period is inverted
    """
    if not subscription_id:
        raise ValueError("subscription_id is required and cannot be empty")
    if period_end < period_start:
        raise ValueError("period_end must not be before period_start")

    by_service: Dict[str, List[float]] = {}
    for record in ledger.get_records():
        if record.subscription_id != subscription_id:
            continue
        if not matches(record, start=period_start, end=period_end):
            continue
        by_service.setdefault(record.service_id, []).append(record.usd_amount)

    lines = [
        InvoiceLine(service_id=service_id, count=len(amounts), total_usd=math.fsum(amounts))
        for service_id, amounts in by_service.items()
    ]

    return Invoice(
        subscription_id=subscription_id,
        period_start=period_start,
        period_end=period_end,
        generated_at=generated_at or datetime.now(),
        lines=lines,
        total_usd=math.fsum(line.total_usd for line in lines),
    )


def invoice_to_dict(invoice: Invoice) -> Dict[str, Any]:
    """JSON export of an invoice with ISO-8601 timestamps."""
    return {
        "subscriptionId": invoice.subscription_id,
        "periodStart": invoice.period_start.isoformat(),
        "periodEnd": invoice.period_end.isoformat(),
        "generatedAt": invoice.generated_at.isoformat(),
        "currency": invoice.currency,
        "lines": [
            {"serviceId": line.service_id, "count": line.count, "totalUsd": line.total_usd}
            for line in invoice.lines
        ],
        "totalUsd": invoice.total_usd,
    }


def generate_invoice_csv(
    ledger: UsageLedger,
    agent_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> str:
    """Export ledger records as CSV, one row per record.

    Args:
        ledger: Ledger to read from
        agent_id: Only include records of this agent
        start: Only include records at or after this time
        end: Only include records at or before this time

    Returns:
        CSV text with header ``timestamp,serviceId,agentId,usdAmount``
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for record in ledger.get_records():
        if not matches(record, start=start, end=end, agent_id=agent_id):
            continue
        writer.writerow([
            record.timestamp.isoformat(),
            record.service_id,
            record.agent_id or "",
            f"{record.usd_amount:.4f}",
        ])
    return buffer.getvalue()
