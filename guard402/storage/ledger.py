"""
Usage ledger contract and in-memory implementation.

The ledger is the only owner of usage records. Spend aggregates are always
derived from the records, never stored.
"""

import math
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from .models import UsageEvent, UsageRecord

_ONE_TICK = timedelta(microseconds=1)


def day_window(date: datetime) -> Tuple[datetime, datetime]:
    """Inclusive bounds of the local calendar day containing ``date``."""
    start = date.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1) - _ONE_TICK


def month_window(date: datetime) -> Tuple[datetime, datetime]:
    """Inclusive bounds of the calendar month containing ``date``."""
    start = date.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        next_start = start.replace(year=start.year + 1, month=1)
    else:
        next_start = start.replace(month=start.month + 1)
    return start, next_start - _ONE_TICK


def new_record_id() -> str:
    return uuid.uuid4().hex


def sum_usd(records: Iterable[UsageRecord]) -> float:
    """Sum record amounts with ``math.fsum``.

    fsum is exactly rounded, so the result does not drift with the number of
    records or depend on their order.
    """
    return math.fsum(r.usd_amount for r in records)


def matches(
    record: UsageRecord,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    service_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
) -> bool:
    """Check a record against an inclusive time window and AND-combined filters."""
    if start is not None and record.timestamp < start:
        return False
    if end is not None and record.timestamp > end:
        return False
    if service_id is not None and record.service_id != service_id:
        return False
    if agent_id is not None and record.agent_id != agent_id:
        return False
    if subscription_id is not None and record.subscription_id != subscription_id:
        return False
    return True


class UsageLedger(ABC):
    """Append-only store of usage records.

    Implementors may back this with SQLite, Postgres, Redis or anything else.
    Every operation is synchronous; the policy engine calls them inline.
    """

    @abstractmethod
    def record_usage(self, event: UsageEvent) -> UsageRecord:
        """Assign an id to ``event``, append it and return the stored record."""

    @abstractmethod
    def get_records(self) -> List[UsageRecord]:
        """Return a snapshot of all records in insertion order."""

    @abstractmethod
    def get_spend_usd(
        self,
        start: datetime,
        end: datetime,
        service_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> float:
        """Total spend of records with ``start <= timestamp <= end``."""

    @abstractmethod
    def reset(self) -> None:
        """Remove every record. Meant for test and demo isolation."""

    def get_daily_spend_usd(
        self,
        date: datetime,
        service_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> float:
        start, end = day_window(date)
        return self.get_spend_usd(start, end, service_id=service_id, agent_id=agent_id)

    def get_monthly_spend_usd(
        self,
        date: datetime,
        service_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> float:
        start, end = month_window(date)
        return self.get_spend_usd(start, end, service_id=service_id, agent_id=agent_id)


class InMemoryUsageLedger(UsageLedger):
    """
    In-process ledger, suitable for single-process use and testing.

    All state is lost when the process exits. Appends, reads and resets are
    serialised with a lock so readers never see a half-applied change.
    """

    def __init__(self) -> None:
        self._records: List[UsageRecord] = []
        self._lock = threading.RLock()

    def record_usage(self, event: UsageEvent) -> UsageRecord:
        record = UsageRecord.from_event(event, new_record_id())
        with self._lock:
            self._records.append(record)
        return record

    def get_records(self) -> List[UsageRecord]:
        with self._lock:
            return list(self._records)

    def get_spend_usd(
        self,
        start: datetime,
        end: datetime,
        service_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> float:
        with self._lock:
            selected = [
                r for r in self._records
                if matches(r, start, end, service_id, agent_id, subscription_id)
            ]
        return sum_usd(selected)

    def reset(self) -> None:
        with self._lock:
            self._records = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
