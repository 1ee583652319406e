"""
Tests for spend analytics.
"""
from datetime import datetime

import pytest

from guard402.core.analytics import (
    SUMMARIES,
    SpendSummary,
    summary_by_agent,
    summary_by_service,
    summary_by_subscription,
)
from guard402.storage.ledger import InMemoryUsageLedger
from guard402.storage.models import UsageEvent


def seed(ledger, rows):
    for service, amount, agent, subscription in rows:
        ledger.record_usage(UsageEvent(
            service_id=service,
            usd_amount=amount,
            timestamp=datetime(2024, 3, 15, 12),
            agent_id=agent,
            subscription_id=subscription,
        ))


@pytest.fixture
def ledger():
    ledger = InMemoryUsageLedger()
    seed(ledger, [
        ("b.com", 0.10, "bot-1", "pro"),
        ("a.com", 0.20, None, None),
        ("b.com", 0.30, "bot-2", "pro"),
        ("a.com", 0.05, "bot-1", "free"),
    ])
    return ledger


def test_summary_by_service_first_seen_order(ledger):
    summaries = summary_by_service(ledger)

    assert [s.key for s in summaries] == ["b.com", "a.com"]
    assert summaries[0].count == 2
    assert summaries[0].total_usd == pytest.approx(0.40)
    assert summaries[1].total_usd == pytest.approx(0.25)


def test_summary_by_agent_skips_unattributed(ledger):
    summaries = summary_by_agent(ledger)

    assert [s.key for s in summaries] == ["bot-1", "bot-2"]
    assert summaries[0] == SpendSummary(key="bot-1", count=2, total_usd=pytest.approx(0.15))


def test_summary_by_subscription(ledger):
    summaries = {s.key: s for s in summary_by_subscription(ledger)}

    assert set(summaries) == {"pro", "free"}
    assert summaries["pro"].count == 2
    assert summaries["pro"].total_usd == pytest.approx(0.40)


def test_totals_match_ledger(ledger):
    total = sum(r.usd_amount for r in ledger.get_records())
    assert sum(s.total_usd for s in summary_by_service(ledger)) == pytest.approx(total)


def test_summaries_do_not_write(ledger):
    for summarize in SUMMARIES.values():
        summarize(ledger)
    assert len(ledger.get_records()) == 4


def test_empty_ledger():
    assert summary_by_service(InMemoryUsageLedger()) == []
