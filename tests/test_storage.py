"""
Unit tests for storage layer.

Tests the in-memory and SQLite ledgers: appends, snapshots and windowed
spend queries.
"""

import os
import tempfile
from dataclasses import FrozenInstanceError
from datetime import datetime, timedelta

import pytest

from guard402.core.errors import StorageError
from guard402.storage.db import get_connection
from guard402.storage.ledger import InMemoryUsageLedger, day_window, month_window
from guard402.storage.models import PaymentMeta, UsageEvent, UsageRecord
from guard402.storage.repository import SqliteUsageLedger, initialize_schema


def make_event(amount=0.01, ts=None, service="api.example.com", agent=None, subscription=None, payment=None):
    return UsageEvent(
        service_id=service,
        usd_amount=amount,
        timestamp=ts or datetime(2024, 3, 15, 12, 0, 0),
        agent_id=agent,
        subscription_id=subscription,
        payment=payment,
    )


@pytest.fixture(params=["memory", "sqlite"])
def ledger(request, tmp_path):
    """Each ledger implementation must satisfy the same contract."""
    if request.param == "memory":
        return InMemoryUsageLedger()
    return SqliteUsageLedger(str(tmp_path / "ledger.db"))


class TestUsageEvent:
    """Test event validation."""

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError, match="usd_amount must be >= 0"):
            make_event(amount=-0.01)

    @pytest.mark.parametrize("amount", [float("nan"), float("inf")])
    def test_non_finite_amount_rejected(self, amount):
        with pytest.raises(ValueError, match="finite"):
            make_event(amount=amount)

    def test_empty_service_rejected(self):
        with pytest.raises(ValueError, match="service_id is required"):
            make_event(service="")

    def test_event_is_immutable(self):
        event = make_event()
        with pytest.raises(FrozenInstanceError):
            event.usd_amount = 5.0


class TestWindows:
    """Test calendar window bounds."""

    def test_day_window_inclusive_bounds(self):
        start, end = day_window(datetime(2024, 3, 15, 17, 30))
        assert start == datetime(2024, 3, 15, 0, 0, 0)
        assert end == datetime(2024, 3, 15, 23, 59, 59, 999999)

    def test_month_window_december_rolls_year(self):
        start, end = month_window(datetime(2024, 12, 10))
        assert start == datetime(2024, 12, 1)
        assert end == datetime(2024, 12, 31, 23, 59, 59, 999999)

    def test_month_window_leap_february(self):
        start, end = month_window(datetime(2024, 2, 29, 8))
        assert start == datetime(2024, 2, 1)
        assert end == datetime(2024, 2, 29, 23, 59, 59, 999999)


class TestLedgerContract:
    """Behaviour shared by every ledger implementation."""

    def test_record_assigns_unique_ids(self, ledger):
        first = ledger.record_usage(make_event())
        second = ledger.record_usage(make_event())

        assert isinstance(first, UsageRecord)
        assert first.id and second.id
        assert first.id != second.id

    def test_records_in_insertion_order(self, ledger):
        for amount in (0.03, 0.01, 0.02):
            ledger.record_usage(make_event(amount=amount))

        assert [r.usd_amount for r in ledger.get_records()] == [0.03, 0.01, 0.02]

    def test_get_records_returns_snapshot(self, ledger):
        ledger.record_usage(make_event())
        snapshot = ledger.get_records()
        snapshot.clear()

        assert len(ledger.get_records()) == 1

    def test_record_round_trips_fields(self, ledger):
        payment = PaymentMeta(facilitator_id="local", network="test-net", asset="USDC", transaction="0xabc")
        stored = ledger.record_usage(
            make_event(amount=0.25, agent="bot", subscription="sub-1", payment=payment)
        )

        loaded = ledger.get_records()[0]
        assert loaded == stored
        assert loaded.payment.transaction == "0xabc"
        assert loaded.agent_id == "bot"
        assert loaded.subscription_id == "sub-1"

    def test_record_without_payment_has_none(self, ledger):
        ledger.record_usage(make_event())
        assert ledger.get_records()[0].payment is None

    def test_daily_spend_filters_by_day(self, ledger):
        ledger.record_usage(make_event(0.10, ts=datetime(2024, 3, 15, 0, 0, 0)))
        ledger.record_usage(make_event(0.20, ts=datetime(2024, 3, 15, 23, 59, 59, 999000)))
        ledger.record_usage(make_event(0.40, ts=datetime(2024, 3, 16, 0, 0, 0)))
        ledger.record_usage(make_event(0.80, ts=datetime(2024, 3, 14, 23, 59, 59)))

        assert ledger.get_daily_spend_usd(datetime(2024, 3, 15, 9)) == pytest.approx(0.30)

    def test_daily_spend_filters_are_anded(self, ledger):
        ledger.record_usage(make_event(0.10, service="a.com", agent="x"))
        ledger.record_usage(make_event(0.20, service="a.com", agent="y"))
        ledger.record_usage(make_event(0.40, service="b.com", agent="x"))
        day = datetime(2024, 3, 15)

        assert ledger.get_daily_spend_usd(day, service_id="a.com") == pytest.approx(0.30)
        assert ledger.get_daily_spend_usd(day, agent_id="x") == pytest.approx(0.50)
        assert ledger.get_daily_spend_usd(day, service_id="a.com", agent_id="x") == pytest.approx(0.10)
        assert ledger.get_daily_spend_usd(day) == pytest.approx(0.70)

    def test_monthly_boundary_last_millisecond(self, ledger):
        ledger.record_usage(make_event(1.0, ts=datetime(2024, 1, 31, 23, 59, 59, 999000)))
        ledger.record_usage(make_event(2.0, ts=datetime(2024, 2, 1, 0, 0, 0)))

        assert ledger.get_monthly_spend_usd(datetime(2024, 1, 15)) == pytest.approx(1.0)
        assert ledger.get_monthly_spend_usd(datetime(2024, 2, 15)) == pytest.approx(2.0)

    def test_spend_by_subscription(self, ledger):
        ledger.record_usage(make_event(0.5, subscription="pro"))
        ledger.record_usage(make_event(0.7, subscription="free"))

        total = ledger.get_spend_usd(
            datetime(2024, 3, 1), datetime(2024, 3, 31), subscription_id="pro"
        )
        assert total == pytest.approx(0.5)

    def test_zero_amount_record_adds_nothing(self, ledger):
        ledger.record_usage(make_event(0.0))
        ledger.record_usage(make_event(0.05))

        assert len(ledger.get_records()) == 2
        assert ledger.get_daily_spend_usd(datetime(2024, 3, 15)) == pytest.approx(0.05)

    def test_many_small_amounts_do_not_drift(self, ledger):
        for _ in range(10):
            ledger.record_usage(make_event(0.1))

        assert ledger.get_daily_spend_usd(datetime(2024, 3, 15)) == 1.0

    def test_reset_clears_everything(self, ledger):
        ledger.record_usage(make_event())
        ledger.record_usage(make_event())
        ledger.reset()

        assert ledger.get_records() == []
        assert ledger.get_daily_spend_usd(datetime(2024, 3, 15)) == 0.0


class TestSqliteLedger:
    """SQLite specifics."""

    def test_schema_creation(self):
        """Verify table is created correctly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute("PRAGMA table_info(usage_record)")
                column_names = [col[1] for col in cursor.fetchall()]
                assert column_names == [
                    'seq', 'id', 'timestamp', 'service_id', 'agent_id', 'subscription_id',
                    'usd_amount', 'facilitator_id', 'network', 'asset', 'transaction_ref', 'payer'
                ]
            finally:
                conn.close()

    def test_records_survive_new_instance(self, tmp_path):
        db_path = str(tmp_path / "ledger.db")
        SqliteUsageLedger(db_path).record_usage(make_event(0.42))

        reopened = SqliteUsageLedger(db_path)
        assert [r.usd_amount for r in reopened.get_records()] == [0.42]

    def test_write_failure_raises_storage_error(self, tmp_path):
        db_path = str(tmp_path / "ledger.db")
        ledger = SqliteUsageLedger(db_path)

        conn = get_connection(db_path)
        try:
            conn.execute("DROP TABLE usage_record")
            conn.commit()
        finally:
            conn.close()

        with pytest.raises(StorageError):
            ledger.record_usage(make_event())

    def test_unopenable_path_raises_storage_error(self, tmp_path):
        missing_dir = tmp_path / "does-not-exist" / "ledger.db"
        with pytest.raises(StorageError):
            SqliteUsageLedger(str(missing_dir))


class TestInMemoryLedger:
    """In-memory specifics."""

    def test_len_tracks_records(self):
        ledger = InMemoryUsageLedger()
        ledger.record_usage(make_event())
        assert len(ledger) == 1

    def test_window_excludes_future_records(self):
        ledger = InMemoryUsageLedger()
        now = datetime(2024, 3, 15, 12)
        ledger.record_usage(make_event(0.5, ts=now + timedelta(minutes=1)))

        assert ledger.get_spend_usd(now - timedelta(hours=1), now) == 0.0
