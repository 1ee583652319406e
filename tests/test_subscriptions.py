"""
Tests for subscription registry integration.
"""
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from guard402.core.errors import RegistryError
from guard402.sdk.guarded_client import GuardedClient
from guard402.sdk.subscriptions import (
    InMemoryAsyncSubscriptionRegistry,
    InMemorySubscriptionRegistry,
    async_check_subscription,
    async_provision_subscription,
    check_subscription,
    create_subscription_client,
    extract_wallet_address,
    provision_subscription,
    usd_to_micros,
)
from guard402.storage.ledger import InMemoryUsageLedger

NOW = datetime(2024, 3, 15, 12, 0, 0)
WALLET = "0xAbC0000000000000000000000000000000000001"


@pytest.fixture
def registry():
    return InMemorySubscriptionRegistry(clock=lambda: NOW.timestamp())


class TestInMemoryRegistry:
    """Test the reference registry."""

    def test_duplicate_plan_rejected(self, registry):
        registry.create_plan("pro", 5_000_000, 86400)
        with pytest.raises(RegistryError, match="plan exists"):
            registry.create_plan("pro", 5_000_000, 86400)

    def test_subscribe_unknown_plan(self, registry):
        with pytest.raises(RegistryError):
            registry.subscribe(WALLET, "missing", int(NOW.timestamp()) + 60)

    def test_active_until_expiry(self, registry):
        registry.create_plan("pro", 5_000_000, 86400)
        registry.subscribe(WALLET, "pro", int(NOW.timestamp()) + 60)

        assert registry.is_active(WALLET, "pro")
        assert registry.is_active(WALLET.lower(), "pro")
        assert not registry.is_active(WALLET, "other")

    def test_expired_subscription_inactive(self, registry):
        registry.create_plan("pro", 5_000_000, 86400)
        registry.subscribe(WALLET, "pro", int(NOW.timestamp()))
        assert not registry.is_active(WALLET, "pro")

    def test_transactions_are_distinct(self, registry):
        first = registry.create_plan("pro", 1, 1)
        second = registry.subscribe(WALLET, "pro", 1)
        assert first != second
        assert first.startswith("0x") and len(first) == 66

    def test_usage_accumulates(self, registry):
        registry.create_plan("pro", 1, 1)
        registry.record_usage(WALLET, "pro", usd_to_micros(0.01))
        registry.record_usage(WALLET, "pro", usd_to_micros(0.02))
        assert registry.usage_micros(WALLET, "pro") == 30000


class TestProvision:
    """Test create-and-subscribe."""

    def test_provision_new_plan(self, registry):
        result = provision_subscription(registry, WALLET, "pro", 5.0, 1, 30, now=NOW)

        assert result.create_plan_tx is not None
        assert result.subscribe_tx
        assert result.expiry == int(NOW.timestamp()) + 30 * 86400
        assert registry.is_active(WALLET, "pro")

    def test_existing_plan_still_subscribes(self, registry):
        registry.create_plan("pro", 1, 1)
        result = provision_subscription(registry, WALLET, "pro", 5.0, 1, 30, now=NOW)

        assert result.create_plan_tx is None
        assert registry.is_active(WALLET, "pro")

    def test_plan_created_with_micro_cap(self):
        registry = MagicMock()
        registry.create_plan.return_value = "0x1"
        registry.subscribe.return_value = "0x2"

        provision_subscription(registry, WALLET, "pro", 5.0, 1, 30, now=NOW)

        registry.create_plan.assert_called_once_with("pro", daily_usd_cap_micros=5_000_000, period_seconds=86400)

    def test_subscribe_failure_propagates(self):
        registry = MagicMock()
        registry.subscribe.side_effect = RegistryError("reverted")
        with pytest.raises(RegistryError, match="reverted"):
            provision_subscription(registry, WALLET, "pro", 5.0, 1, 30, now=NOW)

    @pytest.mark.parametrize("args", [
        ("", "pro", 5.0, 1, 30),
        (WALLET, "", 5.0, 1, 30),
        (WALLET, "pro", 0, 1, 30),
        (WALLET, "pro", 5.0, 0, 30),
        (WALLET, "pro", 5.0, 1, -1),
    ])
    def test_invalid_arguments(self, registry, args):
        with pytest.raises(ValueError):
            provision_subscription(registry, *args, now=NOW)


class TestSubscriptionGate:
    """Test wallet extraction and the active-subscription check."""

    def test_wallet_from_query(self):
        assert extract_wallet_address({"wallet": WALLET}, {}) == WALLET

    def test_wallet_from_header_any_case(self):
        assert extract_wallet_address({}, {"X-Wallet-Address": WALLET}) == WALLET

    def test_non_hex_wallet_ignored(self):
        assert extract_wallet_address({"wallet": "alice"}, {"x-wallet-address": "bob"}) is None

    def test_missing_wallet_is_400(self, registry):
        check = check_subscription(registry, "pro", None)
        assert check.status_code == 400
        assert check.to_dict() == {
            "ok": False,
            "error": "Missing wallet address (?wallet or x-wallet-address header)",
        }

    def test_inactive_is_402(self, registry):
        registry.create_plan("pro", 1, 1)
        check = check_subscription(registry, "pro", WALLET)

        assert not check.allowed
        assert check.status_code == 402
        assert check.to_dict()["planId"] == "pro"
        assert check.to_dict()["wallet"] == WALLET

    def test_active_is_200(self, registry):
        provision_subscription(registry, WALLET, "pro", 5.0, 1, 30, now=NOW)
        check = check_subscription(registry, "pro", WALLET)

        assert check.allowed
        assert check.status_code == 200
        assert check.to_dict() == {"ok": True}

    def test_registry_failure_is_500(self):
        registry = MagicMock()
        registry.is_active.side_effect = RegistryError("rpc down")

        check = check_subscription(registry, "pro", WALLET)
        assert check.status_code == 500
        assert check.error == "Internal subscription check error"


class TestSubscriptionClient:
    """Test subscription-tagged clients."""

    def test_usage_tagged_with_subscription(self):
        ledger = InMemoryUsageLedger()
        http = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        client = create_subscription_client(
            "sub-1", http_client=http, ledger=ledger, estimate_usd=lambda r: 0.02
        )

        assert isinstance(client, GuardedClient)
        client.get("https://api.example.com/")

        record = ledger.get_records()[0]
        assert record.subscription_id == "sub-1"
        assert record.agent_id == "sub-1"

    def test_explicit_agent_kept(self):
        client = create_subscription_client("sub-1", agent_id="bot")
        assert client.agent_id == "bot"
        client.close()

    def test_requires_subscription_id(self):
        with pytest.raises(ValueError):
            create_subscription_client("")


class TestAsyncRegistry:
    """Test the async registry twin and helpers."""

    @pytest.mark.asyncio
    async def test_provision_then_gate(self):
        registry = InMemoryAsyncSubscriptionRegistry(clock=lambda: NOW.timestamp())

        result = await async_provision_subscription(registry, WALLET, "pro", 5.0, 1, 30, now=NOW)
        assert result.create_plan_tx is not None

        check = await async_check_subscription(registry, "pro", WALLET)
        assert check.allowed
        assert check.status_code == 200

    @pytest.mark.asyncio
    async def test_existing_plan_still_subscribes(self):
        registry = InMemoryAsyncSubscriptionRegistry(clock=lambda: NOW.timestamp())
        await registry.create_plan("pro", 1, 1)

        result = await async_provision_subscription(registry, WALLET, "pro", 5.0, 1, 30, now=NOW)

        assert result.create_plan_tx is None
        assert await registry.is_active(WALLET, "pro")

    @pytest.mark.asyncio
    async def test_inactive_and_missing_wallet(self):
        registry = InMemoryAsyncSubscriptionRegistry(clock=lambda: NOW.timestamp())
        await registry.create_plan("pro", 1, 1)

        assert (await async_check_subscription(registry, "pro", WALLET)).status_code == 402
        assert (await async_check_subscription(registry, "pro", None)).status_code == 400

    @pytest.mark.asyncio
    async def test_registry_failure_is_500(self):
        registry = MagicMock()
        registry.is_active = AsyncMock(side_effect=RegistryError("rpc down"))

        check = await async_check_subscription(registry, "pro", WALLET)
        assert check.status_code == 500

    @pytest.mark.asyncio
    async def test_usage_recorded(self):
        registry = InMemoryAsyncSubscriptionRegistry()
        await registry.create_plan("pro", 1, 1)
        await registry.record_usage(WALLET, "pro", usd_to_micros(0.25))
        assert registry.usage_micros(WALLET, "pro") == 250000
