"""
Subscription registry integration.

The registry itself (for example an on-chain contract) is an external
collaborator. This module defines the contract guard402 consumes, an
in-memory reference registry, and helpers to provision plans, gate requests
on an active subscription and build subscription-tagged clients.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

from ..core.errors import RegistryError
from .guarded_client import GuardedClient

logger = logging.getLogger(__name__)

WALLET_QUERY_PARAM = "wallet"
WALLET_HEADER = "x-wallet-address"
SECONDS_PER_DAY = 24 * 60 * 60
MICROS_PER_USD = Decimal("1000000")


class SubscriptionRegistry(ABC):
    """Contract for a subscription registry.

    Write operations return an opaque transaction reference. Any failure is
    raised as RegistryError.
    """

    @abstractmethod
    def is_active(self, user: str, plan_id: str) -> bool:
        ...

    @abstractmethod
    def create_plan(self, plan_id: str, daily_usd_cap_micros: int, period_seconds: int) -> str:
        ...

    @abstractmethod
    def subscribe(self, user: str, plan_id: str, expiry: int) -> str:
        ...

    @abstractmethod
    def record_usage(self, user: str, plan_id: str, usd_amount_micros: int) -> str:
        ...


@dataclass
class _Plan:
    daily_usd_cap_micros: int
    period_seconds: int


class InMemorySubscriptionRegistry(SubscriptionRegistry):
    """
    Reference registry kept in process memory, for tests and demos.

    Expiries are unix timestamps in seconds.
    """

    def __init__(self, clock=None) -> None:
        self._clock = clock or (lambda: datetime.now().timestamp())
        self._plans: Dict[str, _Plan] = {}
        self._expiries: Dict[Tuple[str, str], int] = {}
        self._usage_micros: Dict[Tuple[str, str], int] = {}
        self._tx_counter = 0
        self._lock = threading.Lock()

    def _next_tx(self) -> str:
        self._tx_counter += 1
        return f"0x{self._tx_counter:064x}"

    def is_active(self, user: str, plan_id: str) -> bool:
        with self._lock:
            expiry = self._expiries.get((user.lower(), plan_id))
        return expiry is not None and expiry > self._clock()

    def create_plan(self, plan_id: str, daily_usd_cap_micros: int, period_seconds: int) -> str:
        with self._lock:
            if plan_id in self._plans:
                raise RegistryError("plan exists")
            self._plans[plan_id] = _Plan(daily_usd_cap_micros, period_seconds)
            return self._next_tx()

    def subscribe(self, user: str, plan_id: str, expiry: int) -> str:
        with self._lock:
            if plan_id not in self._plans:
                raise RegistryError(f"unknown plan {plan_id}")
            self._expiries[(user.lower(), plan_id)] = expiry
            return self._next_tx()

    def record_usage(self, user: str, plan_id: str, usd_amount_micros: int) -> str:
        with self._lock:
            if plan_id not in self._plans:
                raise RegistryError(f"unknown plan {plan_id}")
            key = (user.lower(), plan_id)
            self._usage_micros[key] = self._usage_micros.get(key, 0) + usd_amount_micros
            return self._next_tx()

    def usage_micros(self, user: str, plan_id: str) -> int:
        with self._lock:
            return self._usage_micros.get((user.lower(), plan_id), 0)


class AsyncSubscriptionRegistry(ABC):
    """Async twin of :class:`SubscriptionRegistry`, for registries reached over the network."""

    @abstractmethod
    async def is_active(self, user: str, plan_id: str) -> bool:
        ...

    @abstractmethod
    async def create_plan(self, plan_id: str, daily_usd_cap_micros: int, period_seconds: int) -> str:
        ...

    @abstractmethod
    async def subscribe(self, user: str, plan_id: str, expiry: int) -> str:
        ...

    @abstractmethod
    async def record_usage(self, user: str, plan_id: str, usd_amount_micros: int) -> str:
        ...


class InMemoryAsyncSubscriptionRegistry(AsyncSubscriptionRegistry):
    """Async facade over :class:`InMemorySubscriptionRegistry`."""

    def __init__(self, clock=None) -> None:
        self._registry = InMemorySubscriptionRegistry(clock)

    async def is_active(self, user: str, plan_id: str) -> bool:
        return self._registry.is_active(user, plan_id)

    async def create_plan(self, plan_id: str, daily_usd_cap_micros: int, period_seconds: int) -> str:
        return self._registry.create_plan(plan_id, daily_usd_cap_micros, period_seconds)

    async def subscribe(self, user: str, plan_id: str, expiry: int) -> str:
        return self._registry.subscribe(user, plan_id, expiry)

    async def record_usage(self, user: str, plan_id: str, usd_amount_micros: int) -> str:
        return self._registry.record_usage(user, plan_id, usd_amount_micros)

    def usage_micros(self, user: str, plan_id: str) -> int:
        return self._registry.usage_micros(user, plan_id)


def usd_to_micros(usd_amount: float) -> int:
    return int((Decimal(str(usd_amount)) * MICROS_PER_USD).to_integral_value())


@dataclass(frozen=True)
class ProvisionResult:
    """Transaction references of a create-and-subscribe attempt."""
    plan_id: str
    user: str
    expiry: int
    create_plan_tx: Optional[str]
    subscribe_tx: str


def provision_subscription(
    registry: SubscriptionRegistry,
    user: str,
    plan_id: str,
    daily_cap_usd: float,
    period_days: int,
    duration_days: int,
    now: Optional[datetime] = None,
) -> ProvisionResult:
    """Create a plan (best effort) and subscribe ``user`` to it.

    Plan creation is advisory: a failure, typically "plan exists", is logged
    and the subscription is attempted anyway. Subscription failures propagate.

    Raises:
        ValueError: If a required argument is missing or not positive
        RegistryError: If the subscribe call fails
    """
    plan = _plan_terms(user, plan_id, daily_cap_usd, period_days, duration_days, now)

    create_tx: Optional[str] = None
    try:
        create_tx = registry.create_plan(
            plan_id,
            daily_usd_cap_micros=plan.daily_usd_cap_micros,
            period_seconds=plan.period_seconds,
        )
    except RegistryError as e:
        logger.warning("create_plan for %s failed, subscribing anyway: %s", plan_id, e)

    subscribe_tx = registry.subscribe(user, plan_id, plan.expiry)
    logger.info("Subscribed %s to %s until %d", user, plan_id, plan.expiry)
    return ProvisionResult(plan_id, user, plan.expiry, create_tx, subscribe_tx)


async def async_provision_subscription(
    registry: AsyncSubscriptionRegistry,
    user: str,
    plan_id: str,
    daily_cap_usd: float,
    period_days: int,
    duration_days: int,
    now: Optional[datetime] = None,
) -> ProvisionResult:
    """Async twin of :func:`provision_subscription`."""
    plan = _plan_terms(user, plan_id, daily_cap_usd, period_days, duration_days, now)

    create_tx: Optional[str] = None
    try:
        create_tx = await registry.create_plan(
            plan_id,
            daily_usd_cap_micros=plan.daily_usd_cap_micros,
            period_seconds=plan.period_seconds,
        )
    except RegistryError as e:
        logger.warning("create_plan for %s failed, subscribing anyway: %s", plan_id, e)

    subscribe_tx = await registry.subscribe(user, plan_id, plan.expiry)
    logger.info("Subscribed %s to %s until %d", user, plan_id, plan.expiry)
    return ProvisionResult(plan_id, user, plan.expiry, create_tx, subscribe_tx)


@dataclass(frozen=True)
class _PlanTerms:
    daily_usd_cap_micros: int
    period_seconds: int
    expiry: int


def _plan_terms(
    user: str,
    plan_id: str,
    daily_cap_usd: float,
    period_days: int,
    duration_days: int,
    now: Optional[datetime],
) -> _PlanTerms:
    if not user or not plan_id:
        raise ValueError("user and plan_id are required")
    if daily_cap_usd <= 0 or period_days <= 0 or duration_days <= 0:
        raise ValueError("daily_cap_usd, period_days and duration_days must be > 0")

    now_seconds = int((now or datetime.now()).timestamp())
    return _PlanTerms(
        daily_usd_cap_micros=usd_to_micros(daily_cap_usd),
        period_seconds=period_days * SECONDS_PER_DAY,
        expiry=now_seconds + duration_days * SECONDS_PER_DAY,
    )


def extract_wallet_address(
    query: Optional[Mapping[str, Any]] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """Find the caller's wallet in ``?wallet=0x...`` or the ``x-wallet-address`` header."""
    from_query = (query or {}).get(WALLET_QUERY_PARAM)
    if isinstance(from_query, str) and from_query.startswith("0x"):
        return from_query

    from_header = None
    for name, value in (headers or {}).items():
        if name.lower() == WALLET_HEADER:
            from_header = value
            break
    if from_header and from_header.startswith("0x"):
        return from_header

    return None


@dataclass(frozen=True)
class SubscriptionCheck:
    """Decision of the subscription gate, shaped as an HTTP answer."""
    allowed: bool
    status_code: int
    error: Optional[str] = None
    plan_id: Optional[str] = None
    wallet: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"ok": self.allowed}
        if self.error:
            body["error"] = self.error
        if self.plan_id and not self.allowed and self.status_code == 402:
            body["planId"] = self.plan_id
            body["wallet"] = self.wallet
        return body


def check_subscription(
    registry: SubscriptionRegistry,
    plan_id: str,
    wallet: Optional[str],
) -> SubscriptionCheck:
    """Gate a request on an active subscription.

    Returns 400 when no wallet was given, 402 when the subscription is
    inactive, and 500 when the registry could not be queried.
    """
    if not wallet:
        return _MISSING_WALLET

    try:
        active = registry.is_active(wallet, plan_id)
    except RegistryError:
        logger.exception("Subscription check for %s on %s failed", wallet, plan_id)
        return _registry_failure(plan_id, wallet)
    return _subscription_status(active, plan_id, wallet)


async def async_check_subscription(
    registry: AsyncSubscriptionRegistry,
    plan_id: str,
    wallet: Optional[str],
) -> SubscriptionCheck:
    """Async twin of :func:`check_subscription`."""
    if not wallet:
        return _MISSING_WALLET

    try:
        active = await registry.is_active(wallet, plan_id)
    except RegistryError:
        logger.exception("Subscription check for %s on %s failed", wallet, plan_id)
        return _registry_failure(plan_id, wallet)
    return _subscription_status(active, plan_id, wallet)


_MISSING_WALLET = SubscriptionCheck(
    False, 400, "Missing wallet address (?wallet or x-wallet-address header)"
)


def _registry_failure(plan_id: str, wallet: str) -> SubscriptionCheck:
    return SubscriptionCheck(False, 500, "Internal subscription check error", plan_id, wallet)


def _subscription_status(active: bool, plan_id: str, wallet: str) -> SubscriptionCheck:
    if not active:
        return SubscriptionCheck(False, 402, "Subscription inactive for this plan", plan_id, wallet)
    return SubscriptionCheck(True, 200, plan_id=plan_id, wallet=wallet)


def create_subscription_client(
    subscription_id: str,
    agent_id: Optional[str] = None,
    **options: Any,
) -> GuardedClient:
    """Build a GuardedClient whose usage is tagged with ``subscription_id``.

    ``agent_id`` defaults to the subscription id so agent analytics cover
    subscription traffic too.
    """
    if not subscription_id:
        raise ValueError("subscription_id is required and cannot be empty")
    return GuardedClient(
        subscription_id=subscription_id,
        agent_id=agent_id or subscription_id,
        **options,
    )
