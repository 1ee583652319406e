"""
Budget policies and enforcement.

Decides whether a proposed usage event may proceed given the ledger and a
policy configuration.

Enforcement Order (first violation wins):
1. Service policy - daily cap, then monthly cap
2. Agent policy - daily cap, then monthly cap
3. Global policy - only when neither a service nor an agent policy applied
4. Rolling budgets - every budget whose scope matches must pass

Calendar caps (1-3) count window spend on the event's service by the event's
agent; an event without an agent counts every agent on that service. Rolling
budgets count spend matching their own scope.
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from ..storage.ledger import UsageLedger
from ..storage.models import UsageEvent, UsageRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BudgetPolicy:
    """Calendar caps in USD. ``None`` leaves that window unconstrained."""
    daily_usd_cap: Optional[float] = None
    monthly_usd_cap: Optional[float] = None

    def __post_init__(self):
        """Validate caps are finite and non-negative."""
        for name in ("daily_usd_cap", "monthly_usd_cap"):
            cap = getattr(self, name)
            if cap is not None and (not math.isfinite(cap) or cap < 0):
                raise ValueError(f"{name} must be a finite number >= 0")


@dataclass(frozen=True)
class BudgetScope:
    """Dimensions a rolling budget applies to. Unset fields match anything."""
    service_id: Optional[str] = None
    agent_id: Optional[str] = None
    subscription_id: Optional[str] = None

    def matches(self, event: UsageEvent) -> bool:
        if self.service_id is not None and event.service_id != self.service_id:
            return False
        if self.agent_id is not None and event.agent_id != self.agent_id:
            return False
        if self.subscription_id is not None and event.subscription_id != self.subscription_id:
            return False
        return True


@dataclass(frozen=True)
class Budget:
    """A cap over an arbitrary rolling window ``[now - window, now]``."""
    id: str
    window: timedelta
    max_usd_cents: int
    scope: BudgetScope = field(default_factory=BudgetScope)

    def __post_init__(self):
        """Validate budget values."""
        if not self.id:
            raise ValueError("budget id is required and cannot be empty")
        if self.window <= timedelta(0):
            raise ValueError(f"budget {self.id}: window must be > 0")
        if self.max_usd_cents < 0:
            raise ValueError(f"budget {self.id}: max_usd_cents must be >= 0")

    @classmethod
    def from_window_ms(
        cls,
        id: str,
        window_ms: int,
        max_usd_cents: int,
        scope: Optional[BudgetScope] = None,
    ) -> "Budget":
        return cls(
            id=id,
            window=timedelta(milliseconds=window_ms),
            max_usd_cents=max_usd_cents,
            scope=scope or BudgetScope(),
        )

    @property
    def max_usd(self) -> float:
        return self.max_usd_cents / 100


@dataclass(frozen=True)
class PolicyConfig:
    """Complete policy configuration."""
    global_policy: Optional[BudgetPolicy] = None
    services: Dict[str, BudgetPolicy] = field(default_factory=dict)
    agents: Dict[str, BudgetPolicy] = field(default_factory=dict)
    budgets: List[Budget] = field(default_factory=list)


@dataclass(frozen=True)
class EnforcementResult:
    """Outcome of a policy check."""
    allowed: bool
    reason: Optional[str] = None
    scope: Optional[str] = None


ALLOWED = EnforcementResult(allowed=True)

# Caps compare at nano-dollar precision: hitting a cap exactly is allowed.
_CAP_PRECISION = 9


def _exceeds(spent: float, amount: float, cap: float) -> bool:
    return round(math.fsum((spent, amount)) - cap, _CAP_PRECISION) > 0


def _apply_budget_policy(
    ledger: UsageLedger,
    policy: BudgetPolicy,
    event: UsageEvent,
    scope: str,
    label: str,
) -> EnforcementResult:
    # Every calendar cap counts spend of the event's service and agent together.
    now = event.timestamp
    service_id, agent_id = event.service_id, event.agent_id

    if policy.daily_usd_cap is not None:
        spent_today = ledger.get_daily_spend_usd(now, service_id=service_id, agent_id=agent_id)
        if _exceeds(spent_today, event.usd_amount, policy.daily_usd_cap):
            return EnforcementResult(False, f"Daily cap exceeded {label}", scope)

    if policy.monthly_usd_cap is not None:
        spent_this_month = ledger.get_monthly_spend_usd(now, service_id=service_id, agent_id=agent_id)
        if _exceeds(spent_this_month, event.usd_amount, policy.monthly_usd_cap):
            return EnforcementResult(False, f"Monthly cap exceeded {label}", scope)

    return ALLOWED


def _apply_budget(ledger: UsageLedger, budget: Budget, event: UsageEvent) -> EnforcementResult:
    now = event.timestamp
    spent = ledger.get_spend_usd(
        now - budget.window,
        now,
        service_id=budget.scope.service_id,
        agent_id=budget.scope.agent_id,
        subscription_id=budget.scope.subscription_id,
    )
    if _exceeds(spent, event.usd_amount, budget.max_usd):
        return EnforcementResult(
            False, f"Budget cap exceeded for budget {budget.id}", f"budget:{budget.id}"
        )
    return ALLOWED


def enforce(ledger: UsageLedger, config: PolicyConfig, event: UsageEvent) -> EnforcementResult:
    """Check a proposed event against every applicable policy.

    Read-only: the ledger is queried but never written, so calling this twice
    with the same ledger state and event yields the same decision.

    Args:
        ledger: Ledger holding committed usage
        config: Policy configuration
        event: Proposed usage event

    Returns:
        EnforcementResult: allowed, or denied with the reason and the scope
        that denied
    """
    specific_applied = False

    service_policy = config.services.get(event.service_id)
    if service_policy is not None:
        specific_applied = True
        result = _apply_budget_policy(
            ledger, service_policy, event,
            scope=f"service:{event.service_id}",
            label=f"for service {event.service_id}",
        )
        if not result.allowed:
            return result

    if event.agent_id:
        agent_policy = config.agents.get(event.agent_id)
        if agent_policy is not None:
            specific_applied = True
            result = _apply_budget_policy(
                ledger, agent_policy, event,
                scope=f"agent:{event.agent_id}",
                label=f"for agent {event.agent_id}",
            )
            if not result.allowed:
                return result

    # Global is a fallback, not an extra layer.
    if config.global_policy is not None and not specific_applied:
        result = _apply_budget_policy(
            ledger, config.global_policy, event, scope="global", label="(global)"
        )
        if not result.allowed:
            return result

    for budget in config.budgets:
        if budget.scope.matches(event):
            result = _apply_budget(ledger, budget, event)
            if not result.allowed:
                return result

    return ALLOWED


class BudgetGuard:
    """Ties a ledger to a policy configuration.

    ``check_and_record`` runs the policy check and the commit under one lock,
    so two callers sharing a guard cannot both pass a check before either
    records its spend.
    """

    def __init__(self, ledger: UsageLedger, config: Optional[PolicyConfig] = None):
        self.ledger = ledger
        self.config = config or PolicyConfig()
        self._lock = threading.Lock()

    def preview(self, event: UsageEvent) -> EnforcementResult:
        """Evaluate policies without recording anything."""
        return enforce(self.ledger, self.config, event)

    def check_and_record(self, event: UsageEvent) -> Tuple[EnforcementResult, Optional[UsageRecord]]:
        """Evaluate policies and commit the event only if it is allowed."""
        with self._lock:
            result = enforce(self.ledger, self.config, event)
            if not result.allowed:
                logger.info(
                    "Denied $%.4f for %s: %s", event.usd_amount, event.service_id, result.reason
                )
                return result, None
            record = self.ledger.record_usage(event)
        logger.debug("Recorded %s: $%.4f for %s", record.id, record.usd_amount, record.service_id)
        return result, record

    def record(self, event: UsageEvent) -> UsageRecord:
        """Commit an event unconditionally, e.g. after a settled payment."""
        with self._lock:
            record = self.ledger.record_usage(event)
        logger.debug("Recorded %s: $%.4f for %s", record.id, record.usd_amount, record.service_id)
        return record

    def spend_snapshot(self, when: Optional[datetime] = None) -> Dict[str, float]:
        """Total daily and monthly spend across all scopes."""
        when = when or datetime.now()
        return {
            "daily_usd": self.ledger.get_daily_spend_usd(when),
            "monthly_usd": self.ledger.get_monthly_spend_usd(when),
        }
