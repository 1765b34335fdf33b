"""Budget records: per-user budgets, alerts, ledger entries and reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from uuid import uuid4

from arbiter.core.types import Money


def period_key_for(moment: datetime) -> str:
    """Billing period key, YYYY-MM."""
    return moment.strftime("%Y-%m")


def period_start_for(period_key: str) -> date:
    year, month = period_key.split("-")
    return date(int(year), int(month), 1)


@dataclass(frozen=True, slots=True)
class Budget:
    """A user's monthly budget for the current billing period.

    Attributes:
        user_id: Owner of the budget.
        tier: Subscription tier the limit came from.
        monthly_limit: USD allowed per period.
        spent_this_period: USD recorded this period; only reset on rollover.
        reserved: USD held by in-flight tier executions.
        period_key: Billing period (YYYY-MM).
    """

    user_id: str
    tier: str
    monthly_limit: Money
    spent_this_period: Money
    reserved: Money
    period_key: str

    @property
    def period_start(self) -> date:
        return period_start_for(self.period_key)

    @property
    def remaining(self) -> Money:
        return max(self.monthly_limit - self.spent_this_period, 0.0)

    @property
    def utilization(self) -> float:
        if self.monthly_limit <= 0:
            return 1.0
        return self.spent_this_period / self.monthly_limit

    @property
    def exhausted(self) -> bool:
        return self.spent_this_period >= self.monthly_limit


@dataclass(frozen=True, slots=True)
class BudgetAlert:
    """Fired once per (user, threshold, period)."""

    user_id: str
    threshold: float
    period_key: str
    spent: Money
    limit: Money
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def percent(self) -> int:
        return round(self.threshold * 100)


@dataclass(frozen=True, slots=True)
class SpendDecision:
    """Outcome of a pre-check (authorize) or post-check (record_spend).

    Attributes:
        allowed: Whether further spend is permitted.
        budget: Budget state after the operation.
        amount: Amount reserved or recorded.
        alerts: Alerts newly fired by this operation.
    """

    allowed: bool
    budget: Budget
    amount: Money = 0.0
    alerts: tuple[BudgetAlert, ...] = ()


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """One recorded tier execution charge."""

    user_id: str
    amount: Money
    period_key: str
    provider_id: str | None = None
    tier: int | None = None
    tokens_used: int = 0
    decision_id: str | None = None
    over_request_budget: bool = False
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True, slots=True)
class SpendBreakdown:
    """Spend aggregated for one (provider, tier) pair."""

    provider_id: str
    tier: int
    amount: Money
    requests: int
    tokens: int


@dataclass(frozen=True, slots=True)
class Projection:
    """Month-end projection from the rolling daily burn rate. Informational only."""

    daily_burn_rate: Money
    projected_month_end: Money
    days_remaining: int
    will_exceed: bool


@dataclass(frozen=True, slots=True)
class CostStats:
    """What getCostStats returns."""

    user_id: str
    period_key: str
    spent_this_period: Money
    limit: Money
    remaining: Money
    projection: Projection
    breakdown: tuple[SpendBreakdown, ...]
    alerts_fired: tuple[float, ...] = ()

    @property
    def request_count(self) -> int:
        return sum(b.requests for b in self.breakdown)

    @property
    def total_tokens(self) -> int:
        return sum(b.tokens for b in self.breakdown)

    @property
    def average_cost_per_request(self) -> Money:
        count = self.request_count
        return sum(b.amount for b in self.breakdown) / count if count else 0.0

    @property
    def by_provider(self) -> dict[str, Money]:
        totals: dict[str, Money] = {}
        for entry in self.breakdown:
            totals[entry.provider_id] = totals.get(entry.provider_id, 0.0) + entry.amount
        return totals

    @property
    def by_tier(self) -> dict[int, Money]:
        totals: dict[int, Money] = {}
        for entry in self.breakdown:
            totals[entry.tier] = totals.get(entry.tier, 0.0) + entry.amount
        return totals
