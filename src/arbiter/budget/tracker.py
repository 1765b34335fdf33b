"""CostTracker: per-user monthly budgets, alerts and spend projections.

Spend flow per cascade tier:
1. ``authorize``: reserve the tier's worst-case cost (pre-check). Denied when
   the reservation would push spent + reserved past the monthly limit, or
   once the limit has been reached.
2. ``record_spend``: charge the actual cost, capped at the room left under
   the limit, drop the reservation, append to the ledger and fire any
   newly crossed alert thresholds (post-check).
3. ``release``: drop a reservation for a tier that produced nothing.

Both checks run as single transactions in the store, so concurrent
requests cannot both pass a check that only one could afford.
"""

from __future__ import annotations

import calendar
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from arbiter.budget.models import (
    Budget,
    BudgetAlert,
    CostStats,
    LedgerEntry,
    Projection,
    SpendDecision,
    period_key_for,
)
from arbiter.budget.notify import LogNotificationChannel, NotificationChannel
from arbiter.config.models import BudgetConfig
from arbiter.core.errors import ValidationError
from arbiter.core.types import Money
from arbiter.observability.logging import get_logger

if TYPE_CHECKING:
    from arbiter.persistence.store import ArbiterStore

log = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CostTracker:
    """Tracks spend against per-user budgets.

    Example:
        tracker = CostTracker(store, config.budgets)
        decision = await tracker.authorize("u1", 0.002)
        if decision.allowed:
            ...
            await tracker.record_spend("u1", 0.0018, reserved=0.002)
    """

    def __init__(
        self,
        store: ArbiterStore,
        config: BudgetConfig,
        *,
        notifier: NotificationChannel | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._config = config
        self._notifier = notifier or LogNotificationChannel()
        self._clock = clock

    def current_period(self) -> str:
        return period_key_for(self._clock())

    def limit_for(self, tier: str) -> Money:
        subscription = self._config.subscriptions.get(tier)
        if subscription is None:
            raise ValidationError(f"Unknown subscription tier: {tier}", field="tier", value=tier)
        return subscription.monthly_limit

    async def ensure_budget(self, user_id: str, tier: str | None = None) -> Budget:
        """Return the user's budget for the current period, creating or rolling it over.

        When ``tier`` differs from the stored subscription, the limit follows it.
        """
        period = self.current_period()
        budget = await self._store.get_budget(user_id)

        if budget is None:
            tier = tier or self._config.default_subscription
            budget = await self._store.create_budget(
                Budget(
                    user_id=user_id,
                    tier=tier,
                    monthly_limit=self.limit_for(tier),
                    spent_this_period=0.0,
                    reserved=0.0,
                    period_key=period,
                )
            )
            log.info("budget.account.created", user_id=user_id, tier=tier, limit=budget.monthly_limit)

        if budget.period_key != period:
            if await self._store.rollover_budget(user_id, period):
                log.info(
                    "budget.period.rolled_over",
                    user_id=user_id,
                    previous_period=budget.period_key,
                    period=period,
                    previous_spend=round(budget.spent_this_period, 6),
                )
            budget = await self._store.get_budget(user_id) or budget

        if tier is not None and tier != budget.tier:
            updated = await self._store.set_budget_limit(user_id, tier, self.limit_for(tier))
            log.info("budget.tier.changed", user_id=user_id, previous_tier=budget.tier, tier=tier)
            budget = updated or budget

        return budget

    async def set_limit(
        self, user_id: str, *, tier: str | None = None, monthly_limit: Money | None = None
    ) -> Budget:
        """Change a user's subscription tier and/or override the monthly limit."""
        if monthly_limit is not None and monthly_limit < 0:
            raise ValidationError(
                "Monthly limit cannot be negative", field="monthly_limit", value=monthly_limit
            )
        budget = await self.ensure_budget(user_id)
        new_tier = tier or budget.tier
        limit = monthly_limit if monthly_limit is not None else self.limit_for(new_tier)
        updated = await self._store.set_budget_limit(user_id, new_tier, limit)
        log.info("budget.limit.updated", user_id=user_id, tier=new_tier, limit=limit)
        return updated or budget

    async def authorize(self, user_id: str, amount: Money) -> SpendDecision:
        """Pre-check: reserve ``amount`` if the budget can still absorb it."""
        if amount < 0:
            raise ValidationError("Spend amount cannot be negative", field="amount", value=amount)

        await self.ensure_budget(user_id)
        allowed, budget = await self._store.reserve(user_id, amount)
        if budget is None:
            budget = await self.ensure_budget(user_id)

        if not allowed:
            log.info(
                "budget.spend.denied",
                user_id=user_id,
                amount=amount,
                spent=round(budget.spent_this_period, 6),
                reserved=round(budget.reserved, 6),
                limit=budget.monthly_limit,
            )
        return SpendDecision(allowed=allowed, budget=budget, amount=amount)

    async def release(self, user_id: str, amount: Money) -> None:
        """Drop a reservation that will not be charged."""
        if amount > 0:
            await self._store.release(user_id, amount)

    async def record_spend(
        self,
        user_id: str,
        amount: Money,
        *,
        reserved: Money = 0.0,
        provider_id: str | None = None,
        tier: int | None = None,
        tokens_used: int = 0,
        decision_id: str | None = None,
        over_request_budget: bool = False,
    ) -> SpendDecision:
        """Post-check: charge ``amount`` and fire newly crossed alerts.

        The charge is capped so spend never passes the monthly limit;
        ``amount`` in the result is what was actually charged. ``allowed``
        says whether further spend is still possible this period.
        """
        if amount < 0:
            raise ValidationError("Spend amount cannot be negative", field="amount", value=amount)

        current = await self.ensure_budget(user_id)
        budget, charged = await self._store.record_spend(
            LedgerEntry(
                user_id=user_id,
                amount=amount,
                period_key=current.period_key,
                provider_id=provider_id,
                tier=tier,
                tokens_used=tokens_used,
                decision_id=decision_id,
                over_request_budget=over_request_budget,
                created_at=self._clock(),
            ),
            reserved=reserved,
        )
        if charged < amount:
            log.warning(
                "budget.spend.capped",
                user_id=user_id,
                requested=amount,
                charged=charged,
                limit=budget.monthly_limit,
            )
        log.debug(
            "budget.spend.recorded",
            user_id=user_id,
            amount=charged,
            provider_id=provider_id,
            spent=round(budget.spent_this_period, 6),
            limit=budget.monthly_limit,
        )

        alerts = await self._fire_alerts(budget)
        return SpendDecision(
            allowed=not budget.exhausted,
            budget=budget,
            amount=charged,
            alerts=tuple(alerts),
        )

    async def _fire_alerts(self, budget: Budget) -> list[BudgetAlert]:
        if budget.monthly_limit <= 0:
            return []

        fired: list[BudgetAlert] = []
        for threshold in self._config.alert_thresholds:
            if budget.spent_this_period < threshold * budget.monthly_limit:
                continue
            alert = BudgetAlert(
                user_id=budget.user_id,
                threshold=threshold,
                period_key=budget.period_key,
                spent=budget.spent_this_period,
                limit=budget.monthly_limit,
                created_at=self._clock(),
            )
            if not await self._store.insert_alert(alert):
                continue
            fired.append(alert)
            log.warning(
                "budget.alert.fired",
                user_id=budget.user_id,
                threshold_percent=alert.percent,
                period_key=budget.period_key,
            )
            await self._notifier.notify(alert)
        return fired

    async def project(self, budget: Budget) -> Projection:
        """Month-end projection from the rolling daily burn rate."""
        now = self._clock()
        window_days = min(self._config.burn_rate_window_days, now.day)
        recent = await self._store.sum_spend(
            budget.user_id,
            since=now - timedelta(days=window_days),
            period_key=budget.period_key,
        )
        daily = recent / window_days
        days_in_month = calendar.monthrange(now.year, now.month)[1]
        days_remaining = days_in_month - now.day
        projected = budget.spent_this_period + daily * days_remaining
        return Projection(
            daily_burn_rate=daily,
            projected_month_end=projected,
            days_remaining=days_remaining,
            will_exceed=projected > budget.monthly_limit,
        )

    async def get_cost_stats(self, user_id: str) -> CostStats:
        budget = await self.ensure_budget(user_id)
        breakdown = await self._store.spend_breakdown(user_id, budget.period_key)
        alerts = await self._store.list_alerts(user_id, budget.period_key)
        return CostStats(
            user_id=user_id,
            period_key=budget.period_key,
            spent_this_period=budget.spent_this_period,
            limit=budget.monthly_limit,
            remaining=budget.remaining,
            projection=await self.project(budget),
            breakdown=tuple(breakdown),
            alerts_fired=tuple(a.threshold for a in alerts),
        )

    async def platform_report(self) -> dict[str, Any]:
        """Platform-wide totals for the current period."""
        return await self._store.platform_totals(self.current_period())
