"""Budget tracking for Arbiter: per-user limits, alerts and cost reports."""

from arbiter.budget.models import (
    Budget,
    BudgetAlert,
    CostStats,
    LedgerEntry,
    Projection,
    SpendBreakdown,
    SpendDecision,
)
from arbiter.budget.notify import LogNotificationChannel, NotificationChannel
from arbiter.budget.tracker import CostTracker

__all__ = [
    "Budget",
    "BudgetAlert",
    "CostStats",
    "CostTracker",
    "LedgerEntry",
    "LogNotificationChannel",
    "NotificationChannel",
    "Projection",
    "SpendBreakdown",
    "SpendDecision",
]
