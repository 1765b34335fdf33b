"""Budget alert notification channels."""

from typing import Protocol

from arbiter.budget.models import BudgetAlert
from arbiter.observability.logging import get_logger

log = get_logger(__name__)


class NotificationChannel(Protocol):
    """Delivers a fired BudgetAlert to the user (push, broadcast, email...)."""

    async def notify(self, alert: BudgetAlert) -> None: ...


class LogNotificationChannel:
    """Default channel: writes the alert to the structured log."""

    async def notify(self, alert: BudgetAlert) -> None:
        log.warning(
            "budget.alert.notified",
            user_id=alert.user_id,
            threshold_percent=alert.percent,
            period_key=alert.period_key,
            spent=round(alert.spent, 6),
            limit=alert.limit,
        )
