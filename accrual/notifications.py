"""Post-commit, best-effort investment notifications."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import logging
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

INCREMENT = "investment_increment"
COMPLETED = "investment_completed"


@dataclass(frozen=True)
class InvestmentNotification:
    """Payload handed to a notifier after the accrual transaction commits."""

    kind: str
    user_id: int
    investment_id: int
    plan_name: str
    day: int
    duration: int
    amount: Decimal
    total_earned: Decimal
    principal: Decimal
    occurred_at: datetime
    next_accrual_utc: Optional[datetime] = None


class InvestmentNotifier(Protocol):
    """Delivery seam for increment and completion notices."""

    def send(self, notification: InvestmentNotification) -> None:
        """Deliver one notification."""


class LoggingNotifier:
    """Notifier that records notices in the application log."""

    def send(self, notification: InvestmentNotification) -> None:
        logger.info(
            "Investment notification kind=%s user_id=%s investment_id=%s day=%s/%s amount=%s total_earned=%s",
            notification.kind,
            notification.user_id,
            notification.investment_id,
            notification.day,
            notification.duration,
            notification.amount,
            notification.total_earned,
        )


def notify_best_effort(notifier: InvestmentNotifier, notification: InvestmentNotification) -> bool:
    """Send one notification; delivery failures are logged and reported as False."""
    try:
        notifier.send(notification)
    except Exception:
        logger.exception(
            "Notification delivery failed kind=%s investment_id=%s",
            notification.kind,
            notification.investment_id,
        )
        return False
    return True
