from enum import IntEnum
from typing import Optional

from aggregation import BudgetConsumption, percentage_used
from models import NotificationType

CRITICAL_PERCENT = 125
EXCEEDED_PERCENT = 100
DEFAULT_WARNING_PERCENT = 75


class AlertTier(IntEnum):
    """Severity ladder for budget consumption. Higher value pre-empts lower."""

    normal = 0
    warning = 1
    exceeded = 2
    critical = 3

    @property
    def notification_type(self) -> Optional[NotificationType]:
        return _TIER_NOTIFICATION.get(self)


_TIER_NOTIFICATION: dict[AlertTier, NotificationType] = {
    AlertTier.warning: NotificationType.budget_warning,
    AlertTier.exceeded: NotificationType.budget_exceeded,
    AlertTier.critical: NotificationType.budget_critical,
}


def tier_for_percentage(
    percent: float, warning_threshold: int = DEFAULT_WARNING_PERCENT
) -> AlertTier:
    if percent >= CRITICAL_PERCENT:
        return AlertTier.critical
    if percent >= EXCEEDED_PERCENT:
        return AlertTier.exceeded
    if percent >= warning_threshold:
        return AlertTier.warning
    return AlertTier.normal


def classify(
    spent_cents: int,
    limit_cents: int,
    warning_threshold: int = DEFAULT_WARNING_PERCENT,
) -> AlertTier:
    return tier_for_percentage(
        percentage_used(spent_cents, limit_cents), warning_threshold
    )


def classify_consumption(
    consumption: BudgetConsumption,
    warning_threshold: int = DEFAULT_WARNING_PERCENT,
) -> AlertTier:
    return tier_for_percentage(consumption.percentage_used, warning_threshold)
