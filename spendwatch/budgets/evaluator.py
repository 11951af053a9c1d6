"""Threshold evaluation of current-period spend against a subject's budget.

Reads the subject's governing policy and the current period total from the
ledger, and classifies the result into at most one alert kind. Over-budget
and threshold are mutually exclusive: spend at or above the limit is always
over_budget.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from spendwatch.alerts.events import AlertKind, Severity
from spendwatch.budgets import policies
from spendwatch.ledger.periods import days_left_in_period, period_of, utc_now
from spendwatch.metrics.queries import period_total

logger = logging.getLogger(__name__)

# Threshold alerts at or above this spend ratio are warnings rather than info
WARNING_RATIO = Decimal("0.9")


@dataclass(frozen=True)
class BudgetStatus:
    """Result of a budget check for a subject."""

    subject_id: str
    policy_id: int
    monthly_limit: Decimal
    current_spend: Decimal
    alert_threshold: float
    currency: str
    period: str
    days_left_in_period: int
    alerts_enabled: bool = True

    @property
    def ratio(self) -> Decimal:
        """Spend as a fraction of the limit."""
        if self.monthly_limit <= 0:
            return Decimal("0")
        return self.current_spend / self.monthly_limit

    @property
    def percentage_used(self) -> float:
        """Spend as percentage of limit, rounded for display."""
        return round(float(self.ratio * 100), 4)

    @property
    def over_budget(self) -> bool:
        """Whether spend has reached or exceeded the limit."""
        return self.current_spend >= self.monthly_limit

    @property
    def threshold_crossed(self) -> bool:
        """Whether spend crossed the alert threshold."""
        return self.ratio >= Decimal(str(self.alert_threshold))

    @property
    def remaining(self) -> Decimal:
        """Budget left, never negative."""
        return max(self.monthly_limit - self.current_spend, Decimal("0"))

    @property
    def overage(self) -> Decimal:
        """Spend beyond the limit, never negative."""
        return max(self.current_spend - self.monthly_limit, Decimal("0"))


def classify(status: BudgetStatus) -> tuple[AlertKind, Severity] | None:
    """Map a status to the alert it warrants, if any.

    Returns:
        (over_budget, critical) at or above 100%; (threshold, warning) at or
        above 90% once the threshold is crossed, (threshold, info) below
        that; None when the threshold is not crossed.
    """
    if status.over_budget:
        return AlertKind.OVER_BUDGET, Severity.CRITICAL
    if status.threshold_crossed:
        if status.ratio >= WARNING_RATIO:
            return AlertKind.THRESHOLD, Severity.WARNING
        return AlertKind.THRESHOLD, Severity.INFO
    return None


def get_budget_status(
    conn: sqlite3.Connection, subject_id: str, now: datetime | None = None
) -> BudgetStatus | None:
    """Current-period status for a subject, regardless of the alerts flag.

    Returns:
        The status, or None when the subject has no active policy.
    """
    today = (now or utc_now()).date()
    policy = policies.get_active(conn, subject_id, today)
    if policy is None:
        return None
    period = period_of(today)
    return BudgetStatus(
        subject_id=subject_id,
        policy_id=policy.id,
        monthly_limit=policy.monthly_limit,
        current_spend=period_total(conn, subject_id, period),
        alert_threshold=policy.alert_threshold,
        currency=policy.currency,
        period=period,
        days_left_in_period=days_left_in_period(today),
        alerts_enabled=policy.alerts_enabled,
    )


def evaluate(
    conn: sqlite3.Connection, subject_id: str, now: datetime | None = None
) -> BudgetStatus | None:
    """Status for the alerting path.

    Returns:
        The status, or None when there is no active policy or its alerts are
        disabled.
    """
    status = get_budget_status(conn, subject_id, now)
    if status is None:
        logger.debug("No active budget policy for %s", subject_id)
        return None
    if not status.alerts_enabled:
        logger.debug("Alerts disabled for %s (policy %d)", subject_id, status.policy_id)
        return None
    return status
