"""Alert dispatch: classify, claim, render, deliver, record.

Every alert goes through AlertLedger.claim() before delivery, so concurrent
sweeps, manual checks and retries never send the same (subject, policy,
kind) twice inside the cooldown. Delivery happens outside the claim
transaction; its result is recorded afterwards.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum

from spendwatch.accounts.registry import AccountRegistry, SubjectConfig
from spendwatch.alerts.events import (
    AlertDetail,
    AlertKind,
    DailySummaryDetail,
    OverBudgetDetail,
    Severity,
    ThresholdDetail,
)
from spendwatch.alerts.ledger import DEFAULT_CLAIM_LEASE, DEFAULT_COOLDOWN, AlertLedger
from spendwatch.budgets import policies
from spendwatch.budgets.evaluator import BudgetStatus, classify
from spendwatch.core.errors import ConsistencyError
from spendwatch.ledger.periods import period_of
from spendwatch.metrics.queries import breakdown_by_service, daily_trend, period_summary
from spendwatch.notifications.email import (
    NotificationTransport,
    RenderedMessage,
    render_daily_summary,
    render_over_budget_alert,
    render_threshold_alert,
)

logger = logging.getLogger(__name__)

DAILY_SUMMARY_TOP_SERVICES = 3


class DispatchOutcome(StrEnum):
    NOT_ELIGIBLE = "not_eligible"
    SKIPPED_COOLDOWN = "skipped_cooldown"
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class DispatchResult:
    subject_id: str
    outcome: DispatchOutcome
    kind: AlertKind | None = None
    severity: Severity | None = None
    event_id: int | None = None


class Dispatcher:
    """Sends budget alerts through a notification transport.

    Args:
        registry: Account registry used to resolve subject names and emails.
        transport: Notification transport.
        cooldown: Minimum spacing between two sent alerts of one kind.
        claim_lease: Lifetime of an undelivered claim.
    """

    def __init__(
        self,
        registry: AccountRegistry,
        transport: NotificationTransport,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        claim_lease: timedelta = DEFAULT_CLAIM_LEASE,
    ) -> None:
        self.registry = registry
        self.transport = transport
        self.cooldown = cooldown
        self.claim_lease = claim_lease

    def _ledger(self, conn: sqlite3.Connection) -> AlertLedger:
        return AlertLedger(conn, cooldown=self.cooldown, claim_lease=self.claim_lease)

    def _subject(self, subject_id: str) -> SubjectConfig:
        subject = self.registry.get_subject(subject_id)
        if subject is None:
            raise ConsistencyError(f"Budget policy exists for unknown subject '{subject_id}'")
        return subject

    def _deliver(self, recipient: str, message: RenderedMessage) -> bool:
        try:
            return self.transport.deliver(recipient, message.subject, message.body)
        except Exception:
            logger.exception("Notification transport failed for %s", recipient)
            return False

    def _send(
        self,
        conn: sqlite3.Connection,
        subject: SubjectConfig,
        policy_id: int,
        kind: AlertKind,
        severity: Severity,
        message: RenderedMessage,
        detail: AlertDetail,
        now: datetime,
        status: BudgetStatus | None = None,
    ) -> DispatchResult:
        ledger = self._ledger(conn)
        event = ledger.claim(
            subject.id,
            policy_id,
            kind,
            severity,
            now,
            percentage_used=status.percentage_used if status else None,
            amount_spent=status.current_spend if status else None,
            limit=status.monthly_limit if status else None,
            message=message.body,
            detail=detail,
        )
        if event is None:
            logger.info("Skipping %s alert for %s: inside cooldown", kind, subject.id)
            return DispatchResult(subject.id, DispatchOutcome.SKIPPED_COOLDOWN, kind, severity)

        delivered = self._deliver(subject.email, message)
        ledger.complete(event.id, delivered, now)
        if delivered:
            policies.mark_alert_sent(conn, policy_id, now)
            logger.info("Sent %s/%s alert to %s (event %d)", kind, severity, subject.id, event.id)
            return DispatchResult(subject.id, DispatchOutcome.SENT, kind, severity, event.id)

        logger.warning("Delivery of %s alert for %s failed (event %d)", kind, subject.id, event.id)
        return DispatchResult(subject.id, DispatchOutcome.FAILED, kind, severity, event.id)

    def dispatch(
        self, conn: sqlite3.Connection, status: BudgetStatus, now: datetime
    ) -> DispatchResult:
        """Send the alert a budget status warrants, at most once per cooldown.

        Raises:
            ConsistencyError: If the subject is missing from the registry.
        """
        classified = classify(status)
        if classified is None:
            return DispatchResult(status.subject_id, DispatchOutcome.NOT_ELIGIBLE)
        kind, severity = classified

        subject = self._subject(status.subject_id)
        if not subject.email:
            logger.warning("Subject %s has no alert email; not notifying", subject.id)
            return DispatchResult(subject.id, DispatchOutcome.NOT_ELIGIBLE, kind, severity)

        detail: AlertDetail
        if kind is AlertKind.OVER_BUDGET:
            message = render_over_budget_alert(
                subject.display_name,
                spend=status.current_spend,
                limit=status.monthly_limit,
                overage=status.overage,
                currency=status.currency,
            )
            detail = OverBudgetDetail(
                percentage_used=status.percentage_used,
                overage=str(status.overage),
                days_left=status.days_left_in_period,
            )
        else:
            message = render_threshold_alert(
                subject.display_name,
                spend=status.current_spend,
                limit=status.monthly_limit,
                remaining=status.remaining,
                percentage_used=status.percentage_used,
                days_left=status.days_left_in_period,
                currency=status.currency,
            )
            detail = ThresholdDetail(
                percentage_used=status.percentage_used,
                threshold_pct=status.alert_threshold * 100,
                remaining=str(status.remaining),
                days_left=status.days_left_in_period,
            )

        return self._send(
            conn, subject, status.policy_id, kind, severity, message, detail, now, status
        )

    def dispatch_daily_summary(
        self, conn: sqlite3.Connection, subject_id: str, now: datetime
    ) -> DispatchResult:
        """Send yesterday's cost digest for a subject with an enabled policy.

        Raises:
            ConsistencyError: If the subject is missing from the registry.
        """
        today = now.date()
        policy = policies.get_active(conn, subject_id, today)
        if policy is None or not policy.alerts_enabled:
            return DispatchResult(subject_id, DispatchOutcome.NOT_ELIGIBLE)

        subject = self._subject(subject_id)
        if not subject.email:
            return DispatchResult(subject_id, DispatchOutcome.NOT_ELIGIBLE)

        yesterday = today - timedelta(days=1)
        day_rows = daily_trend(conn, subject_id, yesterday, yesterday)
        day_total = day_rows[0].total if day_rows else Decimal("0")
        summary = period_summary(conn, subject_id, period_of(yesterday))
        top = breakdown_by_service(conn, subject_id, summary.period)[:DAILY_SUMMARY_TOP_SERVICES]
        top_services = [(b.service_name, b.total) for b in top]

        message = render_daily_summary(
            subject.display_name,
            day=yesterday.isoformat(),
            day_total=day_total,
            period_total=summary.total,
            average_daily=summary.daily_average,
            top_services=top_services,
            currency=policy.currency,
        )
        detail = DailySummaryDetail(
            day=yesterday.isoformat(),
            day_total=str(day_total),
            period_total=str(summary.total),
            top_services=tuple((name, str(total)) for name, total in top_services),
        )
        return self._send(
            conn, subject, policy.id, AlertKind.DAILY_SUMMARY, Severity.INFO, message, detail, now
        )
