"""Alert history and manual alerting API endpoints."""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from spendwatch.alerts.events import AlertEvent
from spendwatch.alerts.ledger import HISTORY_LIMIT, AlertLedger
from spendwatch.api.dependencies import get_cost_scheduler, get_dispatcher, money, open_ledger
from spendwatch.api.security import RequireAuth
from spendwatch.core.errors import DeliveryError
from spendwatch.ledger.periods import utc_now
from spendwatch.notifications.email import render_threshold_alert

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/alerts", tags=["Alerts"])


class AlertEventResponse(BaseModel):
    id: int
    subject_id: str
    policy_id: int
    kind: str
    severity: str
    state: str
    delivery_succeeded: bool
    percentage_used: float | None
    amount_spent: float | None
    limit: float | None
    message: str | None
    created_at: datetime
    delivered_at: datetime | None


class AlertStatItem(BaseModel):
    kind: str
    severity: str
    count: int
    delivered: int


class AlertStatisticsResponse(BaseModel):
    total: int
    delivered: int
    by_kind: list[AlertStatItem]


class CheckResponse(BaseModel):
    """Outcome of a manual threshold sweep."""

    checked: int
    alerts_sent: int
    skipped: int
    errors: int
    details: dict[str, str]


class TestEmailRequest(BaseModel):
    to: str


class TestEmailResponse(BaseModel):
    success: bool
    message: str


def _event_response(event: AlertEvent) -> AlertEventResponse:
    return AlertEventResponse(
        id=event.id,
        subject_id=event.subject_id,
        policy_id=event.policy_id,
        kind=event.kind.value,
        severity=event.severity.value,
        state=event.state.value,
        delivery_succeeded=event.delivery_succeeded,
        percentage_used=event.percentage_used,
        amount_spent=money(event.amount_spent) if event.amount_spent is not None else None,
        limit=money(event.limit) if event.limit is not None else None,
        message=event.message,
        created_at=event.created_at,
        delivered_at=event.delivered_at,
    )


@router.get("/subjects/{subject_id}", response_model=list[AlertEventResponse])
def subject_alerts(
    subject_id: str,
    request: Request,
    _auth: RequireAuth,
    limit: int = Query(default=HISTORY_LIMIT, ge=1, le=500),
) -> list[AlertEventResponse]:
    """A subject's alerts, newest first."""
    with open_ledger(request) as conn:
        events = AlertLedger(conn).history_for_subject(subject_id, limit)
    return [_event_response(e) for e in events]


@router.get("/policies/{policy_id}", response_model=list[AlertEventResponse])
def policy_alerts(
    policy_id: int,
    request: Request,
    _auth: RequireAuth,
    limit: int = Query(default=HISTORY_LIMIT, ge=1, le=500),
) -> list[AlertEventResponse]:
    """A policy's alerts, newest first."""
    with open_ledger(request) as conn:
        events = AlertLedger(conn).history_for_policy(policy_id, limit)
    return [_event_response(e) for e in events]


@router.get("/statistics", response_model=AlertStatisticsResponse)
def alert_statistics(
    request: Request,
    _auth: RequireAuth,
    subject_id: str | None = Query(default=None),
    start: datetime | None = Query(default=None, description="Created at or after"),
    end: datetime | None = Query(default=None, description="Created before"),
) -> AlertStatisticsResponse:
    """Alert counts grouped by kind and severity."""
    with open_ledger(request) as conn:
        stats = AlertLedger(conn).statistics(subject_id, start, end)
    return AlertStatisticsResponse(
        total=sum(s.count for s in stats),
        delivered=sum(s.delivered for s in stats),
        by_kind=[
            AlertStatItem(
                kind=s.kind.value, severity=s.severity.value, count=s.count, delivered=s.delivered
            )
            for s in stats
        ],
    )


@router.get("/unsent", response_model=list[AlertEventResponse])
def unsent_alerts(
    request: Request,
    _auth: RequireAuth,
    hours: int = Query(default=24, ge=1, le=24 * 30),
) -> list[AlertEventResponse]:
    """Alerts from the last ``hours`` that were claimed but not delivered."""
    with open_ledger(request) as conn:
        events = AlertLedger(conn).unsent_recent(utc_now(), timedelta(hours=hours))
    return [_event_response(e) for e in events]


@router.post("/check", response_model=CheckResponse)
def check_budgets(request: Request, _auth: RequireAuth) -> CheckResponse:
    """Run the threshold sweep now. Alerts go through the same cooldown as scheduled runs."""
    logger.info("Manual budget alert check triggered")
    result = get_cost_scheduler(request).run_sweep()
    details = {subject: str(outcome) for subject, outcome in result.details.items()}
    return CheckResponse(
        checked=result.processed + result.failed + result.skipped,
        alerts_sent=sum(1 for outcome in details.values() if outcome == "sent"),
        skipped=result.skipped,
        errors=result.failed,
        details=details,
    )


@router.post("/test-email", response_model=TestEmailResponse)
def send_test_email(
    body: TestEmailRequest, request: Request, _auth: RequireAuth
) -> TestEmailResponse:
    """Send a sample threshold alert to check the mail transport configuration."""
    message = render_threshold_alert(
        "Test User",
        spend=Decimal("850"),
        limit=Decimal("1000"),
        remaining=Decimal("150"),
        percentage_used=85.0,
        days_left=10,
        currency="USD",
    )
    transport = get_dispatcher(request).transport
    try:
        sent = transport.deliver(body.to, message.subject, message.body)
    except DeliveryError as e:
        logger.warning("Test email to %s failed: %s", body.to, e)
        sent = False
    if not sent:
        raise HTTPException(
            status_code=502,
            detail="Failed to send test email. Check the SMTP configuration.",
        )
    return TestEmailResponse(success=True, message=f"Test email sent to {body.to}")
