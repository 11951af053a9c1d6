"""Budget policy API endpoints.

CRUD over budget policies plus the live status of a subject's governing
policy. Business validation (positive limit, threshold in [0, 1], date
ordering) happens in the policy store and surfaces as 422 naming the field.
"""

import logging
from datetime import date
from decimal import Decimal

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from spendwatch.api.dependencies import get_registry, money, open_ledger
from spendwatch.api.security import RequireAuth
from spendwatch.budgets import policies
from spendwatch.budgets.evaluator import classify, get_budget_status
from spendwatch.core.errors import ValidationError
from spendwatch.ledger.periods import utc_now

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/budgets", tags=["Budgets"])


class PolicyCreateRequest(BaseModel):
    """Request body for a new policy."""

    subject_id: str
    monthly_limit: Decimal
    currency: str = "USD"
    alert_threshold: float = Field(default=policies.DEFAULT_ALERT_THRESHOLD)
    alerts_enabled: bool = True
    start_date: date | None = None
    end_date: date | None = None
    created_by: str | None = None


class PolicyPatchRequest(BaseModel):
    """Partial update. Sending ``"end_date": null`` removes the end date."""

    monthly_limit: Decimal | None = None
    currency: str | None = None
    alert_threshold: float | None = None
    alerts_enabled: bool | None = None
    start_date: date | None = None
    end_date: date | None = None

    def to_patch(self) -> policies.PolicyPatch:
        clear_end = "end_date" in self.model_fields_set and self.end_date is None
        return policies.PolicyPatch(
            monthly_limit=self.monthly_limit,
            currency=self.currency,
            alert_threshold=self.alert_threshold,
            alerts_enabled=self.alerts_enabled,
            start_date=self.start_date,
            end_date=self.end_date,
            clear_end_date=clear_end,
        )


class PolicyResponse(BaseModel):
    id: int
    subject_id: str
    monthly_limit: float
    currency: str
    alert_threshold: float
    alerts_enabled: bool
    start_date: date
    end_date: date | None
    last_alert_sent: str | None
    created_by: str | None
    created_at: str
    updated_at: str


class BudgetStatusResponse(BaseModel):
    """Current-period spend against the governing policy."""

    subject_id: str
    policy_id: int
    period: str
    monthly_limit: float
    current_spend: float
    remaining: float
    overage: float
    percentage_used: float
    alert_threshold: float
    threshold_crossed: bool
    over_budget: bool
    alerts_enabled: bool
    alert_level: str | None
    currency: str
    days_left_in_period: int


def _policy_response(policy: policies.BudgetPolicy) -> PolicyResponse:
    return PolicyResponse(
        id=policy.id,
        subject_id=policy.subject_id,
        monthly_limit=money(policy.monthly_limit),
        currency=policy.currency,
        alert_threshold=policy.alert_threshold,
        alerts_enabled=policy.alerts_enabled,
        start_date=policy.start_date,
        end_date=policy.end_date,
        last_alert_sent=policy.last_alert_sent.isoformat() if policy.last_alert_sent else None,
        created_by=policy.created_by,
        created_at=policy.created_at,
        updated_at=policy.updated_at,
    )


@router.get("", response_model=list[PolicyResponse])
def list_policies(
    request: Request,
    _auth: RequireAuth,
    subject_id: str | None = Query(default=None, description="Filter by subject"),
) -> list[PolicyResponse]:
    """All policies, including expired ones, newest first."""
    with open_ledger(request) as conn:
        return [_policy_response(p) for p in policies.list_all(conn, subject_id)]


@router.post("", response_model=PolicyResponse, status_code=status.HTTP_201_CREATED)
def create_policy(
    body: PolicyCreateRequest, request: Request, _auth: RequireAuth
) -> PolicyResponse:
    """Create a policy for a subject known to the account registry."""
    if not get_registry(request).has_subject(body.subject_id):
        raise ValidationError("subject_id", f"unknown subject {body.subject_id!r}")
    data = policies.PolicyCreate(**body.model_dump())
    with open_ledger(request) as conn:
        policy = policies.create(conn, data)
    return _policy_response(policy)


@router.get("/subjects/{subject_id}/active", response_model=PolicyResponse)
def active_policy(subject_id: str, request: Request, _auth: RequireAuth) -> PolicyResponse:
    """The policy governing a subject today."""
    with open_ledger(request) as conn:
        policy = policies.get_active(conn, subject_id, utc_now().date())
    if policy is None:
        raise HTTPException(status_code=404, detail=f"No active budget for {subject_id}")
    return _policy_response(policy)


@router.get("/subjects/{subject_id}/status", response_model=BudgetStatusResponse)
def budget_status(
    subject_id: str, request: Request, _auth: RequireAuth
) -> BudgetStatusResponse:
    """Spend against the active policy, whether or not its alerts are enabled."""
    with open_ledger(request) as conn:
        current = get_budget_status(conn, subject_id, utc_now())
    if current is None:
        raise HTTPException(status_code=404, detail=f"No active budget for {subject_id}")
    classified = classify(current)
    return BudgetStatusResponse(
        subject_id=current.subject_id,
        policy_id=current.policy_id,
        period=current.period,
        monthly_limit=money(current.monthly_limit),
        current_spend=money(current.current_spend),
        remaining=money(current.remaining),
        overage=money(current.overage),
        percentage_used=current.percentage_used,
        alert_threshold=current.alert_threshold,
        threshold_crossed=current.threshold_crossed,
        over_budget=current.over_budget,
        alerts_enabled=current.alerts_enabled,
        alert_level=classified[1].value if classified else None,
        currency=current.currency,
        days_left_in_period=current.days_left_in_period,
    )


@router.get("/{policy_id}", response_model=PolicyResponse)
def get_policy(policy_id: int, request: Request, _auth: RequireAuth) -> PolicyResponse:
    with open_ledger(request) as conn:
        policy = policies.get(conn, policy_id)
    if policy is None:
        raise HTTPException(status_code=404, detail=f"Budget policy {policy_id} not found")
    return _policy_response(policy)


@router.patch("/{policy_id}", response_model=PolicyResponse)
def update_policy(
    policy_id: int, body: PolicyPatchRequest, request: Request, _auth: RequireAuth
) -> PolicyResponse:
    """Apply a partial update; dates are checked against the merged result."""
    with open_ledger(request) as conn:
        policy = policies.update(conn, policy_id, body.to_patch())
    if policy is None:
        raise HTTPException(status_code=404, detail=f"Budget policy {policy_id} not found")
    return _policy_response(policy)


@router.delete("/{policy_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_policy(policy_id: int, request: Request, _auth: RequireAuth) -> None:
    with open_ledger(request) as conn:
        deleted = policies.delete(conn, policy_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Budget policy {policy_id} not found")
