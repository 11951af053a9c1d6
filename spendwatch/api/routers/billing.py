"""Billing query and forecast API endpoints.

Read-only views over the cost ledger: period totals, per-service breakdowns,
daily and monthly trends, the costliest resources, and spend forecasts.
Periods default to the current UTC month.
"""

import logging
from datetime import date
from decimal import Decimal

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from spendwatch.api.dependencies import current_period, get_registry, money, open_ledger
from spendwatch.api.security import RequireAuth
from spendwatch.ledger import records
from spendwatch.ledger.periods import utc_now
from spendwatch.metrics import queries
from spendwatch.metrics.forecast import (
    ForecastResult,
    comprehensive_forecast,
    forecast_method,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


class PeriodTotalResponse(BaseModel):
    subject_id: str
    period: str
    total: float


class ServiceBreakdownItem(BaseModel):
    service_name: str
    total: float
    resource_count: int
    percentage: float


class BreakdownResponse(BaseModel):
    """Per-service totals; the totals sum to the period total."""

    subject_id: str
    period: str
    total: float
    services: list[ServiceBreakdownItem]


class DailyTotalItem(BaseModel):
    day: date
    total: float


class TrendResponse(BaseModel):
    subject_id: str
    start: date
    end: date
    days: list[DailyTotalItem]


class CostDriverItem(BaseModel):
    resource_id: str
    resource_type: str
    service_name: str
    total: float


class TopDriversResponse(BaseModel):
    subject_id: str
    period: str
    drivers: list[CostDriverItem]


class MonthlyTotalItem(BaseModel):
    period: str
    total: float


class MonthlyTrendResponse(BaseModel):
    subject_id: str
    months: list[MonthlyTotalItem]


class SummaryResponse(BaseModel):
    subject_id: str
    period: str
    total: float
    record_count: int
    resource_count: int
    service_count: int
    days_with_data: int
    daily_average: float


class CostRecordItem(BaseModel):
    account_id: str
    resource_id: str
    resource_type: str | None
    service_name: str
    record_date: date
    amount: float
    currency: str
    usage_quantity: float | None
    usage_unit: str | None
    data_source: str


class ForecastItem(BaseModel):
    method: str
    target_period: str
    predicted_amount: float
    confidence: str
    trend: str
    daily_average: float
    data_points: int


class ForecastResponse(BaseModel):
    """One method's forecast, or all four plus consensus and recommendation."""

    subject_id: str
    forecasts: list[ForecastItem]
    consensus: float | None = None
    recommended: ForecastItem | None = None


class SubjectTotalItem(BaseModel):
    subject_id: str
    total: float
    resource_count: int


class AllSubjectsResponse(BaseModel):
    period: str
    total: float
    subjects: list[SubjectTotalItem]


class AccountSummaryResponse(BaseModel):
    account_id: str
    period: str
    total: float
    services: list[ServiceBreakdownItem]


def _service_items(
    rows: list[queries.ServiceBreakdown],
) -> tuple[float, list[ServiceBreakdownItem]]:
    grand_total = sum((r.total for r in rows), start=Decimal("0"))
    items = [
        ServiceBreakdownItem(
            service_name=r.service_name,
            total=money(r.total),
            resource_count=r.resource_count,
            percentage=round(float(r.total / grand_total * 100), 2) if grand_total else 0.0,
        )
        for r in rows
    ]
    return money(grand_total), items


def _forecast_item(result: ForecastResult) -> ForecastItem:
    return ForecastItem(
        method=result.method.value,
        target_period=result.target_period,
        predicted_amount=money(result.predicted_amount),
        confidence=result.confidence.value,
        trend=result.trend.value,
        daily_average=money(result.daily_average),
        data_points=result.data_points,
    )


@router.get("/subjects/{subject_id}/total", response_model=PeriodTotalResponse)
def subject_total(
    subject_id: str,
    request: Request,
    _auth: RequireAuth,
    period: str | None = Query(default=None, description="YYYY-MM, default current month"),
) -> PeriodTotalResponse:
    """Total spend for a subject in a period."""
    period = current_period(period)
    with open_ledger(request) as conn:
        total = queries.period_total(conn, subject_id, period)
    return PeriodTotalResponse(subject_id=subject_id, period=period, total=money(total))


@router.get("/subjects/{subject_id}/breakdown", response_model=BreakdownResponse)
def subject_breakdown(
    subject_id: str,
    request: Request,
    _auth: RequireAuth,
    period: str | None = Query(default=None, description="YYYY-MM, default current month"),
) -> BreakdownResponse:
    """Per-service spend, highest first."""
    period = current_period(period)
    with open_ledger(request) as conn:
        rows = queries.breakdown_by_service(conn, subject_id, period)
    total, items = _service_items(rows)
    return BreakdownResponse(subject_id=subject_id, period=period, total=total, services=items)


@router.get("/subjects/{subject_id}/trend", response_model=TrendResponse)
def subject_trend(
    subject_id: str,
    request: Request,
    _auth: RequireAuth,
    start: date | None = Query(default=None, description="First day, default month start"),
    end: date | None = Query(default=None, description="Last day (inclusive), default today"),
) -> TrendResponse:
    """Daily totals over a date range. Days without records are omitted."""
    today = utc_now().date()
    end = end or today
    start = start or end.replace(day=1)
    with open_ledger(request) as conn:
        days = queries.daily_trend(conn, subject_id, start, end)
    return TrendResponse(
        subject_id=subject_id,
        start=start,
        end=end,
        days=[DailyTotalItem(day=d.day, total=money(d.total)) for d in days],
    )


@router.get("/subjects/{subject_id}/top-drivers", response_model=TopDriversResponse)
def subject_top_drivers(
    subject_id: str,
    request: Request,
    _auth: RequireAuth,
    period: str | None = Query(default=None, description="YYYY-MM, default current month"),
    limit: int = Query(default=10, ge=1, le=100),
) -> TopDriversResponse:
    """The most expensive resources in a period."""
    period = current_period(period)
    with open_ledger(request) as conn:
        drivers = queries.top_drivers(conn, subject_id, period, limit)
    return TopDriversResponse(
        subject_id=subject_id,
        period=period,
        drivers=[
            CostDriverItem(
                resource_id=d.resource_id,
                resource_type=d.resource_type,
                service_name=d.service_name,
                total=money(d.total),
            )
            for d in drivers
        ],
    )


@router.get("/subjects/{subject_id}/monthly-trend", response_model=MonthlyTrendResponse)
def subject_monthly_trend(
    subject_id: str,
    request: Request,
    _auth: RequireAuth,
    months: int = Query(default=6, ge=1, le=36, description="Trailing months incl. current"),
) -> MonthlyTrendResponse:
    """Monthly totals for the trailing months. Months without records are omitted."""
    with open_ledger(request) as conn:
        rows = queries.monthly_trend(conn, subject_id, months, utc_now().date())
    return MonthlyTrendResponse(
        subject_id=subject_id,
        months=[MonthlyTotalItem(period=r.period, total=money(r.total)) for r in rows],
    )


@router.get("/subjects/{subject_id}/summary", response_model=SummaryResponse)
def subject_summary(
    subject_id: str,
    request: Request,
    _auth: RequireAuth,
    period: str | None = Query(default=None, description="YYYY-MM, default current month"),
) -> SummaryResponse:
    """Headline figures for a subject and period."""
    period = current_period(period)
    with open_ledger(request) as conn:
        summary = queries.period_summary(conn, subject_id, period)
    return SummaryResponse(
        subject_id=subject_id,
        period=period,
        total=money(summary.total),
        record_count=summary.record_count,
        resource_count=summary.resource_count,
        service_count=summary.service_count,
        days_with_data=summary.days_with_data,
        daily_average=money(summary.daily_average),
    )


@router.get("/subjects/{subject_id}/costs", response_model=list[CostRecordItem])
def subject_costs(
    subject_id: str,
    request: Request,
    _auth: RequireAuth,
    start: date | None = Query(default=None),
    end: date | None = Query(default=None),
) -> list[CostRecordItem]:
    """Raw ledger records for a subject, ordered by date then resource."""
    with open_ledger(request) as conn:
        rows = records.query_by_period(conn, subject_id, start, end)
    return [
        CostRecordItem(
            account_id=r.account_id,
            resource_id=r.resource_id,
            resource_type=r.resource_type,
            service_name=r.service_name,
            record_date=r.record_date,
            amount=money(r.amount),
            currency=r.currency,
            usage_quantity=float(r.usage_quantity) if r.usage_quantity is not None else None,
            usage_unit=r.usage_unit,
            data_source=r.data_source,
        )
        for r in rows
    ]


@router.get("/subjects/{subject_id}/forecast", response_model=ForecastResponse)
def subject_forecast(
    subject_id: str,
    request: Request,
    _auth: RequireAuth,
    method: str | None = Query(
        default=None, description="Single method name; omit to run all four"
    ),
) -> ForecastResponse:
    """Forecast next month's spend."""
    today = utc_now().date()
    with open_ledger(request) as conn:
        if method is not None:
            result = forecast_method(conn, subject_id, method, today)
            return ForecastResponse(subject_id=subject_id, forecasts=[_forecast_item(result)])
        combined = comprehensive_forecast(conn, subject_id, today)
    return ForecastResponse(
        subject_id=subject_id,
        forecasts=[_forecast_item(f) for f in combined.forecasts],
        consensus=money(combined.consensus),
        recommended=_forecast_item(combined.recommended),
    )


@router.get("/summary", response_model=AllSubjectsResponse)
def all_subjects(
    request: Request,
    _auth: RequireAuth,
    period: str | None = Query(default=None, description="YYYY-MM, default current month"),
) -> AllSubjectsResponse:
    """Spend per subject for a period, highest first."""
    period = current_period(period)
    with open_ledger(request) as conn:
        rows = queries.all_subjects_summary(conn, period)
    return AllSubjectsResponse(
        period=period,
        total=money(sum((r.total for r in rows), start=Decimal("0"))),
        subjects=[
            SubjectTotalItem(
                subject_id=r.subject_id, total=money(r.total), resource_count=r.resource_count
            )
            for r in rows
        ],
    )


@router.get("/accounts/{account_id}/summary", response_model=AccountSummaryResponse)
def account_summary(
    account_id: str,
    request: Request,
    _auth: RequireAuth,
    period: str | None = Query(default=None, description="YYYY-MM, default current month"),
) -> AccountSummaryResponse:
    """Per-service spend for one external account across all subjects."""
    if get_registry(request).get_account(account_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown account: {account_id}")
    period = current_period(period)
    with open_ledger(request) as conn:
        rows = queries.account_summary(conn, account_id, period)
    total, items = _service_items(rows)
    return AccountSummaryResponse(
        account_id=account_id, period=period, total=total, services=items
    )
