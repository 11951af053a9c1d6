"""Aggregation queries over the cost ledger.

Read-only roll-ups by period, service, day and resource. Sums are computed in
SQL over scaled integers and returned as Decimal; conversion to float happens
only at the API/CLI presentation edge.
"""

import sqlite3
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from spendwatch.core.errors import ValidationError
from spendwatch.ledger.db import from_scaled
from spendwatch.ledger.periods import (
    days_in_period,
    parse_period,
    period_of,
    shift_period,
    utc_now,
)


@dataclass(frozen=True)
class ServiceBreakdown:
    service_name: str
    total: Decimal
    resource_count: int


@dataclass(frozen=True)
class DailyTotal:
    day: date
    total: Decimal


@dataclass(frozen=True)
class CostDriver:
    resource_id: str
    resource_type: str
    service_name: str
    total: Decimal


@dataclass(frozen=True)
class MonthlyTotal:
    period: str
    total: Decimal


@dataclass(frozen=True)
class PeriodSummary:
    """Headline numbers for one subject and period."""

    subject_id: str
    period: str
    total: Decimal
    record_count: int
    resource_count: int
    service_count: int
    days_with_data: int

    @property
    def daily_average(self) -> Decimal:
        """Mean spend per day with data (0 when there is none)."""
        if self.days_with_data == 0:
            return Decimal("0")
        return self.total / self.days_with_data

    @property
    def days_in_period(self) -> int:
        return days_in_period(self.period)


@dataclass(frozen=True)
class SubjectTotal:
    subject_id: str
    total: Decimal
    resource_count: int


def period_total(conn: sqlite3.Connection, subject_id: str, period: str) -> Decimal:
    """Total spend for a subject in a period (0 when there are no records)."""
    parse_period(period)
    row = conn.execute(
        """
        SELECT SUM(amount_scaled) AS total
        FROM cost_records
        WHERE subject_id = ? AND period = ?
        """,
        (subject_id, period),
    ).fetchone()
    return from_scaled(row["total"])


def breakdown_by_service(
    conn: sqlite3.Connection, subject_id: str, period: str
) -> list[ServiceBreakdown]:
    """Per-service totals for a subject and period.

    Ordered by total descending, ties by service name ascending. The totals
    sum exactly to period_total() for the same subject and period.
    """
    parse_period(period)
    rows = conn.execute(
        """
        SELECT
            service_name,
            SUM(amount_scaled) AS total,
            COUNT(DISTINCT resource_id) AS resource_count
        FROM cost_records
        WHERE subject_id = ? AND period = ?
        GROUP BY service_name
        ORDER BY total DESC, service_name ASC
        """,
        (subject_id, period),
    ).fetchall()
    return [
        ServiceBreakdown(
            service_name=r["service_name"],
            total=from_scaled(r["total"]),
            resource_count=r["resource_count"],
        )
        for r in rows
    ]


def daily_trend(
    conn: sqlite3.Connection, subject_id: str, start: date, end: date
) -> list[DailyTotal]:
    """Per-day totals for start <= day <= end, ascending.

    Days without records are absent from the result (no zero-fill).
    """
    if end < start:
        raise ValidationError("end", f"must not be before start ({start})")
    rows = conn.execute(
        """
        SELECT record_date, SUM(amount_scaled) AS total
        FROM cost_records
        WHERE subject_id = ? AND record_date >= ? AND record_date <= ?
        GROUP BY record_date
        ORDER BY record_date ASC
        """,
        (subject_id, start.isoformat(), end.isoformat()),
    ).fetchall()
    return [
        DailyTotal(day=date.fromisoformat(r["record_date"]), total=from_scaled(r["total"]))
        for r in rows
    ]


def top_drivers(
    conn: sqlite3.Connection, subject_id: str, period: str, limit: int = 10
) -> list[CostDriver]:
    """The most expensive resources of a period.

    Ordered by total descending, ties by resource id ascending.
    """
    parse_period(period)
    if limit < 1:
        raise ValidationError("limit", f"must be at least 1, got {limit}")
    rows = conn.execute(
        """
        SELECT
            resource_id,
            MAX(resource_type) AS resource_type,
            MAX(service_name) AS service_name,
            SUM(amount_scaled) AS total
        FROM cost_records
        WHERE subject_id = ? AND period = ?
        GROUP BY resource_id
        ORDER BY total DESC, resource_id ASC
        LIMIT ?
        """,
        (subject_id, period, limit),
    ).fetchall()
    return [
        CostDriver(
            resource_id=r["resource_id"],
            resource_type=r["resource_type"],
            service_name=r["service_name"],
            total=from_scaled(r["total"]),
        )
        for r in rows
    ]


def monthly_trend(
    conn: sqlite3.Connection,
    subject_id: str,
    months_back: int = 6,
    today: date | None = None,
) -> list[MonthlyTotal]:
    """Totals for the trailing ``months_back`` periods including the current one.

    Ascending by period. Periods with no records are omitted.
    """
    if months_back < 1:
        raise ValidationError("months_back", f"must be at least 1, got {months_back}")
    current = period_of(today or utc_now().date())
    first = shift_period(current, -(months_back - 1))
    rows = conn.execute(
        """
        SELECT period, SUM(amount_scaled) AS total
        FROM cost_records
        WHERE subject_id = ? AND period >= ? AND period <= ?
        GROUP BY period
        ORDER BY period ASC
        """,
        (subject_id, first, current),
    ).fetchall()
    return [MonthlyTotal(period=r["period"], total=from_scaled(r["total"])) for r in rows]


def period_summary(conn: sqlite3.Connection, subject_id: str, period: str) -> PeriodSummary:
    """Headline figures for one subject and period."""
    parse_period(period)
    row = conn.execute(
        """
        SELECT
            SUM(amount_scaled) AS total,
            COUNT(*) AS record_count,
            COUNT(DISTINCT resource_id) AS resource_count,
            COUNT(DISTINCT service_name) AS service_count,
            COUNT(DISTINCT record_date) AS days_with_data
        FROM cost_records
        WHERE subject_id = ? AND period = ?
        """,
        (subject_id, period),
    ).fetchone()
    return PeriodSummary(
        subject_id=subject_id,
        period=period,
        total=from_scaled(row["total"]),
        record_count=row["record_count"],
        resource_count=row["resource_count"],
        service_count=row["service_count"],
        days_with_data=row["days_with_data"],
    )


def all_subjects_summary(conn: sqlite3.Connection, period: str) -> list[SubjectTotal]:
    """Per-subject totals for a period, highest spend first."""
    parse_period(period)
    rows = conn.execute(
        """
        SELECT
            subject_id,
            SUM(amount_scaled) AS total,
            COUNT(DISTINCT resource_id) AS resource_count
        FROM cost_records
        WHERE period = ?
        GROUP BY subject_id
        ORDER BY total DESC, subject_id ASC
        """,
        (period,),
    ).fetchall()
    return [
        SubjectTotal(
            subject_id=r["subject_id"],
            total=from_scaled(r["total"]),
            resource_count=r["resource_count"],
        )
        for r in rows
    ]


def account_summary(
    conn: sqlite3.Connection, account_id: str, period: str
) -> list[ServiceBreakdown]:
    """Per-service totals for one external account across all subjects."""
    parse_period(period)
    rows = conn.execute(
        """
        SELECT
            service_name,
            SUM(amount_scaled) AS total,
            COUNT(DISTINCT resource_id) AS resource_count
        FROM cost_records
        WHERE account_id = ? AND period = ?
        GROUP BY service_name
        ORDER BY total DESC, service_name ASC
        """,
        (account_id, period),
    ).fetchall()
    return [
        ServiceBreakdown(
            service_name=r["service_name"],
            total=from_scaled(r["total"]),
            resource_count=r["resource_count"],
        )
        for r in rows
    ]
