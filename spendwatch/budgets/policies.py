"""Budget policy store.

A policy sets a monthly spending limit and an alert threshold for one
subject. A policy is active on a day when start_date <= day and end_date is
empty or >= day; when several are active, the most recently created wins.
Automated jobs never delete policies.
"""

import logging
import sqlite3
from dataclasses import dataclass, fields
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from spendwatch.core.errors import ValidationError
from spendwatch.ledger.db import from_scaled, to_scaled, transaction
from spendwatch.ledger.periods import from_iso, parse_day, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_ALERT_THRESHOLD = 0.8


@dataclass(frozen=True)
class BudgetPolicy:
    id: int
    subject_id: str
    monthly_limit: Decimal
    currency: str
    alert_threshold: float
    alerts_enabled: bool
    start_date: date
    end_date: date | None
    last_alert_sent: datetime | None
    created_by: str | None
    created_at: str
    updated_at: str

    def is_active(self, day: date) -> bool:
        return self.start_date <= day and (self.end_date is None or self.end_date >= day)


@dataclass
class PolicyCreate:
    """Fields for a new policy. start_date defaults to today."""

    subject_id: str
    monthly_limit: Decimal
    currency: str = "USD"
    alert_threshold: float = DEFAULT_ALERT_THRESHOLD
    alerts_enabled: bool = True
    start_date: date | None = None
    end_date: date | None = None
    created_by: str | None = None


@dataclass
class PolicyPatch:
    """Partial update. None means "leave unchanged".

    end_date cannot be cleared through None; set clear_end_date instead.
    """

    monthly_limit: Decimal | None = None
    currency: str | None = None
    alert_threshold: float | None = None
    alerts_enabled: bool | None = None
    start_date: date | None = None
    end_date: date | None = None
    clear_end_date: bool = False

    def is_empty(self) -> bool:
        return not self.clear_end_date and all(
            getattr(self, f.name) is None for f in fields(self) if f.name != "clear_end_date"
        )


def _coerce_limit(value: object) -> Decimal:
    try:
        limit = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValidationError("monthly_limit", f"not a number: {value!r}") from e
    if not limit.is_finite() or limit <= 0:
        raise ValidationError("monthly_limit", f"must be greater than 0, got {value}")
    return limit


def _coerce_threshold(value: float | str | Decimal) -> float:
    try:
        threshold = float(value)
    except (TypeError, ValueError) as e:
        raise ValidationError("alert_threshold", f"not a number: {value!r}") from e
    if not 0 <= threshold <= 1:
        raise ValidationError("alert_threshold", f"must be between 0 and 1, got {value}")
    return threshold


def _coerce_currency(value: str) -> str:
    currency = (value or "").strip().upper()
    if len(currency) != 3 or not currency.isalpha():
        raise ValidationError("currency", f"expected a 3-letter code, got {value!r}")
    return currency


def _coerce_day(value: date | str, field_name: str) -> date:
    try:
        return parse_day(value)
    except ValidationError as e:
        raise ValidationError(field_name, e.message) from e


def _check_dates(start: date, end: date | None) -> None:
    if end is not None and end < start:
        raise ValidationError("end_date", f"must not be before start_date ({start})")


def _row_to_policy(row: sqlite3.Row) -> BudgetPolicy:
    return BudgetPolicy(
        id=row["id"],
        subject_id=row["subject_id"],
        monthly_limit=from_scaled(row["monthly_limit_scaled"]),
        currency=row["currency"],
        alert_threshold=row["alert_threshold"],
        alerts_enabled=bool(row["alerts_enabled"]),
        start_date=date.fromisoformat(row["start_date"]),
        end_date=date.fromisoformat(row["end_date"]) if row["end_date"] else None,
        last_alert_sent=(
            from_iso(row["last_alert_sent"]) if row["last_alert_sent"] else None
        ),
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def create(
    conn: sqlite3.Connection, data: PolicyCreate, now: datetime | None = None
) -> BudgetPolicy:
    """Validate and store a new policy.

    Raises:
        ValidationError: Naming the first invalid field.
    """
    subject_id = (data.subject_id or "").strip()
    if not subject_id:
        raise ValidationError("subject_id", "must be a non-empty string")
    moment = now or utc_now()
    limit = _coerce_limit(data.monthly_limit)
    threshold = _coerce_threshold(data.alert_threshold)
    currency = _coerce_currency(data.currency)
    start = moment.date()
    if data.start_date is not None:
        start = _coerce_day(data.start_date, "start_date")
    end = _coerce_day(data.end_date, "end_date") if data.end_date is not None else None
    _check_dates(start, end)

    stamp = to_iso(moment)
    with transaction(conn):
        cursor = conn.execute(
            """
            INSERT INTO budget_policies (
                subject_id, monthly_limit_scaled, currency, alert_threshold,
                alerts_enabled, start_date, end_date, created_by, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                subject_id,
                to_scaled(limit),
                currency,
                threshold,
                int(data.alerts_enabled),
                start.isoformat(),
                end.isoformat() if end else None,
                data.created_by,
                stamp,
                stamp,
            ),
        )
        policy_id = cursor.lastrowid
    logger.info(
        "Created budget policy %d for %s (limit %s %s)", policy_id, subject_id, limit, currency
    )
    policy = get(conn, policy_id)
    if policy is None:
        raise RuntimeError(f"Policy {policy_id} vanished after insert")
    return policy


def get(conn: sqlite3.Connection, policy_id: int) -> BudgetPolicy | None:
    row = conn.execute("SELECT * FROM budget_policies WHERE id = ?", (policy_id,)).fetchone()
    return _row_to_policy(row) if row else None


def update(
    conn: sqlite3.Connection, policy_id: int, patch: PolicyPatch, now: datetime | None = None
) -> BudgetPolicy | None:
    """Apply a partial update.

    Dates are validated against the merged result, so moving only the start
    date past an existing end date is rejected.

    Returns:
        The updated policy, the unchanged policy for an empty patch, or None
        if the id is unknown.

    Raises:
        ValidationError: Naming the first invalid field.
    """
    current = get(conn, policy_id)
    if current is None:
        return None
    if patch.is_empty():
        return current

    limit = current.monthly_limit
    if patch.monthly_limit is not None:
        limit = _coerce_limit(patch.monthly_limit)
    threshold = (
        _coerce_threshold(patch.alert_threshold)
        if patch.alert_threshold is not None
        else current.alert_threshold
    )
    currency = _coerce_currency(patch.currency) if patch.currency is not None else current.currency
    alerts_enabled = current.alerts_enabled
    if patch.alerts_enabled is not None:
        alerts_enabled = patch.alerts_enabled
    start = current.start_date
    if patch.start_date is not None:
        start = _coerce_day(patch.start_date, "start_date")
    if patch.clear_end_date:
        end = None
    elif patch.end_date is not None:
        end = _coerce_day(patch.end_date, "end_date")
    else:
        end = current.end_date
    _check_dates(start, end)

    with transaction(conn):
        conn.execute(
            """
            UPDATE budget_policies
            SET monthly_limit_scaled = ?, currency = ?, alert_threshold = ?,
                alerts_enabled = ?, start_date = ?, end_date = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                to_scaled(limit),
                currency,
                threshold,
                int(alerts_enabled),
                start.isoformat(),
                end.isoformat() if end else None,
                to_iso(now or utc_now()),
                policy_id,
            ),
        )
    logger.info("Updated budget policy %d", policy_id)
    return get(conn, policy_id)


def delete(conn: sqlite3.Connection, policy_id: int) -> bool:
    """Delete a policy. Returns False if it did not exist."""
    with transaction(conn):
        cursor = conn.execute("DELETE FROM budget_policies WHERE id = ?", (policy_id,))
    if cursor.rowcount:
        logger.info("Deleted budget policy %d", policy_id)
    return cursor.rowcount > 0


_ACTIVE_WHERE = "start_date <= ? AND (end_date IS NULL OR end_date >= ?)"


def get_active(conn: sqlite3.Connection, subject_id: str, today: date) -> BudgetPolicy | None:
    """The policy governing a subject on ``today`` (most recently created wins)."""
    day = today.isoformat()
    row = conn.execute(
        f"""
        SELECT * FROM budget_policies
        WHERE subject_id = ? AND {_ACTIVE_WHERE}
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        """,
        (subject_id, day, day),
    ).fetchone()
    return _row_to_policy(row) if row else None


def list_all(conn: sqlite3.Connection, subject_id: str | None = None) -> list[BudgetPolicy]:
    """All policies (including expired ones), newest first."""
    if subject_id is None:
        rows = conn.execute(
            "SELECT * FROM budget_policies ORDER BY created_at DESC, id DESC"
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM budget_policies WHERE subject_id = ? ORDER BY created_at DESC, id DESC",
            (subject_id,),
        ).fetchall()
    return [_row_to_policy(r) for r in rows]


def list_alerting_subjects(conn: sqlite3.Connection, today: date) -> list[str]:
    """Subjects whose governing policy on ``today`` has alerts enabled."""
    day = today.isoformat()
    rows = conn.execute(
        f"""
        SELECT subject_id, alerts_enabled FROM budget_policies
        WHERE {_ACTIVE_WHERE}
        ORDER BY subject_id ASC, created_at DESC, id DESC
        """,
        (day, day),
    ).fetchall()
    subjects: list[str] = []
    seen: set[str] = set()
    for row in rows:
        if row["subject_id"] in seen:
            continue
        seen.add(row["subject_id"])
        if row["alerts_enabled"]:
            subjects.append(row["subject_id"])
    return subjects


def mark_alert_sent(conn: sqlite3.Connection, policy_id: int, at: datetime) -> None:
    """Record the time of the latest successfully delivered alert."""
    with transaction(conn):
        conn.execute(
            "UPDATE budget_policies SET last_alert_sent = ? WHERE id = ?",
            (to_iso(at), policy_id),
        )
