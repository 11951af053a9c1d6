"""Cost ledger: idempotent storage of daily per-resource cost records.

Each record is keyed by (subject, account, resource, date). Ingesting the
same key again merges into the existing row (amount and usage are replaced),
so re-running a sync any number of times yields the same stored state.
"""

import logging
import sqlite3
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from spendwatch.core.errors import ValidationError
from spendwatch.ledger.db import MAX_AMOUNT, from_scaled, to_scaled, transaction
from spendwatch.ledger.periods import parse_day, period_of, subtract_months, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"
DEFAULT_DATA_SOURCE = "provider_sync"

# Substring of the provider's service name -> short resource type
_SERVICE_RESOURCE_TYPES: list[tuple[str, str]] = [
    ("Elastic Compute Cloud", "ec2"),
    ("EC2", "ec2"),
    ("Simple Storage Service", "s3"),
    ("S3", "s3"),
    ("Relational Database Service", "rds"),
    ("RDS", "rds"),
    ("Lambda", "lambda"),
    ("CloudFront", "cloudfront"),
    ("Route 53", "route53"),
    ("Virtual Private Cloud", "vpc"),
    ("Elastic Load Balancing", "elb"),
    ("CloudWatch", "cloudwatch"),
]


def resource_type_for_service(service_name: str) -> str:
    """Map a provider service name to a short resource type ('other' if unknown)."""
    for needle, resource_type in _SERVICE_RESOURCE_TYPES:
        if needle in service_name:
            return resource_type
    return "other"


@dataclass
class CostRecord:
    """One observed spend fact for a subject's resource on one day."""

    subject_id: str
    account_id: str
    resource_id: str
    service_name: str
    record_date: date
    amount: Decimal
    currency: str = DEFAULT_CURRENCY
    usage_quantity: float | None = None
    usage_unit: str | None = None
    data_source: str = DEFAULT_DATA_SOURCE
    resource_type: str | None = None
    recorded_at: str | None = None

    @property
    def key(self) -> tuple[str, str, str, str]:
        """The ledger's unique key for this record."""
        return (self.subject_id, self.account_id, self.resource_id, self.record_date.isoformat())

    @property
    def period(self) -> str:
        return period_of(self.record_date)


@dataclass
class BatchResult:
    """Outcome of merge_batch().

    Attributes:
        written: Rows inserted or changed.
        unchanged: Valid rows whose stored values were already identical.
        rejected: Rows refused by validation or a storage constraint.
        duplicates: Rows collapsed because a later row in the batch had the same key.
        errors: One message per rejected row.
        total_amount: Sum of the amounts of rows now stored with the batch's values.
    """

    written: int = 0
    unchanged: int = 0
    rejected: int = 0
    duplicates: int = 0
    errors: list[str] = field(default_factory=list)
    total_amount: Decimal = Decimal("0")

    @property
    def succeeded(self) -> int:
        """Rows now stored with the batch's values."""
        return self.written + self.unchanged


def validate_record(record: CostRecord) -> CostRecord:
    """Check a record and return a normalized copy for the ledger.

    The copy has the amount as a Decimal, the date as a date, the resource
    type filled in and the currency uppercased. The argument is not modified.

    Raises:
        ValidationError: Naming the first offending field.
    """
    for name in ("subject_id", "account_id", "resource_id", "service_name"):
        value = getattr(record, name)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(name, "must be a non-empty string")

    try:
        amount = record.amount
        if not isinstance(amount, Decimal):
            amount = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValidationError("amount", f"not a number: {record.amount!r}") from e
    if not amount.is_finite():
        raise ValidationError("amount", "must be finite")
    if amount < 0:
        raise ValidationError("amount", f"must be non-negative, got {amount}")
    if amount > MAX_AMOUNT:
        raise ValidationError("amount", f"exceeds the storable maximum of {MAX_AMOUNT}")

    try:
        record_date = parse_day(record.record_date)
    except ValidationError as e:
        raise ValidationError("record_date", e.message) from e

    currency = (record.currency or "").strip().upper()
    if len(currency) != 3 or not currency.isalpha():
        raise ValidationError("currency", f"expected a 3-letter code, got {record.currency!r}")
    return replace(
        record,
        amount=amount,
        record_date=record_date,
        currency=currency,
        resource_type=record.resource_type or resource_type_for_service(record.service_name),
    )


_MERGE_SQL = """
INSERT INTO cost_records (
    subject_id, account_id, resource_id, resource_type, service_name,
    record_date, period, amount_scaled, currency, usage_quantity, usage_unit,
    data_source, created_at, recorded_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(subject_id, account_id, resource_id, record_date) DO UPDATE SET
    amount_scaled = excluded.amount_scaled,
    usage_quantity = excluded.usage_quantity,
    usage_unit = excluded.usage_unit,
    recorded_at = excluded.recorded_at
WHERE cost_records.amount_scaled IS NOT excluded.amount_scaled
   OR cost_records.usage_quantity IS NOT excluded.usage_quantity
   OR cost_records.usage_unit IS NOT excluded.usage_unit
"""


def _write(conn: sqlite3.Connection, record: CostRecord, stamp: str) -> bool:
    cursor = conn.execute(
        _MERGE_SQL,
        (
            record.subject_id,
            record.account_id,
            record.resource_id,
            record.resource_type,
            record.service_name,
            record.record_date.isoformat(),
            record.period,
            to_scaled(record.amount),
            record.currency,
            record.usage_quantity,
            record.usage_unit,
            record.data_source,
            stamp,
            stamp,
        ),
    )
    return cursor.rowcount > 0


def merge(conn: sqlite3.Connection, record: CostRecord, now: datetime | None = None) -> bool:
    """Upsert one record by its unique key.

    Replaces amount and usage on an existing row and refreshes recorded_at;
    creation metadata is left intact. Re-merging identical values is a no-op.

    Returns:
        True if a row was inserted or changed.

    Raises:
        ValidationError: If the record is malformed.
    """
    record = validate_record(record)
    with transaction(conn):
        return _write(conn, record, to_iso(now or utc_now()))


def merge_batch(
    conn: sqlite3.Connection, records: list[CostRecord], now: datetime | None = None
) -> BatchResult:
    """Merge many records in one transaction.

    Malformed records are rejected individually without aborting the rest of
    the batch. Records sharing a key collapse to the last one in the batch.
    """
    result = BatchResult()
    collapsed: dict[tuple[str, str, str, str], CostRecord] = {}

    for index, record in enumerate(records):
        try:
            record = validate_record(record)
        except ValidationError as e:
            result.rejected += 1
            result.errors.append(f"record {index}: {e}")
            continue
        if record.key in collapsed:
            result.duplicates += 1
        collapsed[record.key] = record

    if not collapsed:
        return result

    stamp = to_iso(now or utc_now())
    with transaction(conn):
        for record in collapsed.values():
            try:
                if _write(conn, record, stamp):
                    result.written += 1
                else:
                    result.unchanged += 1
                result.total_amount += record.amount
            except (sqlite3.IntegrityError, OverflowError) as e:
                result.rejected += 1
                result.errors.append(f"{record.key}: {e}")

    if result.rejected:
        logger.warning(
            "Ledger batch merge rejected %d of %d records", result.rejected, len(records)
        )
    logger.debug(
        "Ledger batch merge: %d written, %d unchanged, %d duplicates collapsed",
        result.written,
        result.unchanged,
        result.duplicates,
    )
    return result


def _row_to_record(row: sqlite3.Row) -> CostRecord:
    return CostRecord(
        subject_id=row["subject_id"],
        account_id=row["account_id"],
        resource_id=row["resource_id"],
        service_name=row["service_name"],
        record_date=date.fromisoformat(row["record_date"]),
        amount=from_scaled(row["amount_scaled"]),
        currency=row["currency"],
        usage_quantity=row["usage_quantity"],
        usage_unit=row["usage_unit"],
        data_source=row["data_source"],
        resource_type=row["resource_type"],
        recorded_at=row["recorded_at"],
    )


def query_by_period(
    conn: sqlite3.Connection,
    subject_id: str,
    start: date | None = None,
    end: date | None = None,
) -> list[CostRecord]:
    """Return a subject's records with start <= date <= end (bounds optional).

    Ordered by date, then resource id.
    """
    sql = "SELECT * FROM cost_records WHERE subject_id = ?"
    params: list[str] = [subject_id]
    if start is not None:
        sql += " AND record_date >= ?"
        params.append(start.isoformat())
    if end is not None:
        sql += " AND record_date <= ?"
        params.append(end.isoformat())
    sql += " ORDER BY record_date, resource_id"
    return [_row_to_record(row) for row in conn.execute(sql, params).fetchall()]


def purge_older_than(conn: sqlite3.Connection, months: int, today: date) -> int:
    """Delete records dated strictly before ``today`` minus ``months``.

    Returns:
        Number of rows deleted.
    """
    cutoff = subtract_months(today, months)
    with transaction(conn):
        cursor = conn.execute(
            "DELETE FROM cost_records WHERE record_date < ?", (cutoff.isoformat(),)
        )
    logger.info("Purged %d ledger rows dated before %s", cursor.rowcount, cutoff)
    return cursor.rowcount


def count_records(conn: sqlite3.Connection, subject_id: str | None = None) -> int:
    """Count ledger rows, optionally for one subject."""
    if subject_id is None:
        row = conn.execute("SELECT COUNT(*) AS n FROM cost_records").fetchone()
    else:
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM cost_records WHERE subject_id = ?", (subject_id,)
        ).fetchone()
    return row["n"]
