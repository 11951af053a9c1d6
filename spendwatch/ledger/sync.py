"""Provider-to-ledger sync.

Fetches one account's daily cost rows, attributes each row to a subject via
the account registry and merges the result into the ledger. Ingestion is
at-least-once: a repeated sync re-merges the same keys and leaves the
ledger unchanged.
"""

import logging
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal

from spendwatch.accounts.registry import AccountConfig, AccountRegistry
from spendwatch.ledger.records import CostRecord, merge_batch, resource_type_for_service
from spendwatch.providers.billing import MeteredBillingProvider, ProviderCostRow, fetch_with_retry

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of syncing one account for one date range."""

    account_id: str
    start: date
    end: date
    fetched: int = 0
    written: int = 0
    unchanged: int = 0
    rejected: int = 0
    unassigned: int = 0
    skipped_zero: int = 0
    # Sum of the amounts stored in the ledger; rejected rows are excluded
    total_amount: Decimal = Decimal("0")
    errors: list[str] = field(default_factory=list)


def rows_to_records(
    rows: list[ProviderCostRow],
    account: AccountConfig,
    registry: AccountRegistry,
    result: SyncResult,
) -> list[CostRecord]:
    """Attribute provider rows to subjects and build ledger records.

    Zero-amount rows are skipped. Rows without a resource key are
    service-level and get a synthetic resource id of ``{service}-{date}``.
    Rows that route to no subject are dropped and counted as unassigned.
    """
    records: list[CostRecord] = []
    for row in rows:
        if row.amount == 0:
            result.skipped_zero += 1
            continue

        resource_id = row.resource_key or f"{row.service}-{row.date.isoformat()}"
        subject_id = registry.route(account.id, resource_id)
        if subject_id is None:
            result.unassigned += 1
            continue

        records.append(
            CostRecord(
                subject_id=subject_id,
                account_id=account.id,
                resource_id=resource_id,
                service_name=row.service,
                record_date=row.date,
                amount=row.amount,
                usage_quantity=row.usage_quantity,
                usage_unit=row.usage_unit,
                resource_type=resource_type_for_service(row.service),
            )
        )
    return records


def sync_account(
    conn: sqlite3.Connection,
    provider: MeteredBillingProvider,
    registry: AccountRegistry,
    account: AccountConfig,
    start: date,
    end: date,
    *,
    max_attempts: int = 4,
    backoff_seconds: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
    now: datetime | None = None,
) -> SyncResult:
    """Sync one account's costs for [start, end) into the ledger.

    Args:
        conn: Ledger connection.
        provider: Billing provider client.
        registry: Account registry used for routing.
        account: Account to sync.
        start: First day (inclusive).
        end: Last day (exclusive).
        max_attempts: Provider fetch attempts before giving up.
        backoff_seconds: Base delay for exponential backoff.
        sleep: Sleep function (injectable for tests).
        now: Timestamp used for recorded_at.

    Raises:
        TransientProviderError: If the provider stayed unavailable.
        ProviderError: On a permanent provider failure.
    """
    result = SyncResult(account_id=account.id, start=start, end=end)
    rows = fetch_with_retry(
        provider,
        account,
        start,
        end,
        max_attempts=max_attempts,
        backoff_seconds=backoff_seconds,
        sleep=sleep,
    )
    result.fetched = len(rows)

    records = rows_to_records(rows, account, registry, result)
    batch = merge_batch(conn, records, now=now)
    result.written = batch.written
    result.unchanged = batch.unchanged
    result.rejected = batch.rejected
    result.total_amount = batch.total_amount
    result.errors.extend(batch.errors)

    if result.unassigned:
        logger.warning(
            "Account %s: %d cost rows had no subject assignment and were dropped",
            account.id,
            result.unassigned,
        )
    logger.info(
        "Synced account %s [%s, %s): %d fetched, %d written, %d unchanged, %d rejected",
        account.id,
        start,
        end,
        result.fetched,
        result.written,
        result.unchanged,
        result.rejected,
    )
    return result


def sync_prior_day(
    conn: sqlite3.Connection,
    provider: MeteredBillingProvider,
    registry: AccountRegistry,
    account: AccountConfig,
    day: date,
    **kwargs,
) -> SyncResult:
    """Sync the day before ``day`` (the daily job's window)."""
    return sync_account(conn, provider, registry, account, day - timedelta(days=1), day, **kwargs)
