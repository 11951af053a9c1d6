"""Shared fixtures: a temporary ledger database, a small account registry,
and helpers for seeding cost records and policies."""

import sqlite3
from collections.abc import Callable, Generator
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path

import pytest

from spendwatch.accounts.registry import (
    AccountConfig,
    AccountRegistry,
    ResourceAssignment,
    SubjectConfig,
)
from spendwatch.budgets import policies
from spendwatch.ledger.db import get_connection, init_db
from spendwatch.ledger.records import CostRecord, merge

FIXED_NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


@pytest.fixture
def ledger_db(tmp_path: Path) -> Path:
    """Create a temporary ledger database."""
    return init_db(tmp_path / "spendwatch.db")


@pytest.fixture
def conn(ledger_db: Path) -> Generator[sqlite3.Connection, None, None]:
    """Open a connection to the temporary ledger."""
    connection = get_connection(ledger_db)
    try:
        yield connection
    finally:
        connection.close()


@pytest.fixture
def registry() -> AccountRegistry:
    """Two subjects (one without email) and one account routing to alice by default."""
    return AccountRegistry(
        subjects=[
            SubjectConfig(id="alice", name="Alice Analytics", email="alice@example.org"),
            SubjectConfig(id="bob", name="Bob Batch"),
        ],
        accounts=[
            AccountConfig(
                id="acct-1",
                name="Production",
                credentials_ref="111122223333",
                default_subject="alice",
            ),
            AccountConfig(id="acct-2", credentials_ref="444455556666"),
        ],
        assignments=[
            ResourceAssignment(
                account_id="acct-1", resource_type="ec2", resource_id="i-bob", subject_id="bob"
            ),
        ],
    )


@pytest.fixture
def add_cost(conn: sqlite3.Connection) -> Callable[..., None]:
    """Merge one cost record into the ledger."""

    def _add(
        subject_id: str,
        day: date,
        amount: str | Decimal,
        service: str = "Amazon Elastic Compute Cloud",
        resource_id: str = "i-1",
        account_id: str = "acct-1",
    ) -> None:
        merge(
            conn,
            CostRecord(
                subject_id=subject_id,
                account_id=account_id,
                resource_id=resource_id,
                service_name=service,
                record_date=day,
                amount=Decimal(str(amount)),
            ),
            now=FIXED_NOW,
        )

    return _add


@pytest.fixture
def add_policy(conn: sqlite3.Connection) -> Callable[..., policies.BudgetPolicy]:
    """Create a budget policy starting at the beginning of 2025."""

    def _add(
        subject_id: str = "alice",
        monthly_limit: str = "1000.00",
        alert_threshold: float = 0.8,
        alerts_enabled: bool = True,
        start_date: date = date(2025, 1, 1),
        end_date: date | None = None,
        now: datetime = FIXED_NOW,
    ) -> policies.BudgetPolicy:
        return policies.create(
            conn,
            policies.PolicyCreate(
                subject_id=subject_id,
                monthly_limit=Decimal(monthly_limit),
                alert_threshold=alert_threshold,
                alerts_enabled=alerts_enabled,
                start_date=start_date,
                end_date=end_date,
            ),
            now=now,
        )

    return _add
