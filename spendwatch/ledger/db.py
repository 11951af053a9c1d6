"""Ledger storage layer using SQLite with WAL mode.

Single SQLite database at {data_dir}/spendwatch.db stores the cost ledger,
budget policies, alert events and scheduler job-run history. WAL mode lets
the hourly sweep read the ledger while the daily sync writes to it.

Money is stored as integers scaled by AMOUNT_SCALE so that SQL SUM() stays
exact; values cross the Python boundary as Decimal.
"""

import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path

logger = logging.getLogger(__name__)

# 1 stored unit = 0.0001 of the currency
AMOUNT_SCALE = 10_000
AMOUNT_QUANTUM = Decimal("0.0001")
# Largest amount whose scaled form fits a signed 64-bit SQLite INTEGER
MAX_AMOUNT = Decimal(2**63 - 1) / AMOUNT_SCALE

# Seconds to wait on a locked database before raising
_BUSY_TIMEOUT_SECONDS = 30.0

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS cost_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subject_id TEXT NOT NULL,
    account_id TEXT NOT NULL,
    resource_id TEXT NOT NULL,
    resource_type TEXT NOT NULL DEFAULT 'other',
    service_name TEXT NOT NULL,
    record_date TEXT NOT NULL,
    period TEXT NOT NULL,
    amount_scaled INTEGER NOT NULL CHECK (amount_scaled >= 0),
    currency TEXT NOT NULL DEFAULT 'USD',
    usage_quantity REAL,
    usage_unit TEXT,
    data_source TEXT NOT NULL DEFAULT 'provider_sync',
    created_at TEXT NOT NULL,
    recorded_at TEXT NOT NULL,
    UNIQUE(subject_id, account_id, resource_id, record_date)
);

CREATE INDEX IF NOT EXISTS idx_cost_records_subject_period
    ON cost_records(subject_id, period);
CREATE INDEX IF NOT EXISTS idx_cost_records_subject_date
    ON cost_records(subject_id, record_date);
CREATE INDEX IF NOT EXISTS idx_cost_records_account_period
    ON cost_records(account_id, period);
CREATE INDEX IF NOT EXISTS idx_cost_records_date
    ON cost_records(record_date);

CREATE TABLE IF NOT EXISTS budget_policies (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subject_id TEXT NOT NULL,
    monthly_limit_scaled INTEGER NOT NULL CHECK (monthly_limit_scaled > 0),
    currency TEXT NOT NULL DEFAULT 'USD',
    alert_threshold REAL NOT NULL DEFAULT 0.8
        CHECK (alert_threshold >= 0 AND alert_threshold <= 1),
    alerts_enabled INTEGER NOT NULL DEFAULT 1,
    start_date TEXT NOT NULL,
    end_date TEXT,
    last_alert_sent TEXT,
    created_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (end_date IS NULL OR end_date >= start_date)
);

CREATE INDEX IF NOT EXISTS idx_budget_policies_subject_created
    ON budget_policies(subject_id, created_at);

CREATE TABLE IF NOT EXISTS alert_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subject_id TEXT NOT NULL,
    policy_id INTEGER NOT NULL,
    kind TEXT NOT NULL CHECK (kind IN ('threshold', 'over_budget', 'daily_summary')),
    severity TEXT NOT NULL CHECK (severity IN ('info', 'warning', 'critical')),
    percentage_used REAL,
    amount_spent_scaled INTEGER,
    limit_scaled INTEGER,
    message TEXT,
    detail TEXT,
    state TEXT NOT NULL DEFAULT 'pending' CHECK (state IN ('pending', 'sent', 'failed')),
    delivery_succeeded INTEGER NOT NULL DEFAULT 0,
    delivered_at TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_alert_events_dedup
    ON alert_events(subject_id, policy_id, kind, created_at);
CREATE INDEX IF NOT EXISTS idx_alert_events_policy
    ON alert_events(policy_id, created_at);
CREATE INDEX IF NOT EXISTS idx_alert_events_created
    ON alert_events(created_at);

CREATE TABLE IF NOT EXISTS job_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_name TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    processed INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'running',
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_job_runs_name_started
    ON job_runs(job_name, started_at);
"""

# Columns added after the initial schema; ALTER TABLE for existing databases
_MIGRATION_COLUMNS: list[tuple[str, str, str]] = [
    ("cost_records", "data_source", "TEXT NOT NULL DEFAULT 'provider_sync'"),
    ("alert_events", "detail", "TEXT"),
    ("job_runs", "error_message", "TEXT"),
]


def to_scaled(amount: Decimal) -> int:
    """Convert a Decimal amount to its stored integer form."""
    return int(amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP) * AMOUNT_SCALE)


def from_scaled(value: int | None) -> Decimal:
    """Convert a stored integer amount back to a Decimal (None -> 0)."""
    if value is None:
        return Decimal("0").quantize(AMOUNT_QUANTUM)
    return (Decimal(int(value)) / AMOUNT_SCALE).quantize(AMOUNT_QUANTUM)


def get_db_path(data_dir: Path | None = None) -> Path:
    """Return path to the ledger SQLite database.

    Args:
        data_dir: Optional directory override; defaults to the configured data dir.
    """
    if data_dir is None:
        from spendwatch.api.config import get_settings

        data_dir = get_settings().get_data_dir()
    return data_dir / "spendwatch.db"


def get_connection(db_path: Path | None = None) -> sqlite3.Connection:
    """Get a connection to the ledger database.

    Connections use autocommit mode (isolation_level=None) so that write
    paths control their own transactions with explicit BEGIN statements.

    Args:
        db_path: Optional path override (for testing).
    """
    path = db_path or get_db_path()
    conn = sqlite3.connect(str(path), timeout=_BUSY_TIMEOUT_SECONDS, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def ledger_connection(db_path: Path | None = None) -> Generator[sqlite3.Connection, None, None]:
    """Context manager for a ledger database connection.

    Ensures the connection is closed after use, even if an exception occurs.

    Args:
        db_path: Optional path override (for testing).
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(
    conn: sqlite3.Connection, immediate: bool = False
) -> Generator[sqlite3.Connection, None, None]:
    """Run a block inside one SQLite transaction.

    Args:
        conn: Connection in autocommit mode (see get_connection).
        immediate: Take the database write lock up front (BEGIN IMMEDIATE),
            making read-then-write sequences serializable across connections.
    """
    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def _migrate_columns(conn: sqlite3.Connection) -> None:
    """Add new columns to existing databases (backward-compatible migration).

    If a column already exists SQLite raises OperationalError with
    'duplicate column', which is ignored, making this function idempotent.
    """
    for table, col_name, col_def in _MIGRATION_COLUMNS:
        try:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_name} {col_def}")
            logger.info("Added column %s to %s", col_name, table)
        except sqlite3.OperationalError as e:
            if "duplicate column" in str(e).lower():
                continue
            logger.error("Failed to add column %s to %s: %s", col_name, table, e)
            raise


def init_db(db_path: Path | None = None) -> Path:
    """Initialize the ledger database schema. Idempotent.

    Creates all tables and indexes if they don't exist, enables WAL mode
    and runs additive migrations.

    Args:
        db_path: Optional path override (for testing).

    Returns:
        The path of the initialized database.
    """
    path = db_path or get_db_path()
    conn = get_connection(path)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(SCHEMA_SQL)
        _migrate_columns(conn)
        logger.info("Ledger database initialized at %s", path)
    finally:
        conn.close()
    return path
