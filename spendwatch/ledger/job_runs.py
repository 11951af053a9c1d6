"""Append-only history of scheduler trigger runs.

Each sweep, sync and cleanup run writes one row when it starts and updates
it when it finishes. The history backs scheduler status reporting and is
purged by the weekly cleanup.
"""

import sqlite3
from dataclasses import dataclass
from datetime import date, datetime

from spendwatch.ledger.db import transaction
from spendwatch.ledger.periods import subtract_months, to_iso


@dataclass(frozen=True)
class JobRun:
    id: int
    job_name: str
    started_at: str
    finished_at: str | None
    processed: int
    failed: int
    status: str
    error_message: str | None


def _row_to_run(row: sqlite3.Row) -> JobRun:
    return JobRun(
        id=row["id"],
        job_name=row["job_name"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        processed=row["processed"],
        failed=row["failed"],
        status=row["status"],
        error_message=row["error_message"],
    )


def start_run(conn: sqlite3.Connection, job_name: str, started_at: datetime) -> int:
    """Record the start of a run and return its id."""
    with transaction(conn):
        cursor = conn.execute(
            "INSERT INTO job_runs (job_name, started_at, status) VALUES (?, ?, 'running')",
            (job_name, to_iso(started_at)),
        )
    return cursor.lastrowid


def finish_run(
    conn: sqlite3.Connection,
    run_id: int,
    finished_at: datetime,
    processed: int,
    failed: int,
    status: str,
    error_message: str | None = None,
) -> None:
    with transaction(conn):
        conn.execute(
            """
            UPDATE job_runs
            SET finished_at = ?, processed = ?, failed = ?, status = ?, error_message = ?
            WHERE id = ?
            """,
            (to_iso(finished_at), processed, failed, status, error_message, run_id),
        )


def recent_runs(
    conn: sqlite3.Connection, job_name: str | None = None, limit: int = 20
) -> list[JobRun]:
    """Latest runs, newest first."""
    if job_name is None:
        rows = conn.execute(
            "SELECT * FROM job_runs ORDER BY started_at DESC, id DESC LIMIT ?", (limit,)
        ).fetchall()
    else:
        rows = conn.execute(
            """
            SELECT * FROM job_runs WHERE job_name = ?
            ORDER BY started_at DESC, id DESC LIMIT ?
            """,
            (job_name, limit),
        ).fetchall()
    return [_row_to_run(r) for r in rows]


def last_run(conn: sqlite3.Connection, job_name: str) -> JobRun | None:
    runs = recent_runs(conn, job_name, limit=1)
    return runs[0] if runs else None


def purge_older_than(conn: sqlite3.Connection, months: int, today: date) -> int:
    """Delete runs started before ``today`` minus ``months``."""
    cutoff = subtract_months(today, months)
    with transaction(conn):
        cursor = conn.execute("DELETE FROM job_runs WHERE started_at < ?", (cutoff.isoformat(),))
    return cursor.rowcount
