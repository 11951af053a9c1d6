"""Alert ledger: durable alert history and the single source of dedup truth.

Dispatch goes through a claim. Inside one BEGIN IMMEDIATE transaction the
ledger checks for a recently sent event or a live pending claim for the same
(subject, policy, kind); if there is none it writes a pending row. Only the
holder of that row delivers, then completes it as sent or failed. Failed
events do not start the cooldown, so the next sweep can try again.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal

from spendwatch.alerts.events import (
    AlertDetail,
    AlertEvent,
    AlertKind,
    DeliveryState,
    Severity,
    parse_detail,
    serialize_detail,
)
from spendwatch.ledger.db import from_scaled, to_scaled, transaction
from spendwatch.ledger.periods import from_iso, subtract_months, to_iso

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = timedelta(hours=24)
DEFAULT_CLAIM_LEASE = timedelta(minutes=15)
HISTORY_LIMIT = 50


@dataclass(frozen=True)
class AlertStat:
    kind: AlertKind
    severity: Severity
    count: int
    delivered: int


def _row_to_event(row: sqlite3.Row) -> AlertEvent:
    return AlertEvent(
        id=row["id"],
        subject_id=row["subject_id"],
        policy_id=row["policy_id"],
        kind=AlertKind(row["kind"]),
        severity=Severity(row["severity"]),
        percentage_used=row["percentage_used"],
        amount_spent=(
            from_scaled(row["amount_spent_scaled"])
            if row["amount_spent_scaled"] is not None
            else None
        ),
        limit=from_scaled(row["limit_scaled"]) if row["limit_scaled"] is not None else None,
        message=row["message"],
        detail=parse_detail(row["detail"]),
        state=DeliveryState(row["state"]),
        delivery_succeeded=bool(row["delivery_succeeded"]),
        delivered_at=from_iso(row["delivered_at"]) if row["delivered_at"] else None,
        created_at=from_iso(row["created_at"]),
    )


class AlertLedger:
    """Alert event storage bound to one SQLite connection.

    Args:
        conn: Connection in autocommit mode (see ledger.db.get_connection).
        cooldown: Minimum spacing between two sent alerts of one kind.
        claim_lease: How long a pending claim blocks other dispatchers. A
            claim older than this is treated as abandoned (crashed worker).
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        claim_lease: timedelta = DEFAULT_CLAIM_LEASE,
    ) -> None:
        self.conn = conn
        self.cooldown = cooldown
        self.claim_lease = claim_lease

    def claim(
        self,
        subject_id: str,
        policy_id: int,
        kind: AlertKind,
        severity: Severity,
        now: datetime,
        *,
        percentage_used: float | None = None,
        amount_spent: Decimal | None = None,
        limit: Decimal | None = None,
        message: str | None = None,
        detail: AlertDetail | None = None,
    ) -> AlertEvent | None:
        """Atomically check the cooldown and reserve the right to deliver.

        Returns:
            The pending event if this caller won the claim, None if a sent
            event inside the cooldown or a live claim already exists.
        """
        sent_cutoff = to_iso(now - self.cooldown)
        lease_cutoff = to_iso(now - self.claim_lease)
        with transaction(self.conn, immediate=True):
            blocking = self.conn.execute(
                """
                SELECT id, state FROM alert_events
                WHERE subject_id = ? AND policy_id = ? AND kind = ?
                  AND ((state = 'sent' AND created_at > ?)
                       OR (state = 'pending' AND created_at > ?))
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (subject_id, policy_id, kind.value, sent_cutoff, lease_cutoff),
            ).fetchone()
            if blocking is not None:
                logger.debug(
                    "Alert %s for %s/policy %d blocked by %s event %d",
                    kind,
                    subject_id,
                    policy_id,
                    blocking["state"],
                    blocking["id"],
                )
                return None

            cursor = self.conn.execute(
                """
                INSERT INTO alert_events (
                    subject_id, policy_id, kind, severity, percentage_used,
                    amount_spent_scaled, limit_scaled, message, detail, state,
                    delivery_succeeded, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', 0, ?)
                """,
                (
                    subject_id,
                    policy_id,
                    kind.value,
                    severity.value,
                    percentage_used,
                    to_scaled(amount_spent) if amount_spent is not None else None,
                    to_scaled(limit) if limit is not None else None,
                    message,
                    serialize_detail(detail) if detail is not None else None,
                    to_iso(now),
                ),
            )
            event_id = cursor.lastrowid
        return self.get(event_id)

    def complete(self, event_id: int, succeeded: bool, at: datetime) -> None:
        """Resolve a pending claim as sent or failed."""
        state = DeliveryState.SENT if succeeded else DeliveryState.FAILED
        with transaction(self.conn):
            self.conn.execute(
                """
                UPDATE alert_events
                SET state = ?, delivery_succeeded = ?, delivered_at = ?
                WHERE id = ? AND state = 'pending'
                """,
                (state.value, int(succeeded), to_iso(at) if succeeded else None, event_id),
            )

    def get(self, event_id: int) -> AlertEvent | None:
        row = self.conn.execute("SELECT * FROM alert_events WHERE id = ?", (event_id,)).fetchone()
        return _row_to_event(row) if row else None

    def last_sent(self, subject_id: str, policy_id: int, kind: AlertKind) -> AlertEvent | None:
        """Most recent successfully delivered event for a dedup key."""
        row = self.conn.execute(
            """
            SELECT * FROM alert_events
            WHERE subject_id = ? AND policy_id = ? AND kind = ? AND state = 'sent'
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (subject_id, policy_id, kind.value),
        ).fetchone()
        return _row_to_event(row) if row else None

    def history_for_subject(
        self, subject_id: str, limit: int = HISTORY_LIMIT
    ) -> list[AlertEvent]:
        """A subject's alerts, newest first."""
        rows = self.conn.execute(
            """
            SELECT * FROM alert_events
            WHERE subject_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (subject_id, limit),
        ).fetchall()
        return [_row_to_event(r) for r in rows]

    def history_for_policy(
        self, policy_id: int, limit: int = HISTORY_LIMIT
    ) -> list[AlertEvent]:
        """A policy's alerts, newest first."""
        rows = self.conn.execute(
            """
            SELECT * FROM alert_events
            WHERE policy_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (policy_id, limit),
        ).fetchall()
        return [_row_to_event(r) for r in rows]

    def statistics(
        self,
        subject_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[AlertStat]:
        """Event counts grouped by kind and severity.

        Args:
            subject_id: Restrict to one subject.
            start: Only events created at or after this time.
            end: Only events created before this time.
        """
        clauses: list[str] = []
        params: list[str] = []
        if subject_id is not None:
            clauses.append("subject_id = ?")
            params.append(subject_id)
        if start is not None:
            clauses.append("created_at >= ?")
            params.append(to_iso(start))
        if end is not None:
            clauses.append("created_at < ?")
            params.append(to_iso(end))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"""
            SELECT kind, severity, COUNT(*) AS count,
                   SUM(delivery_succeeded) AS delivered
            FROM alert_events
            {where}
            GROUP BY kind, severity
            ORDER BY kind, severity
            """,
            params,
        ).fetchall()
        return [
            AlertStat(
                kind=AlertKind(r["kind"]),
                severity=Severity(r["severity"]),
                count=r["count"],
                delivered=r["delivered"] or 0,
            )
            for r in rows
        ]

    def unsent_recent(
        self, now: datetime, window: timedelta = timedelta(hours=24)
    ) -> list[AlertEvent]:
        """Events from the last ``window`` that were not delivered."""
        rows = self.conn.execute(
            """
            SELECT * FROM alert_events
            WHERE state != 'sent' AND created_at > ?
            ORDER BY created_at ASC
            """,
            (to_iso(now - window),),
        ).fetchall()
        return [_row_to_event(r) for r in rows]

    def purge_older_than(self, months: int, today: date) -> int:
        """Delete events created before ``today`` minus ``months``."""
        cutoff = subtract_months(today, months)
        with transaction(self.conn):
            cursor = self.conn.execute(
                "DELETE FROM alert_events WHERE created_at < ?", (cutoff.isoformat(),)
            )
        logger.info("Purged %d alert events created before %s", cursor.rowcount, cutoff)
        return cursor.rowcount
