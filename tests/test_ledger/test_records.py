"""Tests for cost record validation, idempotent merge and retention."""

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from spendwatch.core.errors import ValidationError
from spendwatch.ledger.db import MAX_AMOUNT
from spendwatch.ledger.records import (
    CostRecord,
    count_records,
    merge,
    merge_batch,
    purge_older_than,
    query_by_period,
    resource_type_for_service,
    validate_record,
)

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


def _record(**overrides) -> CostRecord:
    values = {
        "subject_id": "alice",
        "account_id": "acct-1",
        "resource_id": "i-1",
        "service_name": "Amazon Elastic Compute Cloud",
        "record_date": date(2025, 3, 1),
        "amount": Decimal("12.50"),
    }
    values.update(overrides)
    return CostRecord(**values)


class TestResourceType:
    """Tests for resource_type_for_service()."""

    def test_known_services(self):
        assert resource_type_for_service("Amazon Elastic Compute Cloud - Compute") == "ec2"
        assert resource_type_for_service("Amazon Simple Storage Service") == "s3"
        assert resource_type_for_service("AWS Lambda") == "lambda"

    def test_unknown_service(self):
        assert resource_type_for_service("Some Other Thing") == "other"


class TestValidateRecord:
    """Tests for validate_record()."""

    def test_normalizes_fields(self):
        record = validate_record(_record(amount="3.5", record_date="2025-03-02", currency="eur"))
        assert record.amount == Decimal("3.5")
        assert record.record_date == date(2025, 3, 2)
        assert record.currency == "EUR"
        assert record.resource_type == "ec2"

    def test_returns_copy_without_touching_input(self):
        original = _record(amount="3.5", record_date="2025-03-02", currency="eur")
        normalized = validate_record(original)

        assert normalized is not original
        assert original.amount == "3.5"
        assert original.record_date == "2025-03-02"
        assert original.currency == "eur"
        assert original.resource_type is None

    def test_rejects_negative_amount(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_record(_record(amount=Decimal("-1")))
        assert exc_info.value.field == "amount"

    def test_rejects_amount_too_large_to_store(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_record(_record(amount=Decimal("1e15")))
        assert exc_info.value.field == "amount"

    def test_accepts_largest_storable_amount(self):
        assert validate_record(_record(amount=MAX_AMOUNT)).amount == MAX_AMOUNT

    def test_rejects_non_numeric_amount(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_record(_record(amount="lots"))
        assert exc_info.value.field == "amount"

    def test_rejects_empty_subject(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_record(_record(subject_id="  "))
        assert exc_info.value.field == "subject_id"

    def test_rejects_bad_date(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_record(_record(record_date="03/01/2025"))
        assert exc_info.value.field == "record_date"

    def test_rejects_bad_currency(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_record(_record(currency="dollars"))
        assert exc_info.value.field == "currency"


class TestMerge:
    """Tests for merge()."""

    def test_insert_then_identical_is_noop(self, conn):
        """Re-merging the same values leaves the ledger unchanged."""
        assert merge(conn, _record(), now=NOW) is True
        assert merge(conn, _record(), now=NOW) is False
        assert count_records(conn) == 1

    def test_changed_amount_replaces_value(self, conn):
        merge(conn, _record(), now=NOW)
        assert merge(conn, _record(amount=Decimal("20.00")), now=NOW) is True

        rows = query_by_period(conn, "alice")
        assert len(rows) == 1
        assert rows[0].amount == Decimal("20.0000")

    def test_keeps_creation_metadata(self, conn):
        merge(conn, _record(), now=NOW)
        later = datetime(2025, 3, 11, tzinfo=UTC)
        merge(conn, _record(amount=Decimal("1")), now=later)

        row = conn.execute("SELECT created_at, recorded_at FROM cost_records").fetchone()
        assert row["created_at"].startswith("2025-03-10")
        assert row["recorded_at"].startswith("2025-03-11")

    def test_same_resource_different_subjects_are_separate(self, conn):
        merge(conn, _record(), now=NOW)
        merge(conn, _record(subject_id="bob"), now=NOW)
        assert count_records(conn) == 2
        assert count_records(conn, "bob") == 1


class TestMergeBatch:
    """Tests for merge_batch()."""

    def test_rejects_malformed_without_aborting(self, conn):
        batch = [
            _record(resource_id="i-1"),
            _record(resource_id="i-2", amount=Decimal("-5")),
            _record(resource_id="i-3"),
        ]
        result = merge_batch(conn, batch, now=NOW)

        assert result.written == 2
        assert result.rejected == 1
        assert len(result.errors) == 1
        assert "amount" in result.errors[0]
        assert result.total_amount == Decimal("25.00")
        assert count_records(conn) == 2

    def test_oversized_amount_rejected_alongside_valid_record(self, conn):
        batch = [
            _record(resource_id="i-1", amount=Decimal("5")),
            _record(resource_id="i-2", amount=Decimal("1e15")),
        ]
        result = merge_batch(conn, batch, now=NOW)

        assert result.written == 1
        assert result.rejected == 1
        assert "amount" in result.errors[0]
        assert [r.resource_id for r in query_by_period(conn, "alice")] == ["i-1"]

    def test_duplicate_keys_last_wins(self, conn):
        batch = [_record(amount=Decimal("1")), _record(amount=Decimal("2"))]
        result = merge_batch(conn, batch, now=NOW)

        assert result.duplicates == 1
        assert result.written == 1
        assert query_by_period(conn, "alice")[0].amount == Decimal("2")

    def test_replay_is_unchanged(self, conn):
        """Ingesting the same batch twice leaves the ledger as after the first time."""
        batch = [_record(resource_id=f"i-{n}") for n in range(5)]
        merge_batch(conn, batch, now=NOW)
        before = [r.amount for r in query_by_period(conn, "alice")]

        replay = merge_batch(conn, [_record(resource_id=f"i-{n}") for n in range(5)], now=NOW)

        assert replay.written == 0
        assert replay.unchanged == 5
        assert replay.succeeded == 5
        assert [r.amount for r in query_by_period(conn, "alice")] == before

    def test_empty_batch(self, conn):
        result = merge_batch(conn, [], now=NOW)
        assert result.succeeded == 0
        assert result.rejected == 0


class TestQueryAndPurge:
    """Tests for query_by_period() and purge_older_than()."""

    def test_query_bounds_are_inclusive(self, conn):
        for day in (1, 2, 3, 4):
            merge(conn, _record(record_date=date(2025, 3, day)), now=NOW)

        rows = query_by_period(conn, "alice", date(2025, 3, 2), date(2025, 3, 3))
        assert [r.record_date.day for r in rows] == [2, 3]

    def test_retention_boundary(self, conn):
        """A record 24 months and 1 day old is purged; 24 months minus 1 day is kept."""
        today = date(2026, 10, 17)
        merge(conn, _record(resource_id="old", record_date=date(2024, 10, 16)), now=NOW)
        merge(conn, _record(resource_id="new", record_date=date(2024, 10, 18)), now=NOW)

        deleted = purge_older_than(conn, 24, today)

        assert deleted == 1
        remaining = query_by_period(conn, "alice")
        assert [r.resource_id for r in remaining] == ["new"]
