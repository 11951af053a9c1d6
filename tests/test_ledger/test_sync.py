"""Tests for provider-to-ledger sync."""

from datetime import UTC, date, datetime
from decimal import Decimal

import httpx
import pytest

from spendwatch.core.errors import TransientProviderError
from spendwatch.ledger.records import count_records, query_by_period
from spendwatch.ledger.sync import sync_account, sync_prior_day
from spendwatch.providers.billing import HttpBillingProvider

NOW = datetime(2025, 3, 10, 1, 0, tzinfo=UTC)

ROWS = [
    {
        "date": "2025-03-09",
        "service": "Amazon Elastic Compute Cloud",
        "resource_id": "i-1",
        "amount": "10.25",
        "usage_quantity": 24,
        "usage_unit": "Hrs",
    },
    {
        "date": "2025-03-09",
        "service": "Amazon Elastic Compute Cloud",
        "resource_id": "i-bob",
        "amount": "4.00",
    },
    {"date": "2025-03-09", "service": "Amazon Route 53", "resource_id": None, "amount": "0.50"},
    {"date": "2025-03-09", "service": "AWS Lambda", "resource_id": "fn-1", "amount": "0"},
]


def _provider(rows=ROWS, calls=None) -> HttpBillingProvider:
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        return httpx.Response(200, json={"rows": rows})

    client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://billing.test")
    return HttpBillingProvider("http://billing.test", client=client)


class TestSyncAccount:
    """Tests for sync_account()."""

    def test_routes_rows_to_subjects(self, conn, registry):
        account = registry.get_account("acct-1")
        result = sync_account(
            conn, _provider(), registry, account, date(2025, 3, 9), date(2025, 3, 10), now=NOW
        )

        assert result.fetched == 4
        assert result.written == 3
        assert result.skipped_zero == 1
        assert result.unassigned == 0
        assert result.total_amount == Decimal("14.75")
        assert count_records(conn, "alice") == 2
        assert count_records(conn, "bob") == 1

    def test_rejected_rows_are_left_out_of_the_total(self, conn, registry):
        refund = {
            "date": "2025-03-09",
            "service": "Amazon Simple Storage Service",
            "resource_id": "bucket-1",
            "amount": "-3.00",
        }
        account = registry.get_account("acct-1")
        result = sync_account(
            conn,
            _provider(ROWS + [refund]),
            registry,
            account,
            date(2025, 3, 9),
            date(2025, 3, 10),
            now=NOW,
        )

        assert result.rejected == 1
        assert result.written == 3
        assert result.total_amount == Decimal("14.75")

    def test_service_level_rows_get_synthetic_resource_id(self, conn, registry):
        account = registry.get_account("acct-1")
        sync_account(
            conn, _provider(), registry, account, date(2025, 3, 9), date(2025, 3, 10), now=NOW
        )

        ids = {r.resource_id for r in query_by_period(conn, "alice")}
        assert "Amazon Route 53-2025-03-09" in ids

    def test_unrouted_rows_are_counted_and_dropped(self, conn, registry):
        """An account without a default subject drops unassigned rows."""
        account = registry.get_account("acct-2")
        result = sync_account(
            conn, _provider(), registry, account, date(2025, 3, 9), date(2025, 3, 10), now=NOW
        )

        assert result.unassigned == 3
        assert result.written == 0
        assert count_records(conn) == 0

    def test_repeated_sync_is_idempotent(self, conn, registry):
        account = registry.get_account("acct-1")
        args = (conn, _provider(), registry, account, date(2025, 3, 9), date(2025, 3, 10))
        sync_account(*args, now=NOW)
        second = sync_account(*args, now=NOW)

        assert second.written == 0
        assert second.unchanged == 3
        assert count_records(conn) == 3

    def test_requests_half_open_range(self, conn, registry):
        calls: list[httpx.Request] = []
        account = registry.get_account("acct-1")
        sync_prior_day(conn, _provider(calls=calls), registry, account, date(2025, 3, 10))

        assert len(calls) == 1
        assert calls[0].url.path == "/accounts/111122223333/costs"
        assert calls[0].url.params["start"] == "2025-03-09"
        assert calls[0].url.params["end"] == "2025-03-10"

    def test_transient_failure_exhausts_retries(self, conn, registry):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://b.test")
        provider = HttpBillingProvider("http://b.test", client=client)
        delays: list[float] = []

        with pytest.raises(TransientProviderError):
            sync_account(
                conn,
                provider,
                registry,
                registry.get_account("acct-1"),
                date(2025, 3, 9),
                date(2025, 3, 10),
                max_attempts=3,
                backoff_seconds=1.0,
                sleep=delays.append,
            )
        assert delays == [1.0, 2.0]
        assert count_records(conn) == 0
