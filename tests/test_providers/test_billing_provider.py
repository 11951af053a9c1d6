"""Tests for the HTTP billing provider client and retry policy."""

from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pytest

from spendwatch.core.errors import ProviderError, TransientProviderError
from spendwatch.providers.billing import HttpBillingProvider, ProviderCostRow, fetch_with_retry

START, END = date(2025, 3, 9), date(2025, 3, 10)


def _provider(handler) -> HttpBillingProvider:
    client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://billing.test")
    return HttpBillingProvider("http://billing.test", client=client)


class TestHttpBillingProvider:
    """Tests for HttpBillingProvider.fetch_daily_costs()."""

    def test_parses_rows(self, registry):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "rows": [
                        {
                            "date": "2025-03-09",
                            "service": "Amazon S3",
                            "resource_id": "bucket-a",
                            "amount": "1.2345",
                            "usage_quantity": "10",
                            "usage_unit": "GB-Mo",
                        }
                    ]
                },
            )

        rows = _provider(handler).fetch_daily_costs(registry.get_account("acct-1"), START, END)
        assert rows == [
            ProviderCostRow(
                service="Amazon S3",
                resource_key="bucket-a",
                amount=Decimal("1.2345"),
                date=date(2025, 3, 9),
                usage_quantity=10.0,
                usage_unit="GB-Mo",
            )
        ]

    def test_configures_bearer_token(self):
        with HttpBillingProvider("http://billing.test/", token="tok-123") as provider:
            assert provider._client.headers["Authorization"] == "Bearer tok-123"
            assert str(provider._client.base_url).rstrip("/") == "http://billing.test"

    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    def test_transient_statuses(self, registry, status):
        provider = _provider(lambda request: httpx.Response(status))
        with pytest.raises(TransientProviderError):
            provider.fetch_daily_costs(registry.get_account("acct-1"), START, END)

    @pytest.mark.parametrize("status", [401, 403, 404])
    def test_permanent_statuses(self, registry, status):
        provider = _provider(lambda request: httpx.Response(status))
        with pytest.raises(ProviderError):
            provider.fetch_daily_costs(registry.get_account("acct-1"), START, END)

    def test_network_error_is_transient(self, registry):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientProviderError):
            _provider(handler).fetch_daily_costs(registry.get_account("acct-1"), START, END)

    def test_malformed_payload(self, registry):
        provider = _provider(lambda request: httpx.Response(200, json={"items": []}))
        with pytest.raises(ProviderError, match="no 'rows' list"):
            provider.fetch_daily_costs(registry.get_account("acct-1"), START, END)

    def test_malformed_row(self, registry):
        provider = _provider(lambda request: httpx.Response(200, json={"rows": [{"amount": 1}]}))
        with pytest.raises(ProviderError, match="Malformed cost row"):
            provider.fetch_daily_costs(registry.get_account("acct-1"), START, END)

    @pytest.mark.parametrize("row", ["garbage", 42, ["2025-03-09", "S3", "1.00"]])
    def test_row_that_is_not_an_object(self, registry, row):
        provider = _provider(lambda request: httpx.Response(200, json={"rows": [row]}))
        with pytest.raises(ProviderError, match="Malformed cost row"):
            provider.fetch_daily_costs(registry.get_account("acct-1"), START, END)


class TestFetchWithRetry:
    """Tests for fetch_with_retry()."""

    def test_retries_then_succeeds(self, registry):
        provider = MagicMock()
        provider.fetch_daily_costs.side_effect = [
            TransientProviderError("throttled"),
            TransientProviderError("throttled"),
            [],
        ]
        delays: list[float] = []

        rows = fetch_with_retry(
            provider, registry.get_account("acct-1"), START, END, sleep=delays.append
        )

        assert rows == []
        assert delays == [2.0, 4.0]
        assert provider.fetch_daily_costs.call_count == 3

    def test_permanent_error_not_retried(self, registry):
        provider = MagicMock()
        provider.fetch_daily_costs.side_effect = ProviderError("bad credentials")
        delays: list[float] = []

        with pytest.raises(ProviderError):
            fetch_with_retry(
                provider, registry.get_account("acct-1"), START, END, sleep=delays.append
            )
        assert delays == []
        assert provider.fetch_daily_costs.call_count == 1

    def test_gives_up_after_max_attempts(self, registry):
        provider = MagicMock()
        provider.fetch_daily_costs.side_effect = TransientProviderError("down")

        with pytest.raises(TransientProviderError):
            fetch_with_retry(
                provider,
                registry.get_account("acct-1"),
                START,
                END,
                max_attempts=4,
                sleep=lambda _: None,
            )
        assert provider.fetch_daily_costs.call_count == 4
