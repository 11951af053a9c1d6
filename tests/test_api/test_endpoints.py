"""Tests for the REST API endpoints."""

from collections.abc import Generator
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from spendwatch.api.config import get_settings
from spendwatch.api.main import create_app
from spendwatch.ledger.db import get_connection, get_db_path
from spendwatch.ledger.records import CostRecord, merge

ACCOUNTS_YAML = """
subjects:
  - id: alice
    name: Alice Analytics
    email: alice@example.org
  - id: bob
accounts:
  - id: acct-1
    credentials_ref: "111122223333"
    default_subject: alice
"""

TODAY = datetime.now(UTC).date()
PERIOD = f"{TODAY.year:04d}-{TODAY.month:02d}"


@pytest.fixture
def client(tmp_path: Path, monkeypatch) -> Generator[TestClient, None, None]:
    """A test client against a fresh data directory with the scheduler disabled."""
    accounts = tmp_path / "accounts.yaml"
    accounts.write_text(ACCOUNTS_YAML)
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("ACCOUNTS_FILE", str(accounts))
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("REQUIRE_API_AUTH", "false")
    get_settings.cache_clear()

    with patch("spendwatch.api.main.configure_secure_logging"):
        with TestClient(create_app()) as test_client:
            yield test_client
    get_settings.cache_clear()


@pytest.fixture
def seed(client, tmp_path):
    """Write cost records for alice straight into the app's ledger."""

    def _seed(amount: str, day: date = TODAY, service: str = "Amazon S3", resource: str = "b-1"):
        conn = get_connection(get_db_path(tmp_path))
        try:
            merge(
                conn,
                CostRecord(
                    subject_id="alice",
                    account_id="acct-1",
                    resource_id=resource,
                    service_name=service,
                    record_date=day,
                    amount=Decimal(amount),
                ),
            )
        finally:
            conn.close()

    return _seed


@pytest.fixture
def transport(client) -> MagicMock:
    """Swap the app's mail transport for a mock."""
    mock = MagicMock()
    mock.deliver.return_value = True
    client.app.state.dispatcher.transport = mock
    return mock


def _create_policy(client, **overrides):
    body = {"subject_id": "alice", "monthly_limit": "100.00", "start_date": "2020-01-01"}
    body.update(overrides)
    return client.post("/budgets", json=body)


class TestSystem:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["scheduler_running"] is False

    def test_root(self, client):
        assert client.get("/").json()["name"] == "Spendwatch"


class TestBillingEndpoints:
    def test_total_and_breakdown(self, client, seed):
        seed("30.00")
        seed("10.00", service="AWS Lambda", resource="fn-1")

        total = client.get("/billing/subjects/alice/total").json()
        assert total == {"subject_id": "alice", "period": PERIOD, "total": 40.0}

        breakdown = client.get("/billing/subjects/alice/breakdown").json()
        assert [s["service_name"] for s in breakdown["services"]] == ["Amazon S3", "AWS Lambda"]
        assert breakdown["services"][0]["percentage"] == 75.0

    def test_invalid_period_is_422(self, client):
        response = client.get("/billing/subjects/alice/total", params={"period": "2025-13"})
        assert response.status_code == 422
        assert response.json()["field"] == "period"

    def test_trend_rejects_reversed_range(self, client):
        response = client.get(
            "/billing/subjects/alice/trend",
            params={"start": "2025-03-10", "end": "2025-03-01"},
        )
        assert response.status_code == 422
        assert response.json()["field"] == "end"

    def test_top_drivers_limit_bounds(self, client):
        response = client.get("/billing/subjects/alice/top-drivers", params={"limit": 0})
        assert response.status_code == 422

    def test_forecast(self, client, seed):
        seed("20.00")

        single = client.get(
            "/billing/subjects/alice/forecast", params={"method": "linear_extrapolation"}
        ).json()
        assert len(single["forecasts"]) == 1
        assert single["forecasts"][0]["method"] == "linear_extrapolation"

        full = client.get("/billing/subjects/alice/forecast").json()
        assert len(full["forecasts"]) == 4
        assert full["recommended"] is not None

    def test_unknown_forecast_method(self, client):
        response = client.get("/billing/subjects/alice/forecast", params={"method": "tarot"})
        assert response.status_code == 422
        assert response.json()["field"] == "method"

    def test_all_subjects_and_account_summary(self, client, seed):
        seed("5.00")
        summary = client.get("/billing/summary").json()
        assert summary["subjects"][0]["subject_id"] == "alice"

        assert client.get("/billing/accounts/acct-1/summary").json()["total"] == 5.0
        assert client.get("/billing/accounts/nope/summary").status_code == 404


class TestBudgetEndpoints:
    def test_crud(self, client):
        created = _create_policy(client)
        assert created.status_code == 201
        policy_id = created.json()["id"]

        assert client.get(f"/budgets/{policy_id}").json()["monthly_limit"] == 100.0
        patched = client.patch(f"/budgets/{policy_id}", json={"alert_threshold": 0.5})
        assert patched.json()["alert_threshold"] == 0.5
        assert client.get("/budgets", params={"subject_id": "alice"}).json()[0]["id"] == policy_id

        assert client.delete(f"/budgets/{policy_id}").status_code == 204
        assert client.get(f"/budgets/{policy_id}").status_code == 404

    def test_validation_names_field(self, client):
        response = _create_policy(client, alert_threshold=1.5)
        assert response.status_code == 422
        assert response.json()["field"] == "alert_threshold"

    def test_unknown_subject_rejected(self, client):
        response = _create_policy(client, subject_id="mallory")
        assert response.status_code == 422
        assert response.json()["field"] == "subject_id"

    def test_patch_null_end_date_clears_it(self, client):
        policy_id = _create_policy(client, end_date="2099-12-31").json()["id"]
        patched = client.patch(f"/budgets/{policy_id}", json={"end_date": None})
        assert patched.json()["end_date"] is None

    def test_patch_unknown_policy(self, client):
        assert client.patch("/budgets/999", json={"alerts_enabled": False}).status_code == 404

    def test_status(self, client, seed):
        _create_policy(client)
        seed("85.00")

        data = client.get("/budgets/subjects/alice/status").json()
        assert data["current_spend"] == 85.0
        assert data["threshold_crossed"] is True
        assert data["over_budget"] is False
        assert data["alert_level"] == "info"

        assert client.get("/budgets/subjects/bob/status").status_code == 404
        assert client.get("/budgets/subjects/bob/active").status_code == 404


class TestAlertEndpoints:
    def test_check_sends_once(self, client, seed, transport):
        _create_policy(client, monthly_limit="50")
        seed("60.00")

        first = client.post("/alerts/check").json()
        assert first["alerts_sent"] == 1
        assert first["details"] == {"alice": "sent"}

        second = client.post("/alerts/check").json()
        assert second["alerts_sent"] == 0
        assert second["details"] == {"alice": "skipped_cooldown"}
        assert transport.deliver.call_count == 1

        history = client.get("/alerts/subjects/alice").json()
        assert [e["kind"] for e in history] == ["over_budget"]
        assert history[0]["state"] == "sent"

        stats = client.get("/alerts/statistics").json()
        assert (stats["total"], stats["delivered"]) == (1, 1)

    def test_unsent_lists_failed_deliveries(self, client, seed, transport):
        transport.deliver.return_value = False
        _create_policy(client, monthly_limit="50")
        seed("60.00")

        assert client.post("/alerts/check").json()["errors"] == 1
        unsent = client.get("/alerts/unsent").json()
        assert [e["state"] for e in unsent] == ["failed"]

    def test_test_email(self, client, transport):
        response = client.post("/alerts/test-email", json={"to": "ops@example.org"})
        assert response.status_code == 200
        assert transport.deliver.call_args.args[0] == "ops@example.org"

    def test_test_email_unconfigured(self, client):
        response = client.post("/alerts/test-email", json={"to": "ops@example.org"})
        assert response.status_code == 502


class TestSchedulerEndpoints:
    def test_status(self, client):
        data = client.get("/scheduler/status").json()
        assert data["running"] is False
        assert set(data["last_runs"]) == {"sweep", "sync", "cleanup"}

    def test_run_cleanup(self, client):
        data = client.post("/scheduler/run/cleanup").json()
        assert (data["job"], data["status"]) == ("cleanup", "ok")

    def test_run_unknown_job(self, client):
        response = client.post("/scheduler/run/defrag")
        assert response.status_code == 422
        assert response.json()["field"] == "job"

    def test_sync_unknown_account(self, client):
        assert client.post("/scheduler/sync/nope").status_code == 404

    def test_sync_account(self, client):
        provider = MagicMock()
        provider.fetch_daily_costs.return_value = []
        client.app.state.scheduler.provider = provider

        yesterday = TODAY - timedelta(days=1)
        data = client.post("/scheduler/sync/acct-1", params={"day": TODAY.isoformat()}).json()

        assert data["status"] == "ok"
        assert data["details"]["acct-1"]["fetched"] == 0
        _, start, _ = provider.fetch_daily_costs.call_args.args
        assert start == yesterday
