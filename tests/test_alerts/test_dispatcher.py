"""Tests for alert dispatch and deduplication."""

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from spendwatch.alerts.dispatcher import DispatchOutcome, Dispatcher
from spendwatch.alerts.events import AlertKind, DailySummaryDetail, DeliveryState, Severity
from spendwatch.alerts.ledger import AlertLedger
from spendwatch.budgets import policies
from spendwatch.budgets.evaluator import evaluate
from spendwatch.core.errors import ConsistencyError, DeliveryError

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


@pytest.fixture
def transport() -> MagicMock:
    mock = MagicMock()
    mock.deliver.return_value = True
    return mock


@pytest.fixture
def dispatcher(registry, transport) -> Dispatcher:
    return Dispatcher(registry, transport)


@pytest.fixture
def at_threshold(add_cost, add_policy):
    """alice at 850 of 1000 in March 2025 (85%, threshold 80%)."""
    add_cost("alice", date(2025, 3, 5), "850.00")
    return add_policy()


class TestDispatch:
    """Tests for Dispatcher.dispatch()."""

    def test_threshold_alert_sent(self, conn, dispatcher, transport, at_threshold):
        result = dispatcher.dispatch(conn, evaluate(conn, "alice", NOW), NOW)

        assert result.outcome is DispatchOutcome.SENT
        assert (result.kind, result.severity) == (AlertKind.THRESHOLD, Severity.INFO)
        recipient, subject, body = transport.deliver.call_args.args
        assert recipient == "alice@example.org"
        assert subject == "Budget Alert: 85% of monthly limit used"
        assert "Alice Analytics" in body

        event = AlertLedger(conn).get(result.event_id)
        assert event.state is DeliveryState.SENT
        assert event.amount_spent == Decimal("850.00")
        assert policies.get(conn, at_threshold.id).last_alert_sent == NOW

    def test_over_budget_alert(self, conn, dispatcher, transport, at_threshold, add_cost):
        add_cost("alice", date(2025, 3, 6), "270.00", resource_id="i-2")

        result = dispatcher.dispatch(conn, evaluate(conn, "alice", NOW), NOW)

        assert (result.kind, result.severity) == (AlertKind.OVER_BUDGET, Severity.CRITICAL)
        assert transport.deliver.call_args.args[1] == "URGENT: Monthly budget exceeded"
        assert "USD 120.00" in transport.deliver.call_args.args[2]

    def test_below_threshold_not_eligible(self, conn, dispatcher, transport, add_policy, add_cost):
        add_cost("alice", date(2025, 3, 5), "100.00")
        add_policy()

        result = dispatcher.dispatch(conn, evaluate(conn, "alice", NOW), NOW)

        assert result.outcome is DispatchOutcome.NOT_ELIGIBLE
        transport.deliver.assert_not_called()

    def test_subject_without_email(self, conn, dispatcher, transport, add_cost, add_policy):
        add_cost("bob", date(2025, 3, 5), "2000.00")
        add_policy(subject_id="bob")

        result = dispatcher.dispatch(conn, evaluate(conn, "bob", NOW), NOW)

        assert result.outcome is DispatchOutcome.NOT_ELIGIBLE
        assert AlertLedger(conn).history_for_subject("bob") == []

    def test_unknown_subject(self, conn, dispatcher, add_cost, add_policy):
        add_cost("carol", date(2025, 3, 5), "2000.00")
        add_policy(subject_id="carol")

        with pytest.raises(ConsistencyError):
            dispatcher.dispatch(conn, evaluate(conn, "carol", NOW), NOW)

    def test_repeat_within_cooldown_and_after(self, conn, dispatcher, transport, at_threshold):
        """A prior sent alert 2h ago blocks both sweeps; 25h later one new alert goes out."""
        earlier = NOW - timedelta(hours=2)
        assert dispatcher.dispatch(conn, evaluate(conn, "alice", earlier), earlier).outcome is (
            DispatchOutcome.SENT
        )

        for minute in (0, 30):
            moment = NOW + timedelta(minutes=minute)
            result = dispatcher.dispatch(conn, evaluate(conn, "alice", moment), moment)
            assert result.outcome is DispatchOutcome.SKIPPED_COOLDOWN

        later = earlier + timedelta(hours=25)
        assert dispatcher.dispatch(conn, evaluate(conn, "alice", later), later).outcome is (
            DispatchOutcome.SENT
        )
        sent = [
            e for e in AlertLedger(conn).history_for_subject("alice")
            if e.state is DeliveryState.SENT
        ]
        assert len(sent) == 2
        assert transport.deliver.call_count == 2

    def test_failed_delivery_retried_next_sweep(self, conn, dispatcher, transport, at_threshold):
        transport.deliver.side_effect = [DeliveryError("connection refused"), True]

        first = dispatcher.dispatch(conn, evaluate(conn, "alice", NOW), NOW)
        assert first.outcome is DispatchOutcome.FAILED
        assert AlertLedger(conn).get(first.event_id).state is DeliveryState.FAILED
        assert policies.get(conn, at_threshold.id).last_alert_sent is None

        later = NOW + timedelta(hours=1)
        second = dispatcher.dispatch(conn, evaluate(conn, "alice", later), later)
        assert second.outcome is DispatchOutcome.SENT

    def test_refused_delivery_records_failure(self, conn, dispatcher, transport, at_threshold):
        transport.deliver.return_value = False

        result = dispatcher.dispatch(conn, evaluate(conn, "alice", NOW), NOW)
        assert result.outcome is DispatchOutcome.FAILED


class TestDailySummary:
    """Tests for Dispatcher.dispatch_daily_summary()."""

    def test_sends_yesterdays_digest(self, conn, dispatcher, transport, add_cost, add_policy):
        add_policy()
        add_cost("alice", date(2025, 3, 9), "12.50")
        add_cost("alice", date(2025, 3, 1), "7.50", "Amazon Simple Storage Service", "b-1")

        result = dispatcher.dispatch_daily_summary(conn, "alice", NOW)

        assert result.outcome is DispatchOutcome.SENT
        assert result.kind is AlertKind.DAILY_SUMMARY
        assert transport.deliver.call_args.args[1] == "Daily Cost Summary - 2025-03-09"
        detail = AlertLedger(conn).get(result.event_id).detail
        assert isinstance(detail, DailySummaryDetail)
        assert Decimal(detail.day_total) == Decimal("12.50")
        assert Decimal(detail.period_total) == Decimal("20.00")
        name, total = detail.top_services[0]
        assert (name, Decimal(total)) == ("Amazon Elastic Compute Cloud", Decimal("12.50"))

    def test_once_per_cooldown(self, conn, dispatcher, add_policy):
        add_policy()
        dispatcher.dispatch_daily_summary(conn, "alice", NOW)
        again = dispatcher.dispatch_daily_summary(conn, "alice", NOW + timedelta(hours=1))
        assert again.outcome is DispatchOutcome.SKIPPED_COOLDOWN

    def test_disabled_policy(self, conn, dispatcher, transport, add_policy):
        add_policy(alerts_enabled=False)
        result = dispatcher.dispatch_daily_summary(conn, "alice", NOW)
        assert result.outcome is DispatchOutcome.NOT_ELIGIBLE
        transport.deliver.assert_not_called()
