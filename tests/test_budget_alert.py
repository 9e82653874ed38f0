"""Tests for the monthly budget alert."""

from datetime import datetime
from unittest.mock import patch

import pytest

from buyly import budget_alert
from buyly.budget_alert import ALERTS_COLLECTION, alert_key, check_budget_alert, month_to_date_spend
from buyly.errors import NotFoundError, ValidationError


def _event(user_id="user-1", amount=100, date="2025-03-15T09:30:00.000Z"):
    return {
        "documentId": "h-new",
        "data": {"userId": user_id, "totalAmount": amount, "date": date},
    }


@pytest.fixture
def user(store):
    store.set("users", "user-1", {"budget": 1000, "is_budget_set": True, "is_budget_alert_set": True})


@pytest.fixture
def history(store, user):
    store.set("history-items", "h1", {"userId": "user-1", "totalAmount": 450, "date": "2025-03-02T08:00:00.000Z"})
    store.set("history-items", "h-new", {"userId": "user-1", "totalAmount": 100, "date": "2025-03-15T09:30:00.000Z"})
    # Previous month and another user, both ignored
    store.set("history-items", "h0", {"userId": "user-1", "totalAmount": 900, "date": "2025-02-27T08:00:00.000Z"})
    store.set("history-items", "h9", {"userId": "user-2", "totalAmount": 900, "date": "2025-03-05T08:00:00.000Z"})


@pytest.fixture
def send():
    with patch("buyly.budget_alert.send_budget_alert_email") as mock:
        yield mock


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestAlertKey:
    def test_month_is_zero_based(self):
        assert alert_key("user-1", datetime(2025, 1, 5)) == "user-1_2025_0"
        assert alert_key("user-1", datetime(2025, 12, 31)) == "user-1_2025_11"


class TestMonthToDateSpend:
    def test_sums_current_month_only(self, store, history, now):
        assert month_to_date_spend(store, "user-1", now) == 550

    def test_ignores_non_numeric_amounts(self, store, now):
        store.set("history-items", "a", {"userId": "u", "totalAmount": "12", "date": "2025-03-10T00:00:00.000Z"})
        store.set("history-items", "b", {"userId": "u", "totalAmount": True, "date": "2025-03-10T00:00:00.000Z"})
        store.set("history-items", "c", {"userId": "u", "totalAmount": 7.5, "date": "2025-03-10T00:00:00.000Z"})
        assert month_to_date_spend(store, "u", now) == 7.5


# ---------------------------------------------------------------------------
# check_budget_alert
# ---------------------------------------------------------------------------


class TestCheckBudgetAlert:
    def test_crossing_threshold_sends_one_alert(self, store, auth, settings, now, history, send):
        alert = check_budget_alert(_event(), store, auth, settings, now)

        assert alert is not None
        assert alert.percentage_spent == 55
        assert alert.amount_spent == 550
        send.assert_called_once()
        to, email = send.call_args.args
        assert to == "thandi@example.com"
        assert email.user_name == "Thandi"
        assert email.percentage_spent == 55

        record = store.get(ALERTS_COLLECTION, "user-1_2025_2")
        assert record["percentageSpent"] == 55
        assert record["month"] == 2
        assert record["year"] == 2025
        assert record["monthlyBudget"] == 1000

    def test_exactly_at_threshold_alerts(self, store, auth, settings, now, user, send):
        store.set("history-items", "h1", {"userId": "user-1", "totalAmount": 500, "date": "2025-03-10T00:00:00.000Z"})
        assert check_budget_alert(_event(amount=500), store, auth, settings, now) is not None

    def test_existing_record_means_no_send_and_no_write(self, store, auth, settings, now, history, send):
        store.set(ALERTS_COLLECTION, "user-1_2025_2", {"sentAt": "earlier"})

        assert check_budget_alert(_event(), store, auth, settings, now) is None

        send.assert_not_called()
        auth.get_user.assert_not_called()
        assert store.get(ALERTS_COLLECTION, "user-1_2025_2") == {"sentAt": "earlier"}

    def test_second_check_same_month_is_noop(self, store, auth, settings, now, history, send):
        check_budget_alert(_event(), store, auth, settings, now)
        assert check_budget_alert(_event(), store, auth, settings, now) is None
        assert send.call_count == 1

    def test_new_month_can_alert_again(self, store, auth, settings, history, send):
        store.set(ALERTS_COLLECTION, "user-1_2025_1", {"sentAt": "february"})
        assert check_budget_alert(_event(), store, auth, settings, datetime(2025, 3, 15, 12)) is not None

    def test_below_threshold(self, store, auth, settings, now, user, send):
        store.set("history-items", "h1", {"userId": "user-1", "totalAmount": 100, "date": "2025-03-10T00:00:00.000Z"})
        assert check_budget_alert(_event(), store, auth, settings, now) is None
        send.assert_not_called()
        assert store.count(ALERTS_COLLECTION) == 0

    @pytest.mark.parametrize("budget", [None, 0, "1000", True])
    def test_no_usable_budget(self, store, auth, settings, now, send, budget):
        store.set("users", "user-1", {"budget": budget})
        store.set("history-items", "h1", {"userId": "user-1", "totalAmount": 999, "date": "2025-03-10T00:00:00.000Z"})
        with patch.object(store, "query", wraps=store.query) as query:
            assert check_budget_alert(_event(), store, auth, settings, now) is None
        query.assert_not_called()
        send.assert_not_called()
        auth.get_user.assert_not_called()
        assert store.count(ALERTS_COLLECTION) == 0

    def test_non_boolean_flags_are_ignored(self, store, auth, settings, now, history, send):
        store.set("users", "user-1", {"budget": 1000, "is_budget_set": "maybe", "is_budget_alert_set": "yes"})
        assert check_budget_alert(_event(), store, auth, settings, now) is not None
        send.assert_called_once()

    def test_non_boolean_alert_flag_counts_as_off_when_required(self, store, auth, settings, now, history, send):
        store.set("users", "user-1", {"budget": 1000, "is_budget_alert_set": "yes"})
        settings["budget_alert"]["require_alert_flag"] = True
        assert check_budget_alert(_event(), store, auth, settings, now) is None
        send.assert_not_called()

    def test_alert_flag_required_when_configured(self, store, auth, settings, now, history, send):
        store.set("users", "user-1", {"budget": 1000, "is_budget_alert_set": False})
        settings["budget_alert"]["require_alert_flag"] = True
        assert check_budget_alert(_event(), store, auth, settings, now) is None
        send.assert_not_called()

    def test_alert_flag_ignored_by_default(self, store, auth, settings, now, history, send):
        store.set("users", "user-1", {"budget": 1000})
        assert check_budget_alert(_event(), store, auth, settings, now) is not None

    def test_missing_user_document(self, store, auth, settings, now, send):
        assert check_budget_alert(_event(), store, auth, settings, now) is None
        send.assert_not_called()

    @pytest.mark.parametrize(
        "event",
        [
            {"documentId": "h1"},
            {"documentId": "h1", "data": {"totalAmount": 5}},
            {"documentId": "h1", "data": {"userId": "  "}},
            {"data": {"userId": "user-1"}},
        ],
    )
    def test_malformed_event_is_ignored(self, store, auth, settings, now, history, send, event):
        assert check_budget_alert(event, store, auth, settings, now) is None
        send.assert_not_called()

    def test_unknown_auth_user(self, store, auth, settings, now, history, send):
        auth.get_user.side_effect = NotFoundError("gone")
        assert check_budget_alert(_event(), store, auth, settings, now) is None
        send.assert_not_called()
        assert store.count(ALERTS_COLLECTION) == 0

    def test_user_without_email(self, store, auth, settings, now, history, send):
        auth.get_user.return_value.email = None
        assert check_budget_alert(_event(), store, auth, settings, now) is None
        send.assert_not_called()

    def test_failed_send_writes_no_record(self, store, auth, settings, now, history, send):
        send.side_effect = OSError("smtp unavailable")
        with pytest.raises(OSError):
            check_budget_alert(_event(), store, auth, settings, now)
        assert store.count(ALERTS_COLLECTION) == 0

    def test_concurrent_record_is_not_overwritten(self, store, auth, settings, now, history, send):
        def record_elsewhere(*args, **kwargs):
            store.create(ALERTS_COLLECTION, "user-1_2025_2", {"sentAt": "other invocation"})

        send.side_effect = record_elsewhere

        assert check_budget_alert(_event(), store, auth, settings, now) is None
        assert store.get(ALERTS_COLLECTION, "user-1_2025_2") == {"sentAt": "other invocation"}


# ---------------------------------------------------------------------------
# Manual trigger
# ---------------------------------------------------------------------------


class TestManualBudgetAlert:
    def test_sends_without_recording(self, store, auth, settings, now, history, send):
        result = budget_alert.test_budget_alert({"userId": "user-1"}, store, auth, settings, now)

        assert result["success"] is True
        assert result["data"]["percentageSpent"] == "55.00"
        assert result["data"]["email"] == "thandi@example.com"
        send.assert_called_once()
        assert store.count(ALERTS_COLLECTION) == 0

    def test_sends_below_threshold(self, store, auth, settings, now, user, send):
        result = budget_alert.test_budget_alert({"userId": "user-1"}, store, auth, settings, now)
        assert result["data"]["totalSpent"] == 0
        send.assert_called_once()

    def test_requires_user_id(self, store, auth, settings, now):
        with pytest.raises(ValidationError, match="userId is required"):
            budget_alert.test_budget_alert({}, store, auth, settings, now)

    def test_unknown_user(self, store, auth, settings, now):
        with pytest.raises(NotFoundError):
            budget_alert.test_budget_alert({"userId": "nobody"}, store, auth, settings, now)

    def test_no_budget_set(self, store, auth, settings, now, send):
        store.set("users", "user-1", {"budget": 1000, "is_budget_set": False})
        with pytest.raises(ValidationError) as exc:
            budget_alert.test_budget_alert({"userId": "user-1"}, store, auth, settings, now)
        assert exc.value.details["userData"]["budget"] == 1000
        send.assert_not_called()
