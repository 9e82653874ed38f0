"""Tests for the user lifecycle hooks and user export."""

import json
from unittest.mock import patch

import pytest

from buyly.auth import AuthUser
from buyly.users import (
    OWNED_COLLECTIONS,
    export_users,
    export_users_to_json,
    on_create_user,
    on_user_deleted,
    send_welcome_email,
    summarize,
)

COGNITO_EVENT = {
    "triggerSource": "PostConfirmation_ConfirmSignUp",
    "userName": "3f1c9a52",
    "request": {
        "userAttributes": {"sub": "user-1", "email": "thandi@example.com", "name": "Thandi"},
    },
    "response": {},
}


class TestCreateUser:
    def test_grants_signup_credits(self, store, settings, now):
        store.set("users", "user-1", {"email": "thandi@example.com"})

        on_create_user(COGNITO_EVENT, store, settings, now)

        user = store.get("users", "user-1")
        assert user["email"] == "thandi@example.com"
        assert user["ai"]["credits"] == 1000
        assert user["ai"]["tier"] == "free"
        assert user["ai"]["lastCreditsAdded"]["reason"] == "signup-reward"
        assert user["ai"]["dailyUsage"] == 0
        assert user["created_at"] == user["updated_at"]

    def test_flat_user_record(self, store, settings, now):
        on_create_user({"uid": "user-2", "email": "x@example.com"}, store, settings, now)
        assert store.get("users", "user-2")["ai"]["credits"] == 1000

    def test_invalid_event_writes_nothing(self, store, settings, now):
        assert on_create_user({"email": "x@example.com"}, store, settings, now) == {}
        assert store.count("users") == 0


class TestWelcomeEmail:
    def test_sends_to_new_user(self, settings):
        with patch("buyly.users.send_welcome_email_message", return_value="<id@buyly>") as send:
            assert send_welcome_email(COGNITO_EVENT, settings) == {"success": True}
        send.assert_called_once_with(
            "thandi@example.com", "Thandi", from_address=settings["email"]["welcome_from"]
        )

    def test_missing_email(self, settings):
        with patch("buyly.users.send_welcome_email_message") as send:
            result = send_welcome_email({"uid": "user-1"}, settings)
        assert result["success"] is False
        send.assert_not_called()

    def test_smtp_failure_is_reported_not_raised(self, settings):
        with patch("buyly.users.send_welcome_email_message", side_effect=OSError("refused")):
            result = send_welcome_email(COGNITO_EVENT, settings)
        assert result == {"success": False, "error": "refused"}


class TestUserDeleted:
    def test_removes_owned_documents_and_leaves_tombstone(self, store, settings, now):
        store.set("users", "user-1", {"email": "thandi@example.com"})
        for collection in OWNED_COLLECTIONS:
            store.set(collection, f"{collection}-mine", {"userId": "user-1"})
            store.set(collection, f"{collection}-theirs", {"userId": "user-2"})

        deleted = on_user_deleted(
            {"uid": "user-1", "email": "thandi@example.com", "metadata": {"creationTime": "2024-01-01"}},
            store,
            settings,
            now,
        )

        assert deleted == {collection: 1 for collection in OWNED_COLLECTIONS}
        assert store.get("users", "user-1") is None
        for collection in OWNED_COLLECTIONS:
            assert [s.id for s in store.query(collection)] == [f"{collection}-theirs"]

        tombstone = store.get("deleted-users", "user-1")
        assert tombstone["email"] == "thandi@example.com"
        assert tombstone["createdAt"] == "2024-01-01"
        assert tombstone["deletedAt"].startswith("2025-03-15")

    def test_many_documents_span_batches(self, store, settings, now):
        settings["bulk_write"]["batch_size"] = 10
        for i in range(25):
            store.set("todos", f"t{i}", {"userId": "user-1"})
        assert on_user_deleted({"uid": "user-1"}, store, settings, now)["todos"] == 25
        assert store.count("todos") == 0


def _auth_users():
    return [
        AuthUser(uid="a", email="a@example.com", email_verified=True, display_name="A"),
        AuthUser(uid="b", email="b@example.com", phone_number="+27820000000"),
        AuthUser(uid="c", disabled=True),
    ]


class TestExport:
    def test_summarize(self):
        assert summarize(_auth_users()) == {
            "totalUsers": 3,
            "verifiedEmails": 1,
            "usersWithDisplayName": 1,
            "disabledUsers": 1,
            "usersWithPhoneNumber": 1,
        }

    def test_export_to_store(self, store, settings, auth):
        auth.list_users.return_value = iter(_auth_users())

        result = export_users(auth, store, settings)

        assert result["totalUsers"] == 3
        exported = store.get("totalUsers", "a")
        assert exported["emailVerified"] is True
        assert exported["exportedDate"]

    def test_export_to_json(self, tmp_path, auth):
        auth.list_users.return_value = iter(_auth_users())

        result = export_users_to_json(auth, tmp_path / "output")

        with open(result["outputPath"]) as f:
            payload = json.load(f)
        assert [u["uid"] for u in payload["users"]] == ["a", "b", "c"]
        assert payload["summary"]["totalUsers"] == 3
