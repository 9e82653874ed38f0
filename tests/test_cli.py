"""Tests for the operator CLI."""

import sys
from datetime import datetime

import pytest

from buyly import cli
from buyly.cli import backfill_todos
from buyly.document_store import DocumentStore


class TestBackfillTodos:
    def test_only_missing_dates_are_filled(self, store):
        store.set("todos", "t1", {"title": "Buy milk"})
        store.set("todos", "t2", {"title": "Buy eggs", "createdAt": "2024-01-01T00:00:00.000Z"})
        store.set("todos", "t3", {"title": "Buy bread", "createdAt": ""})

        result = backfill_todos(store, batch_size=500, now=datetime(2025, 3, 15, 12))

        assert result["totalTodos"] == 3
        assert result["updatedTodos"] == 2
        assert result["skippedTodos"] == 1
        assert result["batches"] == 1
        assert store.get("todos", "t2")["createdAt"] == "2024-01-01T00:00:00.000Z"
        assert store.get("todos", "t1")["createdAt"].startswith("2025-03-15")

    def test_nothing_to_do(self, store):
        assert backfill_todos(store, batch_size=500)["batches"] == 0


class TestMain:
    @pytest.fixture
    def db(self, tmp_path, monkeypatch):
        monkeypatch.setattr(cli, "load_dotenv", lambda: None)
        path = tmp_path / "cli.db"
        with DocumentStore(path) as store:
            store.set("users", "user-1", {"ai": {"credits": 1000}})
        return path

    def _run(self, monkeypatch, *argv):
        monkeypatch.setattr(sys, "argv", ["buyly", *argv])
        cli.main()

    def test_load_credits(self, db, monkeypatch, capsys):
        self._run(monkeypatch, "--db", str(db), "load-credits", "user-1", "--amount", "500")
        assert "New balance: 1500" in capsys.readouterr().out
        with DocumentStore(db) as store:
            assert store.get("users", "user-1")["ai"]["lastCreditsAdded"]["reason"] == "user bonus"

    def test_load_credits_unknown_user(self, db, monkeypatch, capsys):
        with pytest.raises(SystemExit) as exc:
            self._run(monkeypatch, "--db", str(db), "load-credits", "nobody", "--amount", "5")
        assert exc.value.code == 1
        assert "User not found" in capsys.readouterr().out

    def test_rejects_non_positive_amount(self, db, monkeypatch):
        with pytest.raises(SystemExit):
            self._run(monkeypatch, "--db", str(db), "load-credits", "user-1", "--amount", "0")

    def test_no_command_prints_help(self, monkeypatch, capsys):
        monkeypatch.setattr(cli, "load_dotenv", lambda: None)
        with pytest.raises(SystemExit):
            self._run(monkeypatch)
        assert "load-credits" in capsys.readouterr().out
