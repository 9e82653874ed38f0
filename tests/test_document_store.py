"""Tests for the SQLite document store."""

import pytest

from buyly.document_store import (
    DELETE_FIELD,
    MAX_BATCH_SIZE,
    ArrayRemove,
    ArrayUnion,
    BatchFullError,
    DocumentRef,
    DocumentStore,
    Increment,
    apply_field_updates,
)
from buyly.errors import AlreadyExistsError, NotFoundError


# ---------------------------------------------------------------------------
# Single documents
# ---------------------------------------------------------------------------


class TestDocuments:
    def test_get_missing_returns_none(self, store):
        assert store.get("users", "nobody") is None
        assert store.exists("users", "nobody") is False

    def test_set_and_get(self, store):
        store.set("users", "u1", {"email": "a@example.com", "budget": 1000})
        assert store.get("users", "u1") == {"email": "a@example.com", "budget": 1000}

    def test_set_replaces_without_merge(self, store):
        store.set("users", "u1", {"email": "a@example.com", "budget": 1000})
        store.set("users", "u1", {"budget": 500})
        assert store.get("users", "u1") == {"budget": 500}

    def test_set_merge_keeps_other_fields(self, store):
        store.set("users", "u1", {"email": "a@example.com", "ai": {"credits": 5, "tier": "free"}})
        store.set("users", "u1", {"ai": {"credits": 10}}, merge=True)
        assert store.get("users", "u1") == {"email": "a@example.com", "ai": {"credits": 10, "tier": "free"}}

    def test_create_rejects_existing(self, store):
        store.create("budget-alerts", "u1_2025_2", {"sentAt": "x"})
        with pytest.raises(AlreadyExistsError):
            store.create("budget-alerts", "u1_2025_2", {"sentAt": "y"})
        assert store.get("budget-alerts", "u1_2025_2") == {"sentAt": "x"}

    def test_update_missing_raises(self, store):
        with pytest.raises(NotFoundError):
            store.update("users", "nobody", {"budget": 1})

    def test_update_sentinels(self, store):
        store.set("grocery-lists", "l1", {"members": ["a"], "ai": {"credits": 100}, "old": True})
        store.update(
            "grocery-lists",
            "l1",
            {
                "members": ArrayUnion("b", "a"),
                "ai.credits": Increment(50),
                "old": DELETE_FIELD,
            },
        )
        assert store.get("grocery-lists", "l1") == {"members": ["a", "b"], "ai": {"credits": 150}}

        store.update("grocery-lists", "l1", {"members": ArrayRemove("a")})
        assert store.get("grocery-lists", "l1")["members"] == ["b"]

    def test_delete_missing_is_noop(self, store):
        store.delete("users", "nobody")

    def test_add_generates_id(self, store):
        doc_id = store.add("notifications", {"userId": "u1"})
        assert store.get("notifications", doc_id) == {"userId": "u1"}


class TestApplyFieldUpdates:
    def test_creates_intermediate_maps(self):
        assert apply_field_updates({}, {"a.b.c": 1}) == {"a": {"b": {"c": 1}}}

    def test_does_not_mutate_input(self):
        data = {"a": {"b": 1}}
        apply_field_updates(data, {"a.b": 2})
        assert data == {"a": {"b": 1}}

    def test_increment_on_missing_starts_at_zero(self):
        assert apply_field_updates({}, {"n": Increment(3)}) == {"n": 3}


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    @pytest.fixture(autouse=True)
    def _history(self, store):
        store.set("history-items", "h1", {"userId": "u1", "date": "2025-03-01T10:00:00.000Z", "totalAmount": 10})
        store.set("history-items", "h2", {"userId": "u1", "date": "2025-03-20T10:00:00.000Z", "totalAmount": 20})
        store.set("history-items", "h3", {"userId": "u1", "date": "2025-02-20T10:00:00.000Z", "totalAmount": 30})
        store.set("history-items", "h4", {"userId": "u2", "date": "2025-03-05T10:00:00.000Z", "totalAmount": 40})

    def test_equality_and_range(self, store):
        results = store.query(
            "history-items",
            [
                ("userId", "==", "u1"),
                ("date", ">=", "2025-03-01T00:00:00.000Z"),
                ("date", "<=", "2025-03-31T23:59:59.000Z"),
            ],
        )
        assert [snap.id for snap in results] == ["h1", "h2"]

    def test_limit(self, store):
        assert len(store.query("history-items", limit=2)) == 2

    def test_count(self, store):
        assert store.count("history-items") == 4
        assert store.count("history-items", [("userId", "==", "u2")]) == 1

    def test_array_contains(self, store):
        store.set("grocery-lists", "l1", {"members": ["u1", "u2"]})
        store.set("grocery-lists", "l2", {"members": ["u3"]})
        results = store.query("grocery-lists", [("members", "array-contains", "u2")])
        assert [snap.id for snap in results] == ["l1"]

    def test_in_and_null(self, store):
        store.set("grocery-items", "i1", {"GroceryListId": None})
        store.set("grocery-items", "i2", {"GroceryListId": "l1"})
        assert [s.id for s in store.query("grocery-items", [("GroceryListId", "==", None)])] == ["i1"]
        assert [s.id for s in store.query("grocery-items", [("GroceryListId", "in", ["l1", "l2"])])] == ["i2"]
        assert store.query("grocery-items", [("GroceryListId", "in", [])]) == []

    def test_unsupported_operator(self, store):
        with pytest.raises(ValueError):
            store.query("history-items", [("userId", "~", "u1")])


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


class TestWriteBatch:
    def test_commit_applies_all(self, store):
        store.set("todos", "t2", {"done": False})
        batch = store.batch()
        batch.set(DocumentRef("todos", "t1"), {"done": False})
        batch.update(DocumentRef("todos", "t2"), {"done": True})
        assert batch.commit() == 2
        assert store.get("todos", "t1") == {"done": False}
        assert store.get("todos", "t2") == {"done": True}

    def test_failed_commit_applies_nothing(self, store):
        batch = store.batch()
        batch.set(DocumentRef("todos", "t1"), {"done": False})
        batch.update(DocumentRef("todos", "missing"), {"done": True})
        with pytest.raises(NotFoundError):
            batch.commit()
        assert store.get("todos", "t1") is None

    def test_rejects_more_than_max(self, store):
        batch = store.batch()
        for i in range(MAX_BATCH_SIZE):
            batch.delete(DocumentRef("todos", str(i)))
        assert batch.is_full
        with pytest.raises(BatchFullError):
            batch.delete(DocumentRef("todos", "one-too-many"))

    def test_committed_batch_is_single_use(self, store):
        batch = store.batch()
        batch.set(DocumentRef("todos", "t1"), {})
        batch.commit()
        with pytest.raises(RuntimeError):
            batch.set(DocumentRef("todos", "t2"), {})
        with pytest.raises(RuntimeError):
            batch.commit()


# ---------------------------------------------------------------------------
# Journal
# ---------------------------------------------------------------------------


class TestJournal:
    def test_records_successful_writes_only(self, store):
        store.set("users", "u1", {"ai": {"credits": 5}})
        store.update("users", "u1", {"ai.credits": Increment(10)})
        with pytest.raises(AlreadyExistsError):
            store.create("users", "u1", {})
        with pytest.raises(NotFoundError):
            store.update("users", "ghost", {"a": 1})
        store.delete("users", "u1")

        assert [kind for kind, _ in store.journal] == ["set", "update", "delete"]

    def test_reads_leave_journal_empty(self, store):
        store.get("users", "u1")
        store.query("users", [("email", "==", "a@example.com")])
        assert store.journal == []

    def test_batch_writes_recorded_after_commit(self, store):
        batch = store.batch()
        batch.set(DocumentRef("todos", "t1"), {"title": "milk"})
        batch.delete(DocumentRef("todos", "t2"))
        assert store.journal == []
        batch.commit()
        assert [kind for kind, _ in store.journal] == ["set", "delete"]

    def test_replay_merges_onto_newer_copy(self, store, tmp_path):
        # Another invocation's version of the file, written concurrently
        with DocumentStore(tmp_path / "other.db") as other:
            other.set("users", "u1", {"ai": {"credits": 100}})
            other.create("budget-alerts", "u2_2025_2", {"sentAt": "theirs"})

            store.set("users", "u1", {"ai": {"credits": 100}})
            store.update("users", "u1", {"ai.credits": Increment(5)})
            store.create("budget-alerts", "u1_2025_2", {"sentAt": "ours"})

            other.replay(store.journal)

            assert other.get("budget-alerts", "u1_2025_2") == {"sentAt": "ours"}
            assert other.get("budget-alerts", "u2_2025_2") == {"sentAt": "theirs"}
            assert other.get("users", "u1")["ai"]["credits"] == 105

    def test_replay_skips_lost_creates_and_updates(self, store, tmp_path):
        store.create("budget-alerts", "u1_2025_2", {"sentAt": "ours"})
        store.set("users", "u9", {"a": 1})
        store.update("users", "u9", {"a": 2})

        with DocumentStore(tmp_path / "other.db") as other:
            other.create("budget-alerts", "u1_2025_2", {"sentAt": "theirs"})
            applied = other.replay([store.journal[0], store.journal[2]])

            assert applied == 0
            assert other.get("budget-alerts", "u1_2025_2") == {"sentAt": "theirs"}
            assert other.get("users", "u9") is None
