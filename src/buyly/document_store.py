"""Document store backed by SQLite.

Documents are JSON objects addressed by collection name and string id and
kept in a single ``documents`` table. The store offers the subset of a
managed document database the handlers rely on: point reads and writes,
create-only-if-absent, field-path updates with array/increment sentinels,
equality and range queries, a count aggregate and size-bounded atomic write
batches.

On Lambda the database file lives under /tmp and is synced to S3 around
each invocation (see ``buyly.s3``). Every successful write is also appended
to ``DocumentStore.journal`` so a run's writes can be replayed onto a newer
copy of the file when another invocation uploaded first.
"""

import copy
import json
import sqlite3
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from buyly.errors import AlreadyExistsError, NotFoundError
from buyly.log import get_logger
from buyly.utils import data_dir

logger = get_logger(__name__)

MAX_BATCH_SIZE = 500

Filter = Tuple[str, str, Any]
JournalEntry = Tuple[str, Tuple[Any, ...]]

_SQL_OPERATORS = {"==": "=", "!=": "!=", "<": "<", "<=": "<=", ">": ">", ">=": ">="}


class BatchFullError(ValueError):
    """Raised when staging more operations than a batch can hold."""


@dataclass(frozen=True)
class DocumentRef:
    collection: str
    id: str


@dataclass
class DocumentSnapshot:
    ref: DocumentRef
    data: Dict[str, Any]

    @property
    def id(self) -> str:
        return self.ref.id


class ArrayUnion:
    """Append values to an array field, skipping ones already present."""

    def __init__(self, *values):
        self.values = tuple(values)

    def __eq__(self, other):
        return isinstance(other, ArrayUnion) and other.values == self.values

    def __repr__(self):
        return f"ArrayUnion{self.values!r}"


class ArrayRemove:
    """Remove every occurrence of the values from an array field."""

    def __init__(self, *values):
        self.values = tuple(values)

    def __eq__(self, other):
        return isinstance(other, ArrayRemove) and other.values == self.values

    def __repr__(self):
        return f"ArrayRemove{self.values!r}"


@dataclass(frozen=True)
class Increment:
    amount: float


class _DeleteField:
    def __repr__(self):
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()


def _json_path(field: str) -> str:
    return "$" + "".join(f'."{part}"' for part in field.split("."))


def _sql_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def _resolve_sentinel(current: Any, value: Any) -> Any:
    if isinstance(value, ArrayUnion):
        items = list(current) if isinstance(current, list) else []
        for v in value.values:
            if v not in items:
                items.append(v)
        return items
    if isinstance(value, ArrayRemove):
        items = list(current) if isinstance(current, list) else []
        return [v for v in items if v not in value.values]
    if isinstance(value, Increment):
        base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
        return base + value.amount
    return value


def apply_field_updates(data: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``data`` with dotted-path ``fields`` applied."""
    result = copy.deepcopy(data)
    for path, value in fields.items():
        parts = path.split(".")
        node = result
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        leaf = parts[-1]
        if value is DELETE_FIELD:
            node.pop(leaf, None)
        else:
            node[leaf] = _resolve_sentinel(node.get(leaf), value)
    return result


def _merge(base: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        elif value is DELETE_FIELD:
            merged.pop(key, None)
        else:
            merged[key] = _resolve_sentinel(merged.get(key), value)
    return merged


class DocumentStore:
    """JSON document store with Firestore-like collection semantics."""

    def __init__(self, db_path: Optional[Path] = None):
        """
        Initialize the store.

        Args:
            db_path: Path to the database file. If None, uses default location.
        """
        if db_path is None:
            db_path = data_dir("buyly.db")

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; multi-statement writes open explicit transactions
        self.conn = sqlite3.connect(self.db_path, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.journal: List[JournalEntry] = []
        self._create_tables()

    def _create_tables(self):
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                id TEXT NOT NULL,
                data TEXT NOT NULL,
                PRIMARY KEY (collection, id)
            )
        """)

    # ------------------------------------------------------------------
    # Single-document operations
    # ------------------------------------------------------------------

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Get a document's data, or None if it doesn't exist."""
        row = self.conn.execute(
            "SELECT data FROM documents WHERE collection = ? AND id = ?",
            (collection, doc_id),
        ).fetchone()
        return json.loads(row["data"]) if row else None

    def exists(self, collection: str, doc_id: str) -> bool:
        return self.get(collection, doc_id) is not None

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        """Write a document, replacing it unless ``merge`` is set."""
        with self._transaction():
            self._apply_set(collection, doc_id, data, merge)
        self.journal.append(("set", (collection, doc_id, data, merge)))

    def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Create a document only if it does not already exist.

        Raises:
            AlreadyExistsError: if a document with this id exists
        """
        try:
            self.conn.execute(
                "INSERT INTO documents (collection, id, data) VALUES (?, ?, ?)",
                (collection, doc_id, json.dumps(_merge({}, data))),
            )
        except sqlite3.IntegrityError:
            raise AlreadyExistsError(f"Document {collection}/{doc_id} already exists")
        self.journal.append(("create", (collection, doc_id, data)))

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Apply dotted-path field updates to an existing document.

        Raises:
            NotFoundError: if the document does not exist
        """
        with self._transaction():
            self._apply_update(collection, doc_id, fields)
        self.journal.append(("update", (collection, doc_id, fields)))

    def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document. Deleting a missing document is a no-op."""
        self._apply_delete(collection, doc_id)
        self.journal.append(("delete", (collection, doc_id)))

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Create a document with a generated id and return the id."""
        doc_id = uuid.uuid4().hex[:20]
        self.create(collection, doc_id, data)
        return doc_id

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _where(self, filters: Sequence[Filter]) -> Tuple[str, List[Any]]:
        clauses = []
        params: List[Any] = []
        for field, op, value in filters:
            path = _json_path(field)
            if op == "array-contains":
                clauses.append(
                    "EXISTS (SELECT 1 FROM json_each(documents.data, ?) WHERE json_each.value = ?)"
                )
                params.extend([path, _sql_value(value)])
            elif op == "in":
                values = list(value)
                if not values:
                    clauses.append("0")
                    continue
                placeholders = ", ".join("?" for _ in values)
                clauses.append(f"json_extract(data, ?) IN ({placeholders})")
                params.append(path)
                params.extend(_sql_value(v) for v in values)
            elif op in ("==", "!=") and value is None:
                clauses.append(
                    f"json_extract(data, ?) IS {'NOT ' if op == '!=' else ''}NULL"
                )
                params.append(path)
            elif op in _SQL_OPERATORS:
                clauses.append(f"json_extract(data, ?) {_SQL_OPERATORS[op]} ?")
                params.extend([path, _sql_value(value)])
            else:
                raise ValueError(f"Unsupported query operator: {op!r}")
        sql = " AND ".join(clauses)
        return (f" AND {sql}" if sql else ""), params

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        """Get all documents in a collection matching every filter.

        Args:
            collection: Collection name
            filters: (field_path, operator, value) triples, ANDed together
            limit: Maximum number of documents to return

        Returns:
            Matching documents ordered by id
        """
        where, params = self._where(filters)
        sql = f"SELECT id, data FROM documents WHERE collection = ?{where} ORDER BY id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        rows = self.conn.execute(sql, [collection, *params]).fetchall()
        return [
            DocumentSnapshot(DocumentRef(collection, row["id"]), json.loads(row["data"]))
            for row in rows
        ]

    def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        """Count the documents in a collection matching every filter."""
        where, params = self._where(filters)
        row = self.conn.execute(
            f"SELECT COUNT(*) AS n FROM documents WHERE collection = ?{where}",
            [collection, *params],
        ).fetchone()
        return row["n"]

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def batch(self) -> "WriteBatch":
        """Start a new atomic write batch."""
        return WriteBatch(self)

    def _transaction(self):
        return _Transaction(self.conn)

    def _apply_set(self, collection, doc_id, data, merge):
        if merge:
            existing = self.get(collection, doc_id) or {}
            data = _merge(existing, data)
        else:
            data = _merge({}, data)
        self.conn.execute(
            "INSERT OR REPLACE INTO documents (collection, id, data) VALUES (?, ?, ?)",
            (collection, doc_id, json.dumps(data)),
        )

    def _apply_update(self, collection, doc_id, fields):
        existing = self.get(collection, doc_id)
        if existing is None:
            raise NotFoundError(f"Document {collection}/{doc_id} not found")
        self.conn.execute(
            "UPDATE documents SET data = ? WHERE collection = ? AND id = ?",
            (json.dumps(apply_field_updates(existing, fields)), collection, doc_id),
        )

    def _apply_delete(self, collection, doc_id):
        self.conn.execute(
            "DELETE FROM documents WHERE collection = ? AND id = ?",
            (collection, doc_id),
        )

    # ------------------------------------------------------------------
    # Journal
    # ------------------------------------------------------------------

    def replay(self, journal: Sequence[JournalEntry]) -> int:
        """Re-apply writes recorded by another store, in order.

        A create whose document now exists, or an update whose document is
        gone, lost to a concurrent write and is skipped.

        Returns:
            The number of writes applied
        """
        applied = 0
        for kind, args in journal:
            try:
                getattr(self, kind)(*args)
                applied += 1
            except (AlreadyExistsError, NotFoundError) as e:
                logger.warning("Skipping replayed %s: %s", kind, e.message)
        return applied

    def close(self):
        """Close the database connection."""
        self.conn.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()


class _Transaction:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def __enter__(self):
        self.conn.execute("BEGIN IMMEDIATE")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.conn.execute("COMMIT")
        else:
            self.conn.execute("ROLLBACK")
        return False


class WriteBatch:
    """Up to MAX_BATCH_SIZE writes committed in one transaction.

    A batch is single-use: once committed it rejects further writes, and the
    caller starts a new one with ``DocumentStore.batch()``.
    """

    def __init__(self, store: DocumentStore, max_size: int = MAX_BATCH_SIZE):
        self._store = store
        self._max_size = min(max_size, MAX_BATCH_SIZE)
        self._ops: List[Tuple[str, DocumentRef, Any]] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._ops)

    @property
    def is_full(self) -> bool:
        return len(self._ops) >= self._max_size

    def _stage(self, kind: str, ref: DocumentRef, payload: Any = None) -> "WriteBatch":
        if self._committed:
            raise RuntimeError("Cannot write to a batch that has already been committed")
        if self.is_full:
            raise BatchFullError(f"A write batch holds at most {self._max_size} operations")
        self._ops.append((kind, ref, payload))
        return self

    def set(self, ref: DocumentRef, data: Dict[str, Any], merge: bool = False) -> "WriteBatch":
        return self._stage("set", ref, (data, merge))

    def update(self, ref: DocumentRef, fields: Dict[str, Any]) -> "WriteBatch":
        return self._stage("update", ref, fields)

    def delete(self, ref: DocumentRef) -> "WriteBatch":
        return self._stage("delete", ref)

    def commit(self) -> int:
        """Apply every staged write atomically. Returns the number of writes.

        Raises:
            NotFoundError: if an update targets a missing document; nothing
                in the batch is applied in that case
        """
        if self._committed:
            raise RuntimeError("Batch has already been committed")
        with self._store._transaction():
            for kind, ref, payload in self._ops:
                if kind == "set":
                    data, merge = payload
                    self._store._apply_set(ref.collection, ref.id, data, merge)
                elif kind == "update":
                    self._store._apply_update(ref.collection, ref.id, payload)
                else:
                    self._store._apply_delete(ref.collection, ref.id)
        self._committed = True
        for kind, ref, payload in self._ops:
            if kind == "set":
                data, merge = payload
                self._store.journal.append(("set", (ref.collection, ref.id, data, merge)))
            elif kind == "update":
                self._store.journal.append(("update", (ref.collection, ref.id, payload)))
            else:
                self._store.journal.append(("delete", (ref.collection, ref.id)))
        return len(self._ops)


def refs(snapshots: Iterable[DocumentSnapshot]) -> List[DocumentRef]:
    return [snap.ref for snap in snapshots]
