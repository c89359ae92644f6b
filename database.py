"""SQLite-backed document store.

Documents are JSON objects grouped into named collections and addressed by
id. The store offers exact-match queries, ordering, and single-document
atomic read-modify-write through :meth:`DocumentStore.atomic_update`. It does
not offer multi-document transactions; callers that touch two documents must
order their writes and compensate on failure.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from dotenv import load_dotenv

from errors import DocumentExists, StoreError

# Make sure .env is loaded before anything reads LIBRARY_DB_FILE.
load_dotenv()

logger = logging.getLogger(__name__)

COLLECTIONS = ("books", "loans", "users", "bookmarks", "ratings", "active_loans")

# A mutator receives the current document (id included) and returns the
# fields to merge, or None / {} to leave it untouched. Raising aborts the
# update and rolls it back.
Mutator = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]


def _encode(data: Dict[str, Any]) -> str:
    payload = {k: v for k, v in data.items() if k != "id"}
    return json.dumps(payload, ensure_ascii=False, default=str)


def _decode(doc_id: str, raw: str) -> Dict[str, Any]:
    data = json.loads(raw)
    data["id"] = doc_id
    return data


def _matches(doc: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, expected in filters.items():
        value = doc.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


class DocumentStore:
    """Collections of JSON documents in a single SQLite file."""

    def __init__(self, db_file: str, timeout: float = 30.0) -> None:
        self.db_file = db_file
        self.timeout = timeout

    # ------------------------- Connections ------------------------- #
    def get_db_connection(self) -> sqlite3.Connection:
        """Open a new autocommit connection. Transactions are started explicitly."""
        try:
            conn = sqlite3.connect(
                self.db_file,
                timeout=self.timeout,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            logger.exception(f"Could not open document store at {self.db_file}")
            raise StoreError("Document store is unavailable.") from exc
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Connection]:
        conn = self.get_db_connection()
        try:
            yield conn
        except sqlite3.Error as exc:
            logger.exception("Document store read failed")
            raise StoreError("Document store read failed.") from exc
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block under BEGIN IMMEDIATE so concurrent writers serialize."""
        conn = self.get_db_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            logger.exception("Document store write failed")
            raise StoreError("Document store write failed.") from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the documents table if it does not exist yet."""
        with self._reader() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (collection, id)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection)")

    def ping(self) -> bool:
        with self._reader() as conn:
            conn.execute("SELECT 1")
        return True

    # ------------------------- Document operations ------------------------- #
    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT id, data FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
        if row is None:
            return None
        return _decode(row["id"], row["data"])

    def create(self, collection: str, data: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        """Insert a new document and return its id.

        When ``doc_id`` is given the insert only succeeds if no document with
        that id exists, which gives callers a uniqueness constraint.
        """
        new_id = doc_id or uuid.uuid4().hex
        with self._transaction() as conn:
            try:
                conn.execute(
                    "INSERT INTO documents (collection, id, data) VALUES (?, ?, ?)",
                    (collection, new_id, _encode(data)),
                )
            except sqlite3.IntegrityError as exc:
                raise DocumentExists(collection, new_id) from exc
        return new_id

    def update(self, collection: str, doc_id: str, partial: Dict[str, Any]) -> bool:
        """Merge ``partial`` into the document. Returns False if it does not exist."""
        return self.atomic_update(collection, doc_id, lambda _current: partial) is not None

    def atomic_update(self, collection: str, doc_id: str, mutator: Mutator) -> Optional[Dict[str, Any]]:
        """Read, modify and write one document without lost updates.

        Returns the merged document, or None when it does not exist.
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id, data FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
            if row is None:
                return None
            current = _decode(row["id"], row["data"])
            changes = mutator(dict(current))
            if not changes:
                return current
            merged = {**current, **{k: v for k, v in changes.items() if k != "id"}}
            conn.execute(
                "UPDATE documents SET data = ? WHERE collection = ? AND id = ?",
                (_encode(merged), collection, doc_id),
            )
        return merged

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            )
            return cursor.rowcount > 0

    def delete_where(self, collection: str, doc_id: str, predicate: Callable[[Dict[str, Any]], bool]) -> bool:
        """Delete the document only if ``predicate`` holds for its current state."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id, data FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            ).fetchone()
            if row is None or not predicate(_decode(row["id"], row["data"])):
                return False
            conn.execute(
                "DELETE FROM documents WHERE collection = ? AND id = ?",
                (collection, doc_id),
            )
            return True

    def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return documents whose fields equal ``filters``.

        A filter value that is a list, tuple or set matches any of its members.
        Documents missing the ``order_by`` field sort last.
        """
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT id, data FROM documents WHERE collection = ? ORDER BY rowid",
                (collection,),
            ).fetchall()
        docs = [_decode(row["id"], row["data"]) for row in rows]
        if filters:
            docs = [d for d in docs if _matches(d, filters)]
        if order_by:
            present = [d for d in docs if d.get(order_by) is not None]
            missing = [d for d in docs if d.get(order_by) is None]
            present.sort(key=lambda d: d[order_by], reverse=descending)
            docs = present + missing
        if limit is not None:
            docs = docs[:limit]
        return docs

    def count(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> int:
        if not filters:
            with self._reader() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) FROM documents WHERE collection = ?",
                    (collection,),
                ).fetchone()
            return row[0]
        return len(self.query(collection, filters))

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
