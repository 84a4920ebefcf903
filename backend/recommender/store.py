from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional
import copy
import json
import logging
import sqlite3
import threading
import time

from backend.recommender.errors import StoreUnavailable

logger = logging.getLogger(__name__)

Doc = Dict[str, Any]


def _matches(doc: Doc, expected: Dict[str, Any]) -> bool:
    return all(doc.get(k) == v for k, v in expected.items())


class RecordStore(ABC):
    """
    Minimal document-store contract the pipeline relies on:
    find-by-key, upsert-by-key, insert-if-absent and a conditional
    update that only applies when the stored fields still hold the
    expected values.
    """

    @abstractmethod
    def find(self, collection: str, key: str) -> Optional[Doc]:
        ...

    @abstractmethod
    def find_all(self, collection: str, **equals: Any) -> List[Doc]:
        ...

    @abstractmethod
    def upsert(self, collection: str, key: str, doc: Doc) -> None:
        ...

    @abstractmethod
    def create(self, collection: str, key: str, doc: Doc) -> bool:
        """Insert doc unless key exists. Returns False when it already did."""

    @abstractmethod
    def conditional_update(
        self,
        collection: str,
        key: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> bool:
        """Apply changes only if the doc exists and matches expected."""


class MemoryRecordStore(RecordStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: Dict[str, Dict[str, Doc]] = {}

    def find(self, collection: str, key: str) -> Optional[Doc]:
        with self._lock:
            doc = self._data.get(collection, {}).get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def find_all(self, collection: str, **equals: Any) -> List[Doc]:
        with self._lock:
            docs = list(self._data.get(collection, {}).values())
            return [copy.deepcopy(d) for d in docs if _matches(d, equals)]

    def upsert(self, collection: str, key: str, doc: Doc) -> None:
        with self._lock:
            self._data.setdefault(collection, {})[key] = copy.deepcopy(doc)

    def create(self, collection: str, key: str, doc: Doc) -> bool:
        with self._lock:
            bucket = self._data.setdefault(collection, {})
            if key in bucket:
                return False
            bucket[key] = copy.deepcopy(doc)
            return True

    def conditional_update(
        self,
        collection: str,
        key: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> bool:
        with self._lock:
            doc = self._data.get(collection, {}).get(key)
            if doc is None or not _matches(doc, expected):
                return False
            doc.update(copy.deepcopy(changes))
            return True


class SqliteRecordStore(RecordStore):
    """Documents as JSON rows in the `records` table (see backend/app/schema.py)."""

    def __init__(self, connect: Callable[[], sqlite3.Connection]):
        self._connect = connect

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"cannot open record store: {exc}") from exc
        # explicit BEGIN/COMMIT below
        conn.isolation_level = None
        try:
            yield conn
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StoreUnavailable(str(exc)) from exc
        finally:
            conn.close()

    def find(self, collection: str, key: str) -> Optional[Doc]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT doc_json FROM records WHERE collection = ? AND key = ?",
                (collection, key),
            ).fetchone()
        return json.loads(row["doc_json"]) if row else None

    def find_all(self, collection: str, **equals: Any) -> List[Doc]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT doc_json FROM records WHERE collection = ? ORDER BY key",
                (collection,),
            ).fetchall()
        docs = [json.loads(r["doc_json"]) for r in rows]
        return [d for d in docs if _matches(d, equals)]

    def upsert(self, collection: str, key: str, doc: Doc) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO records(collection, key, doc_json, updated_at)
                VALUES(?,?,?,?)
                ON CONFLICT(collection, key)
                DO UPDATE SET doc_json = excluded.doc_json, updated_at = excluded.updated_at
                """,
                (collection, key, json.dumps(doc), time.time()),
            )

    def create(self, collection: str, key: str, doc: Doc) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO records(collection, key, doc_json, updated_at)
                VALUES(?,?,?,?)
                """,
                (collection, key, json.dumps(doc), time.time()),
            )
            return cur.rowcount == 1

    def conditional_update(
        self,
        collection: str,
        key: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> bool:
        with self._conn() as conn:
            # write lock up front so the check and the write see the same row
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT doc_json FROM records WHERE collection = ? AND key = ?",
                (collection, key),
            ).fetchone()
            if row is None:
                conn.execute("ROLLBACK")
                return False

            doc = json.loads(row["doc_json"])
            if not _matches(doc, expected):
                conn.execute("ROLLBACK")
                logger.debug("conditional update lost on %s/%s", collection, key)
                return False

            doc.update(changes)
            conn.execute(
                "UPDATE records SET doc_json = ?, updated_at = ? WHERE collection = ? AND key = ?",
                (json.dumps(doc), time.time(), collection, key),
            )
            conn.execute("COMMIT")
            return True
