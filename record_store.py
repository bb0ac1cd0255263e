"""Durable keyed storage for the books, students and loans collections.

Records cross this boundary as plain dicts keyed by their persisted field
names (``totalCopies``, ``registrationNumber``, ``bookId`` ...). Every dict
handed out is a fresh copy; changing it has no effect until it is saved.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Mapping
from contextlib import contextmanager
from threading import RLock
from typing import Any, Dict, Iterator, List, Optional, Sequence

from database import COLLECTIONS, Collection, get_db_connection, initialize_database, resolve_database_file
from errors import ConstraintViolation, StorageFault

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
Snapshot = Dict[str, List[Record]]


def _collection(name: str) -> Collection:
    try:
        return COLLECTIONS[name]
    except KeyError:
        raise ValueError(f"Unknown collection: {name}") from None


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _row_to_record(collection: Collection, row: sqlite3.Row) -> Record:
    return {collection.field_by_column[key]: row[key] for key in row.keys()}


class Transaction:
    """Handle for the reads and writes grouped inside one store transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self.aborted = False

    def abort(self) -> None:
        """Discard every write made through this handle when the block exits."""
        self.aborted = True

    # ------------------------- Reads ------------------------- #
    def get(self, name: str, record_id: Any) -> Optional[Record]:
        collection = _collection(name)
        row = self._conn.execute(
            f"SELECT * FROM {collection.name} WHERE id = ?", (record_id,)
        ).fetchone()
        return _row_to_record(collection, row) if row else None

    def get_all(self, name: str) -> List[Record]:
        collection = _collection(name)
        rows = self._conn.execute(f"SELECT * FROM {collection.name} ORDER BY id").fetchall()
        return [_row_to_record(collection, row) for row in rows]

    def find_by(self, name: str, field: str, value: Any) -> List[Record]:
        collection = _collection(name)
        column = collection.column_by_field.get(field)
        if column is None:
            raise ValueError(f"Unknown field {field} in {name}")
        rows = self._conn.execute(
            f"SELECT * FROM {collection.name} WHERE {column} = ? ORDER BY id", (value,)
        ).fetchall()
        return [_row_to_record(collection, row) for row in rows]

    def search(self, name: str, query: str, fields: Sequence[str]) -> List[Record]:
        collection = _collection(name)
        columns = [collection.column_by_field[f] for f in fields]
        where = " OR ".join(f"{column} LIKE ? ESCAPE '\\'" for column in columns)
        rows = self._conn.execute(
            f"SELECT * FROM {collection.name} WHERE {where} ORDER BY id",
            tuple(_like_pattern(query) for _ in columns),
        ).fetchall()
        return [_row_to_record(collection, row) for row in rows]

    def count(self, name: str) -> int:
        collection = _collection(name)
        return self._conn.execute(f"SELECT COUNT(*) FROM {collection.name}").fetchone()[0]

    # ------------------------- Writes ------------------------- #
    def put(self, name: str, record: Mapping) -> int:
        """Insert the record, or update it in place when it carries an id."""
        collection = _collection(name)
        if not isinstance(record, Mapping):
            raise StorageFault(f"Cannot store {type(record).__name__} in {name}: not a record")

        record_id = record.get("id")
        fields = [f for f in collection.fields if f != "id"]
        values = [record.get(f) for f in fields]
        columns = [collection.column_by_field[f] for f in fields]

        try:
            if record_id is None:
                placeholders = ", ".join("?" for _ in columns)
                cursor = self._conn.execute(
                    f"INSERT INTO {collection.name} ({', '.join(columns)}) VALUES ({placeholders})",
                    values,
                )
                return cursor.lastrowid
            placeholders = ", ".join("?" for _ in range(len(columns) + 1))
            updates = ", ".join(f"{column} = excluded.{column}" for column in columns)
            self._conn.execute(
                f"INSERT INTO {collection.name} (id, {', '.join(columns)}) VALUES ({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates}",
                [record_id, *values],
            )
            return record_id
        except sqlite3.IntegrityError as exc:
            violated = self._unique_field(collection, exc)
            if violated is None:
                raise
            raise ConstraintViolation(name, violated, record.get(violated)) from exc
        except UnicodeEncodeError as exc:
            raise StorageFault(f"Cannot store text in {name}: {exc}") from exc

    def delete(self, name: str, record_id: Any) -> None:
        collection = _collection(name)
        self._conn.execute(f"DELETE FROM {collection.name} WHERE id = ?", (record_id,))

    def clear(self, name: str) -> None:
        collection = _collection(name)
        self._conn.execute(f"DELETE FROM {collection.name}")

    def replace_all(self, snapshot: Mapping) -> Dict[str, int]:
        """Clear every collection, then insert the snapshot's records as given."""
        if not isinstance(snapshot, Mapping):
            raise StorageFault("Snapshot is not a mapping of collections")
        for name in COLLECTIONS:
            self.clear(name)
        counts: Dict[str, int] = {}
        for name in COLLECTIONS:
            records = snapshot.get(name) or []
            for record in records:
                self.put(name, record)
            counts[name] = len(records)
        return counts

    @staticmethod
    def _unique_field(collection: Collection, exc: sqlite3.IntegrityError) -> Optional[str]:
        # sqlite reports "UNIQUE constraint failed: books.isbn"
        message = str(exc)
        prefix = "UNIQUE constraint failed: "
        if not message.startswith(prefix):
            return None
        column = message[len(prefix):].split(",")[0].strip().split(".")[-1]
        return collection.field_by_column.get(column, column)


class RecordStore:
    """Owns the single database connection of the application.

    The connection is shared across threads; transactions hold ``_lock`` and
    run one at a time.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = resolve_database_file(db_file)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = RLock()

    def initialize(self) -> "RecordStore":
        """Open the database and create the schema. Safe to call repeatedly."""
        with self._lock:
            if self._conn is None:
                try:
                    conn = get_db_connection(self.db_file)
                    initialize_database(conn)
                except sqlite3.Error as exc:
                    raise StorageFault(f"Could not open database {self.db_file}: {exc}") from exc
                self._conn = conn
                logger.debug(f"Record store opened: {self.db_file}")
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextmanager
    def transaction(self, write: bool = True) -> Iterator[Transaction]:
        """Group reads and writes into one all-or-nothing unit.

        The block commits when it exits normally. It rolls back when the block
        raises or calls ``Transaction.abort()``. sqlite errors surface as
        ``StorageFault``. Other threads wait until the block has finished.
        """
        with self._lock:
            conn = self.initialize()._conn
            try:
                conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            except sqlite3.Error as exc:
                raise StorageFault(f"Could not start transaction: {exc}") from exc

            tx = Transaction(conn)
            try:
                yield tx
            except sqlite3.Error as exc:
                self._rollback(conn)
                raise StorageFault(str(exc)) from exc
            except BaseException:
                self._rollback(conn)
                raise

            if tx.aborted:
                self._rollback(conn)
                return
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback(conn)
                raise StorageFault(f"Commit failed: {exc}") from exc

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    # ------------------------- Single-record operations ------------------------- #
    def save(self, collection: str, record: Mapping) -> int:
        with self.transaction() as tx:
            return tx.put(collection, record)

    def get_all(self, collection: str) -> List[Record]:
        with self.transaction(write=False) as tx:
            return tx.get_all(collection)

    def get_by_id(self, collection: str, record_id: Any) -> Optional[Record]:
        with self.transaction(write=False) as tx:
            return tx.get(collection, record_id)

    def find_by(self, collection: str, field: str, value: Any) -> List[Record]:
        with self.transaction(write=False) as tx:
            return tx.find_by(collection, field, value)

    def search(self, collection: str, query: str, fields: Sequence[str]) -> List[Record]:
        with self.transaction(write=False) as tx:
            return tx.search(collection, query, fields)

    def count(self, collection: str) -> int:
        with self.transaction(write=False) as tx:
            return tx.count(collection)

    def delete(self, collection: str, record_id: Any) -> None:
        with self.transaction() as tx:
            tx.delete(collection, record_id)

    # ------------------------- Whole-database operations ------------------------- #
    def export_all(self) -> Snapshot:
        """Read all three collections inside one read transaction."""
        with self.transaction(write=False) as tx:
            return {name: tx.get_all(name) for name in COLLECTIONS}

    def replace_all(self, snapshot: Mapping) -> Dict[str, int]:
        with self.transaction() as tx:
            return tx.replace_all(snapshot)
