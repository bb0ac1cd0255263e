import logging
import os
import sqlite3
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from config import settings

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE (explicit override, read at call time)
# 2) settings.data_file (LIBRARY_DATA_FILE / .env / "library.db")
DATABASE_FILE = settings.data_file

SCHEMA_VERSION = 1

BOOKS = "books"
STUDENTS = "students"
LOANS = "loans"


@dataclass(frozen=True)
class Collection:
    """Maps a collection's record fields onto the columns of its table."""

    name: str
    columns: Tuple[Tuple[str, str], ...]
    unique: Tuple[str, ...] = ()
    indexed: Tuple[str, ...] = ()
    column_by_field: Dict[str, str] = field(init=False, repr=False, compare=False)
    field_by_column: Dict[str, str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "column_by_field", dict(self.columns))
        object.__setattr__(self, "field_by_column", {c: f for f, c in self.columns})

    @property
    def fields(self) -> List[str]:
        return [f for f, _ in self.columns]


COLLECTIONS: Dict[str, Collection] = {
    BOOKS: Collection(
        name=BOOKS,
        columns=(
            ("id", "id"),
            ("isbn", "isbn"),
            ("title", "title"),
            ("author", "author"),
            ("totalCopies", "total_copies"),
            ("availableCopies", "available_copies"),
        ),
        unique=("isbn",),
        indexed=("title", "author"),
    ),
    STUDENTS: Collection(
        name=STUDENTS,
        columns=(
            ("id", "id"),
            ("registrationNumber", "registration_number"),
            ("name", "name"),
            ("className", "class_name"),
        ),
        unique=("registrationNumber",),
        indexed=("name",),
    ),
    LOANS: Collection(
        name=LOANS,
        columns=(
            ("id", "id"),
            ("bookId", "book_id"),
            ("studentId", "student_id"),
            ("loanDate", "loan_date"),
            ("dueDate", "due_date"),
            ("returnDate", "return_date"),
            ("status", "status"),
        ),
        indexed=("bookId", "studentId", "status"),
    ),
}


def resolve_database_file(db_file: Optional[str] = None) -> str:
    """Pick the database file for a new store."""
    return db_file or os.environ.get("LIBRARY_DB_FILE") or DATABASE_FILE


def get_db_connection(db_file: str) -> sqlite3.Connection:
    """Open a connection in autocommit mode; transactions are started explicitly."""
    conn = sqlite3.connect(db_file, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if db_file != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def create_tables(conn: sqlite3.Connection) -> None:
    """Create the three collections and their indexes if they do not exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS books (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            isbn TEXT NOT NULL CHECK (isbn <> ''),
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            total_copies INTEGER NOT NULL CHECK (total_copies >= 0),
            available_copies INTEGER NOT NULL
                CHECK (available_copies >= 0 AND available_copies <= total_copies)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS students (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            registration_number TEXT NOT NULL CHECK (registration_number <> ''),
            name TEXT NOT NULL,
            class_name TEXT
        )
    """)

    # No foreign keys: deleting a book or student leaves its loans in place.
    # Dates must start with a real YYYY-MM-DD calendar date.
    conn.execute("""
        CREATE TABLE IF NOT EXISTS loans (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            book_id INTEGER NOT NULL,
            student_id INTEGER NOT NULL,
            loan_date TEXT NOT NULL CHECK (date(substr(loan_date, 1, 10)) IS substr(loan_date, 1, 10)),
            due_date TEXT NOT NULL CHECK (date(substr(due_date, 1, 10)) IS substr(due_date, 1, 10)),
            return_date TEXT
                CHECK (return_date IS NULL OR date(substr(return_date, 1, 10)) IS substr(return_date, 1, 10)),
            status TEXT NOT NULL CHECK (status IN ('active', 'returned')),
            CHECK ((status = 'returned') = (return_date IS NOT NULL))
        )
    """)

    for collection in COLLECTIONS.values():
        for name in collection.unique:
            column = collection.column_by_field[name]
            conn.execute(
                f"CREATE UNIQUE INDEX IF NOT EXISTS idx_{collection.name}_{column} "
                f"ON {collection.name}({column})"
            )
        for name in collection.indexed:
            column = collection.column_by_field[name]
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{collection.name}_{column} "
                f"ON {collection.name}({column})"
            )


def initialize_database(conn: sqlite3.Connection) -> None:
    """Create the schema on first use. Safe to call any number of times."""
    version = conn.execute("PRAGMA user_version").fetchone()[0]
    conn.execute("BEGIN IMMEDIATE")
    try:
        create_tables(conn)
        if version < SCHEMA_VERSION:
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.execute("COMMIT")
    except sqlite3.Error:
        conn.execute("ROLLBACK")
        raise
    if version < SCHEMA_VERSION:
        logger.info(f"Database schema created (version {SCHEMA_VERSION})")
