import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional

from config import settings
from errors import ConflictError
from storage import TABLES, Storage, _filter_value

logger = logging.getLogger(__name__)

# Default database file; LIBRARY_DB_FILE overrides it.
DATABASE_FILE = settings.database_file

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'student' CHECK(role IN ('student', 'faculty', 'admin')),
        max_books INTEGER NOT NULL DEFAULT 4,
        borrowed_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS books (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        author TEXT NOT NULL,
        publisher TEXT NOT NULL DEFAULT '',
        isbn TEXT NOT NULL UNIQUE,
        year INTEGER,
        edition TEXT,
        description TEXT NOT NULL DEFAULT '',
        subjects TEXT,
        location TEXT NOT NULL DEFAULT '',
        copies_total INTEGER NOT NULL DEFAULT 1,
        copies_available INTEGER NOT NULL DEFAULT 1
            CHECK(copies_available >= 0 AND copies_available <= copies_total),
        cover_image TEXT,
        added_by INTEGER REFERENCES users(id),
        added_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS book_transactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        book_id INTEGER NOT NULL REFERENCES books(id),
        user_id INTEGER NOT NULL REFERENCES users(id),
        issue_date TIMESTAMP NOT NULL,
        due_date TIMESTAMP NOT NULL,
        return_date TIMESTAMP,
        fine_amount REAL DEFAULT 0,
        fine_paid INTEGER DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'active'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS book_reservations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        book_id INTEGER NOT NULL REFERENCES books(id),
        user_id INTEGER NOT NULL REFERENCES users(id),
        reservation_date TIMESTAMP NOT NULL,
        expiry_date TIMESTAMP NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        notified_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users(id),
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        type TEXT NOT NULL,
        read INTEGER DEFAULT 0,
        created_at TIMESTAMP NOT NULL,
        related_data TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS book_reviews (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        book_id INTEGER NOT NULL REFERENCES books(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id),
        rating INTEGER NOT NULL CHECK(rating >= 1 AND rating <= 5),
        review TEXT,
        created_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS courses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        code TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        description TEXT,
        department TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS course_books (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        course_id INTEGER NOT NULL REFERENCES courses(id),
        book_id INTEGER NOT NULL REFERENCES books(id),
        added_by INTEGER NOT NULL REFERENCES users(id),
        priority INTEGER NOT NULL DEFAULT 1,
        is_required INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS research_papers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        author TEXT NOT NULL,
        journal TEXT,
        publish_date DATE NOT NULL,
        subject TEXT NOT NULL,
        abstract TEXT,
        file_path TEXT NOT NULL,
        uploaded_by INTEGER NOT NULL REFERENCES users(id),
        uploaded_at TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS recommendations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL REFERENCES users(id),
        book_id INTEGER NOT NULL REFERENCES books(id),
        reason TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        viewed INTEGER DEFAULT 0
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)",
    "CREATE INDEX IF NOT EXISTS idx_books_author ON books(author)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_user ON book_transactions(user_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_book ON book_transactions(book_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_reservations_book ON book_reservations(book_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_reservations_user ON book_reservations(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_course_books_course ON course_books(course_id)",
]


def _fold(value: Optional[str]) -> Optional[str]:
    return value.lower() if isinstance(value, str) else value


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database."""
    conn = sqlite3.connect(db_file or DATABASE_FILE, check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    # SQLite's lower() only folds ASCII
    conn.create_function("fold", 1, _fold, deterministic=True)
    return conn


def create_tables(conn: sqlite3.Connection) -> None:
    """Create the tables and indexes if they do not exist yet."""
    cursor = conn.cursor()
    for statement in SCHEMA:
        cursor.execute(statement)
    for statement in INDEXES:
        cursor.execute(statement)


def initialize_database(db_file: Optional[str] = None) -> sqlite3.Connection:
    conn = get_db_connection(db_file)
    create_tables(conn)
    return conn


def _encode(value: Any) -> Any:
    value = _filter_value(value)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False)
    return value


class SqliteStorage(Storage):
    """Durable backend on a single sqlite3 connection.

    Statements outside ``transaction()`` autocommit; inside it they share one
    BEGIN/COMMIT and are rolled back together on error.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or DATABASE_FILE
        self._lock = threading.RLock()
        self._depth = 0
        self._conn = initialize_database(self.db_file)
        logger.debug("SQLite storage opened at %s", self.db_file)

    # ------------------------- Primitives ------------------------- #
    def _row_values(self, record: Any) -> Dict[str, Any]:
        data = record.to_dict()
        data.pop("id", None)
        return {k: _encode(v) for k, v in data.items()}

    def _insert(self, table: str, record: Any) -> Any:
        values = self._row_values(record)
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        with self._lock:
            try:
                cursor = self._conn.execute(
                    f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                    tuple(values.values()),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Could not insert into {table}: {e}") from e
            record.id = cursor.lastrowid
            return record

    def _get(self, table: str, record_id: int) -> Optional[Any]:
        with self._lock:
            row = self._conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return TABLES[table].from_dict(dict(row)) if row else None

    def _replace(self, table: str, record: Any) -> Any:
        values = self._row_values(record)
        assignments = ", ".join(f"{k} = ?" for k in values)
        with self._lock:
            try:
                self._conn.execute(
                    f"UPDATE {table} SET {assignments} WHERE id = ?",
                    (*values.values(), record.id),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Could not update {table} {record.id}: {e}") from e
            return record

    def _all(self, table: str) -> List[Any]:
        return self._select(table)

    def _select(self, table: str, **filters: Any) -> List[Any]:
        wanted = {k: _encode(v) for k, v in filters.items() if v is not None}
        sql = f"SELECT * FROM {table}"
        if wanted:
            sql += " WHERE " + " AND ".join(f"{k} = ?" for k in wanted)
        sql += " ORDER BY id"
        with self._lock:
            rows = self._conn.execute(sql, tuple(wanted.values())).fetchall()
        return [TABLES[table].from_dict(dict(row)) for row in rows]

    def search_books(self, query: str) -> List[Any]:
        pattern = _like_pattern(_fold(query))
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM books WHERE fold(title) LIKE ? ESCAPE '\\' OR fold(author) LIKE ? ESCAPE '\\'"
                " OR fold(isbn) LIKE ? ESCAPE '\\' ORDER BY id",
                (pattern, pattern, pattern),
            ).fetchall()
        return [TABLES["books"].from_dict(dict(row)) for row in rows]

    def count_books(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._depth == 0:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self._conn.execute("ROLLBACK")
                    logger.debug("Rolled back SQLite unit of work")
                raise
            else:
                self._depth -= 1
                if self._depth == 0:
                    self._conn.execute("COMMIT")

    def close(self) -> None:
        with self._lock:
            self._conn.close()
