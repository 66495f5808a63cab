import logging
import os
import sqlite3
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from config import settings
from errors import ConflictError

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE (explicit override, read through settings)
# 2) Per-process temp file
DATABASE_FILE = settings.database_file or os.path.join(
    tempfile.gettempdir(), f"library_{os.getpid()}.db"
)


def get_db_connection() -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; writes that must be atomic go
    through ``transaction()``, which opens an explicit transaction.
    """
    conn = sqlite3.connect(DATABASE_FILE, timeout=settings.db_timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run a unit of work inside ``BEGIN IMMEDIATE`` ... ``COMMIT``.

    ``BEGIN IMMEDIATE`` takes the write lock up front, so two writers on the
    same rows are serialized. A writer that cannot get the lock within the
    configured timeout fails with ``ConflictError``.
    """
    conn = get_db_connection()
    try:
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as exc:
            if _is_lock_error(exc):
                logger.warning(f"Could not acquire write lock: {exc}")
                raise ConflictError("The library database is busy. Please retry.") from exc
            raise
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.OperationalError as exc:
            _rollback(conn)
            if _is_lock_error(exc):
                logger.warning(f"Transaction lost a lock race: {exc}")
                raise ConflictError("Another update touched the same record. Please retry.") from exc
            raise
        except BaseException:
            _rollback(conn)
            raise
    finally:
        conn.close()


# ------------------------- Timestamps ------------------------- #
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as fixed-width UTC ISO-8601 so stored values sort as text."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ------------------------- Schema ------------------------- #
def create_tables() -> None:
    """Create the required tables if they do not exist yet."""
    conn = get_db_connection()
    try:
        # WAL lets readers continue while a lend/return transaction holds the write lock
        conn.execute("PRAGMA journal_mode=WAL;")
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                isbn TEXT UNIQUE NOT NULL,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                genre TEXT,
                description TEXT,
                published_date TEXT,
                copies_available INTEGER NOT NULL DEFAULT 0 CHECK(copies_available >= 0),
                is_deleted INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS members (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                member_id TEXT UNIQUE,
                nic TEXT UNIQUE NOT NULL,
                full_name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL,
                phone TEXT,
                address TEXT,
                date_of_birth TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # Append-only: rows are inserted by a lend and updated once by a return
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS lendings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                reader_id INTEGER NOT NULL,
                lend_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                is_returned INTEGER NOT NULL DEFAULT 0,
                fine_amount TEXT,
                lent_by TEXT,
                returned_by TEXT,
                notes TEXT,
                CHECK(due_date > lend_date),
                CHECK((is_returned = 1) = (return_date IS NOT NULL)),
                FOREIGN KEY (book_id) REFERENCES books(id),
                FOREIGN KEY (reader_id) REFERENCES members(id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS audit_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                action TEXT NOT NULL,
                performed_by TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                details TEXT
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_members_full_name ON members(full_name)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_lendings_book_id ON lendings(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_lendings_reader_id ON lendings(reader_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_lendings_open ON lendings(is_returned, due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_logs_timestamp ON audit_logs(timestamp DESC)")
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Point the module at ``db_file`` (when given) and create the schema."""
    global DATABASE_FILE
    if db_file:
        DATABASE_FILE = db_file
    create_tables()
