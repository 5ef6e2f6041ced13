import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from dotenv import load_dotenv

from circulation.errors import ConcurrencyConflict

# Make sure .env is read before DATABASE_FILE is resolved, regardless of import order.
load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE", "library.db")

# SQLite error messages that mean "another writer holds the lock".
_LOCK_MESSAGES = ("database is locked", "database is busy", "database table is locked")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO string.

    A fixed width keeps lexical order equal to chronological order, which the
    queue ordering and overdue queries rely on.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return None
    return datetime.fromisoformat(raw)


def is_lock_error(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and any(
        msg in str(exc).lower() for msg in _LOCK_MESSAGES
    )


class Database:
    """Explicit storage handle for the circulation tables.

    Every call to :meth:`connect` opens a fresh connection, so the handle can be
    shared between threads. Write operations go through :meth:`transaction`,
    which takes SQLite's write lock up front (``BEGIN IMMEDIATE``) and commits or
    rolls back as one unit.
    """

    def __init__(self, path: Optional[str] = None, busy_timeout: float = 5.0) -> None:
        self.path = path or DATABASE_FILE
        self.busy_timeout = busy_timeout

    def connect(self) -> sqlite3.Connection:
        # isolation_level=None: no implicit BEGIN, transactions are explicit.
        conn = sqlite3.connect(
            self.path,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA temp_store=MEMORY;")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed block as one atomic write transaction."""
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    def run_with_retry(self, operation, attempts: int = 3, backoff: float = 0.05, name: str = "operation"):
        """Run ``operation(conn)`` in a transaction, retrying on lock contention.

        Each failed attempt has already been rolled back by :meth:`transaction`,
        so the retry starts from a clean state. Any other error propagates.
        """
        attempts = max(attempts, 1)
        for attempt in range(attempts):
            try:
                with self.transaction() as conn:
                    return operation(conn)
            except sqlite3.OperationalError as exc:
                if not is_lock_error(exc):
                    raise
                if attempt < attempts - 1:
                    delay = backoff * (2 ** attempt)
                    logger.warning(f"{name}: database busy, retrying in {delay:.3f}s ({attempt + 1}/{attempts})")
                    time.sleep(delay)
                    continue
                raise ConcurrencyConflict(
                    f"{name} could not acquire the database lock after {attempts} attempt(s)."
                ) from exc

    def ping(self) -> bool:
        try:
            with self.reader() as conn:
                conn.execute("SELECT 1")
            return True
        except sqlite3.Error:
            return False

    def initialize(self) -> None:
        """Create the database file, tables and indexes if missing."""
        create_tables(self)


def create_tables(db: Database) -> None:
    """Create the circulation tables if they do not exist."""
    conn = db.connect()
    try:
        # WAL lets readers run while a writer holds the lock.
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("BEGIN IMMEDIATE")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS books (
                book_id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                total_copies INTEGER NOT NULL DEFAULT 0 CHECK(total_copies >= 0),
                available_copies INTEGER NOT NULL DEFAULT 0
                    CHECK(available_copies >= 0 AND available_copies <= total_copies),
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS book_copy (
                copy_id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'available' CHECK(status IN ('available', 'loaned')),
                created_at TEXT NOT NULL,
                FOREIGN KEY (book_id) REFERENCES books(book_id) ON DELETE CASCADE
            )
        """)
        # No foreign key on copy_id: loans outlive the copies they were made against.
        conn.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                loan_id INTEGER PRIMARY KEY AUTOINCREMENT,
                copy_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                loan_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'returned'))
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS reservations (
                reservation_id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                book_id INTEGER NOT NULL,
                reservation_date TEXT NOT NULL,
                position INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK(status IN ('pending', 'ready', 'fulfilled', 'cancelled')),
                FOREIGN KEY (book_id) REFERENCES books(book_id) ON DELETE CASCADE
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_book_copy_book_id ON book_copy(book_id)")
        # At most one active loan per copy.
        conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_loans_active_copy ON loans(copy_id) WHERE status = 'active'"
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_user_id ON loans(user_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_status_due ON loans(status, due_date)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_reservations_book_status ON reservations(book_id, status)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_reservations_user_id ON reservations(user_id)")
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def initialize_database(path: Optional[str] = None, busy_timeout: float = 5.0) -> Database:
    """Return a ready-to-use Database handle, creating tables if needed."""
    db = Database(path, busy_timeout=busy_timeout)
    db.initialize()
    return db
