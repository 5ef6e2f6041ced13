import logging
import sqlite3
from datetime import datetime
from typing import Callable, List, Optional

from circulation.book import Book, BookCopy, BookInventory, CopyStatus, InventoryDiscrepancy
from circulation.database import format_timestamp, utcnow
from circulation.errors import (
    BookNotFound,
    CopyNotFound,
    InsufficientAvailableCopies,
    InvalidBookDetails,
    InvalidQuantity,
    InventoryInconsistent,
    NoCopiesAvailable,
)

logger = logging.getLogger(__name__)

_BOOK_COLUMNS = "book_id, title, author, total_copies, available_copies, created_at"

# Copies of a book that are not tied to an active loan.
_FREE_COPY_FILTER = """
    bc.book_id = ?
    AND NOT EXISTS (
        SELECT 1 FROM loans l WHERE l.copy_id = bc.copy_id AND l.status = 'active'
    )
"""


class CatalogStore:
    """Books, their copy rows and the availability counter.

    Bound to a single connection so that every call runs inside the caller's
    transaction. The ``available_copies`` counter on the book row is the
    authoritative availability figure; copy rows are only consulted to pick a
    concrete copy and to audit the counter.
    """

    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], datetime] = utcnow) -> None:
        self.conn = conn
        self.clock = clock

    # ------------------------- Books ------------------------- #
    def get_book(self, book_id: int) -> Book:
        row = self.conn.execute(
            f"SELECT {_BOOK_COLUMNS} FROM books WHERE book_id = ?", (book_id,)
        ).fetchone()
        if row is None:
            raise BookNotFound(f"Book {book_id} not found.", book_id=book_id)
        return Book.from_dict(dict(row))

    def lock_book(self, book_id: int) -> Book:
        """Read a book row for update.

        SQLite has no row locks; the caller's ``BEGIN IMMEDIATE`` already holds
        the write lock, so the row cannot change until the transaction ends.
        """
        if not self.conn.in_transaction:
            raise RuntimeError("lock_book must be called inside a write transaction")
        return self.get_book(book_id)

    def add_book(self, title: str, author: str, copies: int = 1) -> Book:
        if copies < 1:
            raise InvalidQuantity()
        title = (title or "").strip()
        author = (author or "").strip()
        if not title or not author:
            raise InvalidBookDetails()
        now = format_timestamp(self.clock())
        cursor = self.conn.execute(
            "INSERT INTO books (title, author, total_copies, available_copies, created_at) VALUES (?, ?, 0, 0, ?)",
            (title, author, now),
        )
        book_id = cursor.lastrowid
        return self.add_copies(book_id, copies)

    def decrement_available(self, book_id: int) -> Book:
        cursor = self.conn.execute(
            "UPDATE books SET available_copies = available_copies - 1 WHERE book_id = ? AND available_copies > 0",
            (book_id,),
        )
        if cursor.rowcount == 0:
            self.get_book(book_id)  # raises BookNotFound if missing
            raise NoCopiesAvailable(book_id=book_id)
        return self.get_book(book_id)

    def increment_available(self, book_id: int) -> Book:
        cursor = self.conn.execute(
            "UPDATE books SET available_copies = available_copies + 1 "
            "WHERE book_id = ? AND available_copies < total_copies",
            (book_id,),
        )
        if cursor.rowcount == 0:
            book = self.get_book(book_id)
            raise InventoryInconsistent(
                f"Book {book_id} already has {book.available_copies}/{book.total_copies} copies available.",
                book_id=book_id,
            )
        return self.get_book(book_id)

    # ------------------------- Copies ------------------------- #
    def find_free_copy(self, book_id: int) -> Optional[int]:
        row = self.conn.execute(
            f"SELECT bc.copy_id FROM book_copy bc WHERE {_FREE_COPY_FILTER} ORDER BY bc.copy_id LIMIT 1",
            (book_id,),
        ).fetchone()
        return row["copy_id"] if row else None

    def count_free_copies(self, book_id: int) -> int:
        return self.conn.execute(
            f"SELECT COUNT(*) FROM book_copy bc WHERE {_FREE_COPY_FILTER}", (book_id,)
        ).fetchone()[0]

    def add_copies(self, book_id: int, count: int) -> Book:
        if count < 1:
            raise InvalidQuantity()
        self.get_book(book_id)
        now = format_timestamp(self.clock())
        self.conn.executemany(
            "INSERT INTO book_copy (book_id, status, created_at) VALUES (?, ?, ?)",
            [(book_id, CopyStatus.AVAILABLE.value, now) for _ in range(count)],
        )
        self.conn.execute(
            "UPDATE books SET total_copies = total_copies + ?, available_copies = available_copies + ? "
            "WHERE book_id = ?",
            (count, count, book_id),
        )
        return self.get_book(book_id)

    def remove_available_copies(self, book_id: int, count: int) -> Book:
        """Delete ``count`` unloaned copies, shrinking total and available together."""
        if count < 1:
            raise InvalidQuantity()
        book = self.get_book(book_id)
        removable = min(self.count_free_copies(book_id), book.available_copies)
        if removable < count:
            raise InsufficientAvailableCopies(
                f"Cannot remove {count} copies of book {book_id}: only {removable} unloaned.",
                book_id=book_id,
            )
        free_ids = [
            row["copy_id"]
            for row in self.conn.execute(
                f"SELECT bc.copy_id FROM book_copy bc WHERE {_FREE_COPY_FILTER} ORDER BY bc.copy_id DESC LIMIT ?",
                (book_id, count),
            ).fetchall()
        ]
        self.conn.executemany("DELETE FROM book_copy WHERE copy_id = ?", [(copy_id,) for copy_id in free_ids])
        self.conn.execute(
            "UPDATE books SET total_copies = total_copies - ?, available_copies = available_copies - ? "
            "WHERE book_id = ?",
            (count, count, book_id),
        )
        return self.get_book(book_id)

    def list_copies(self, book_id: int) -> List[BookCopy]:
        self.get_book(book_id)
        rows = self.conn.execute(
            "SELECT copy_id, book_id, status, created_at FROM book_copy WHERE book_id = ? ORDER BY copy_id",
            (book_id,),
        ).fetchall()
        return [BookCopy.from_dict(dict(row)) for row in rows]

    def is_copy_available(self, copy_id: int) -> bool:
        row = self.conn.execute(
            """
            SELECT bc.copy_id,
                   EXISTS (SELECT 1 FROM loans l WHERE l.copy_id = bc.copy_id AND l.status = 'active') AS loaned
            FROM book_copy bc WHERE bc.copy_id = ?
            """,
            (copy_id,),
        ).fetchone()
        if row is None:
            raise CopyNotFound(f"Copy {copy_id} not found.", copy_id=copy_id)
        return not row["loaned"]

    # ------------------------- Reporting ------------------------- #
    def _inventory_rows(self) -> List[sqlite3.Row]:
        return self.conn.execute(
            """
            SELECT b.book_id, b.title, b.author, b.total_copies, b.available_copies, b.created_at,
                   COUNT(bc.copy_id) AS copy_rows,
                   COALESCE(SUM(CASE WHEN bc.copy_id IS NOT NULL AND al.copy_id IS NULL THEN 1 ELSE 0 END), 0) AS free_copies,
                   COALESCE(SUM(CASE
                       WHEN bc.copy_id IS NULL THEN 0
                       WHEN al.copy_id IS NULL AND bc.status != 'available' THEN 1
                       WHEN al.copy_id IS NOT NULL AND bc.status != 'loaned' THEN 1
                       ELSE 0 END), 0) AS mislabeled_copies
            FROM books b
            LEFT JOIN book_copy bc ON bc.book_id = b.book_id
            LEFT JOIN loans al ON al.copy_id = bc.copy_id AND al.status = 'active'
            GROUP BY b.book_id
            ORDER BY b.title, b.book_id
            """
        ).fetchall()

    def list_books(self) -> List[BookInventory]:
        return [
            BookInventory(Book.from_dict(dict(row)), row["copy_rows"], row["free_copies"])
            for row in self._inventory_rows()
        ]

    def audit_inventory(self) -> List[InventoryDiscrepancy]:
        """Compare each book's counters with what its copy rows and loans imply."""
        discrepancies = []
        for row in self._inventory_rows():
            if (
                row["copy_rows"] != row["total_copies"]
                or row["free_copies"] != row["available_copies"]
                or row["mislabeled_copies"]
            ):
                discrepancies.append(InventoryDiscrepancy(
                    book_id=row["book_id"],
                    title=row["title"],
                    total_copies=row["total_copies"],
                    available_copies=row["available_copies"],
                    copy_rows=row["copy_rows"],
                    free_copies=row["free_copies"],
                    mislabeled_copies=row["mislabeled_copies"],
                ))
        for item in discrepancies:
            logger.error(f"Inventory discrepancy for book {item.book_id}: {item.describe()}")
        return discrepancies

    def count_books(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
