import logging
import sqlite3
from datetime import datetime
from typing import Callable, Dict, List, Optional

from circulation.book import CopyStatus
from circulation.database import format_timestamp, utcnow
from circulation.errors import CopyAlreadyLoaned, LoanNotActive, LoanNotFound
from circulation.loan import Loan, LoanStatus, due_date_for

logger = logging.getLogger(__name__)

# book_id comes from the copy; LEFT JOIN keeps loans whose copy was since removed.
_LOAN_SELECT = """
    SELECT l.loan_id, l.copy_id, l.user_id, l.loan_date, l.due_date, l.return_date, l.status,
           bc.book_id
    FROM loans l
    LEFT JOIN book_copy bc ON bc.copy_id = l.copy_id
"""


class LoanLedger:
    """Checkout and return records, bound to the caller's connection."""

    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], datetime] = utcnow) -> None:
        self.conn = conn
        self.clock = clock

    def create_loan(self, copy_id: int, user_id: int) -> Loan:
        """Open a loan on ``copy_id``; the check and the insert share one transaction."""
        existing = self.conn.execute(
            "SELECT loan_id FROM loans WHERE copy_id = ? AND status = ?",
            (copy_id, LoanStatus.ACTIVE.value),
        ).fetchone()
        if existing is not None:
            raise CopyAlreadyLoaned(
                f"Copy {copy_id} already has active loan {existing['loan_id']}.", copy_id=copy_id
            )
        loan_date = self.clock()
        try:
            cursor = self.conn.execute(
                "INSERT INTO loans (copy_id, user_id, loan_date, due_date, status) VALUES (?, ?, ?, ?, ?)",
                (
                    copy_id,
                    user_id,
                    format_timestamp(loan_date),
                    format_timestamp(due_date_for(loan_date)),
                    LoanStatus.ACTIVE.value,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise CopyAlreadyLoaned(f"Copy {copy_id} already has an active loan.", copy_id=copy_id) from e
        self.conn.execute(
            "UPDATE book_copy SET status = ? WHERE copy_id = ?", (CopyStatus.LOANED.value, copy_id)
        )
        return self.get_loan(cursor.lastrowid)

    def get_loan(self, loan_id: int) -> Loan:
        row = self.conn.execute(f"{_LOAN_SELECT} WHERE l.loan_id = ?", (loan_id,)).fetchone()
        if row is None:
            raise LoanNotFound(f"Loan {loan_id} not found.", loan_id=loan_id)
        return Loan.from_dict(dict(row))

    def get_active_loan(self, loan_id: int) -> Optional[Loan]:
        row = self.conn.execute(
            f"{_LOAN_SELECT} WHERE l.loan_id = ? AND l.status = ?", (loan_id, LoanStatus.ACTIVE.value)
        ).fetchone()
        return Loan.from_dict(dict(row)) if row else None

    def mark_returned(self, loan_id: int) -> Loan:
        loan = self.get_active_loan(loan_id)
        if loan is None:
            raise LoanNotActive(f"Loan {loan_id} is not active.", loan_id=loan_id)
        self.conn.execute(
            "UPDATE loans SET return_date = ?, status = ? WHERE loan_id = ?",
            (format_timestamp(self.clock()), LoanStatus.RETURNED.value, loan_id),
        )
        self.conn.execute(
            "UPDATE book_copy SET status = ? WHERE copy_id = ?", (CopyStatus.AVAILABLE.value, loan.copy_id)
        )
        return self.get_loan(loan_id)

    # ------------------------- Queries ------------------------- #
    def list_user_loans(self, user_id: int) -> List[Loan]:
        rows = self.conn.execute(
            f"{_LOAN_SELECT} WHERE l.user_id = ? ORDER BY l.loan_date DESC, l.loan_id DESC", (user_id,)
        ).fetchall()
        return [Loan.from_dict(dict(row)) for row in rows]

    def list_active_loans(self) -> List[Loan]:
        rows = self.conn.execute(
            f"{_LOAN_SELECT} WHERE l.status = ? ORDER BY l.due_date, l.loan_id", (LoanStatus.ACTIVE.value,)
        ).fetchall()
        return [Loan.from_dict(dict(row)) for row in rows]

    def list_overdue_loans(self, now: Optional[datetime] = None) -> List[Loan]:
        now = now or self.clock()
        rows = self.conn.execute(
            f"{_LOAN_SELECT} WHERE l.status = ? AND l.due_date < ? ORDER BY l.due_date, l.loan_id",
            (LoanStatus.ACTIVE.value, format_timestamp(now)),
        ).fetchall()
        return [Loan.from_dict(dict(row)) for row in rows]

    def loan_stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or self.clock()
        row = self.conn.execute(
            """
            SELECT
                COALESCE(SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END), 0) AS active_loans,
                COALESCE(SUM(CASE WHEN status = 'active' AND due_date < ? THEN 1 ELSE 0 END), 0) AS overdue_loans,
                COALESCE(SUM(CASE WHEN status = 'returned' THEN 1 ELSE 0 END), 0) AS total_returned
            FROM loans
            """,
            (format_timestamp(now),),
        ).fetchone()
        return dict(row)
