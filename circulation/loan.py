from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from circulation.database import format_timestamp, parse_timestamp

# Fixed loan window for checkout and reservation fulfillment.
LOAN_PERIOD_DAYS = 14


class LoanStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"


class Loan:
    """A checkout of one copy by one user."""

    def __init__(self, loan_id: int, copy_id: int, user_id: int, loan_date: datetime, due_date: datetime,
                 return_date: datetime | None = None, status: LoanStatus | str = LoanStatus.ACTIVE,
                 book_id: int | None = None) -> None:
        self.loan_id = loan_id
        self.copy_id = copy_id
        self.user_id = user_id
        self.loan_date = loan_date
        self.due_date = due_date
        self.return_date = return_date
        self.status = LoanStatus(status)
        # Not stored on the loan row; filled in when the query joins the copy.
        self.book_id = book_id

    @property
    def is_active(self) -> bool:
        return self.status is LoanStatus.ACTIVE

    def is_overdue(self, now: datetime) -> bool:
        return self.is_active and self.due_date < now

    def days_remaining(self, now: datetime) -> int | None:
        """Whole days until the due date (negative once overdue); None when returned."""
        if not self.is_active:
            return None
        return int((self.due_date - now).total_seconds() / 86400)

    def to_dict(self) -> dict:
        return {
            "loan_id": self.loan_id,
            "copy_id": self.copy_id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "loan_date": format_timestamp(self.loan_date),
            "due_date": format_timestamp(self.due_date),
            "return_date": format_timestamp(self.return_date) if self.return_date else None,
            "status": self.status.value,
        }

    @staticmethod
    def from_dict(data: dict) -> "Loan":
        return Loan(
            loan_id=data["loan_id"],
            copy_id=data["copy_id"],
            user_id=data["user_id"],
            loan_date=parse_timestamp(data["loan_date"]),
            due_date=parse_timestamp(data["due_date"]),
            return_date=parse_timestamp(data.get("return_date")),
            status=data.get("status", LoanStatus.ACTIVE),
            book_id=data.get("book_id"),
        )


def due_date_for(loan_date: datetime) -> datetime:
    return loan_date + timedelta(days=LOAN_PERIOD_DAYS)
