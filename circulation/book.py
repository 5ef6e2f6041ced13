from __future__ import annotations

from enum import Enum


class CopyStatus(str, Enum):
    AVAILABLE = "available"
    LOANED = "loaned"


class Book:
    """A catalog title together with its aggregate copy counters."""

    def __init__(self, book_id: int, title: str, author: str, total_copies: int = 0,
                 available_copies: int = 0, created_at: str | None = None) -> None:
        self.book_id = book_id
        self.title = title.strip()
        self.author = author.strip()
        self.total_copies = total_copies
        self.available_copies = available_copies
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_copies}/{self.total_copies} available)"

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "title": self.title,
            "author": self.author,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            book_id=data["book_id"],
            title=data["title"],
            author=data["author"],
            total_copies=data.get("total_copies", 0),
            available_copies=data.get("available_copies", 0),
            created_at=data.get("created_at"),
        )


class BookCopy:
    """One physical item of a book."""

    def __init__(self, copy_id: int, book_id: int, status: CopyStatus | str = CopyStatus.AVAILABLE,
                 created_at: str | None = None) -> None:
        self.copy_id = copy_id
        self.book_id = book_id
        self.status = CopyStatus(status)
        self.created_at = created_at

    def is_available(self) -> bool:
        return self.status is CopyStatus.AVAILABLE

    def to_dict(self) -> dict:
        return {
            "copy_id": self.copy_id,
            "book_id": self.book_id,
            "status": self.status.value,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "BookCopy":
        return BookCopy(
            copy_id=data["copy_id"],
            book_id=data["book_id"],
            status=data.get("status", CopyStatus.AVAILABLE),
            created_at=data.get("created_at"),
        )


class BookInventory:
    """Counter values of a book next to the counts derived from its copy rows."""

    def __init__(self, book: Book, copy_rows: int, free_copies: int) -> None:
        self.book = book
        self.copy_rows = copy_rows
        self.free_copies = free_copies

    @property
    def is_consistent(self) -> bool:
        return (
            self.copy_rows == self.book.total_copies
            and self.free_copies == self.book.available_copies
        )

    def to_dict(self) -> dict:
        data = self.book.to_dict()
        data.update({
            "copy_rows": self.copy_rows,
            "free_copies": self.free_copies,
            "consistent": self.is_consistent,
        })
        return data


class InventoryDiscrepancy:
    """A book whose stored counters disagree with its copies and loans."""

    def __init__(self, book_id: int, title: str, total_copies: int, available_copies: int,
                 copy_rows: int, free_copies: int, mislabeled_copies: int) -> None:
        self.book_id = book_id
        self.title = title
        self.total_copies = total_copies
        self.available_copies = available_copies
        self.copy_rows = copy_rows
        self.free_copies = free_copies
        # copies whose status field disagrees with whether they have an active loan
        self.mislabeled_copies = mislabeled_copies

    def describe(self) -> str:
        problems = []
        if self.copy_rows != self.total_copies:
            problems.append(f"total_copies={self.total_copies} but {self.copy_rows} copy rows")
        if self.free_copies != self.available_copies:
            problems.append(f"available_copies={self.available_copies} but {self.free_copies} free copies")
        if self.mislabeled_copies:
            problems.append(f"{self.mislabeled_copies} copy status(es) out of step with loans")
        return "; ".join(problems)

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "title": self.title,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "copy_rows": self.copy_rows,
            "free_copies": self.free_copies,
            "mislabeled_copies": self.mislabeled_copies,
            "problems": self.describe(),
        }
