from __future__ import annotations

from datetime import datetime
from enum import Enum

from circulation.database import format_timestamp, parse_timestamp


class ReservationStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


# Statuses that hold a place in a book's queue.
ACTIVE_STATUSES = (ReservationStatus.PENDING, ReservationStatus.READY)


class Reservation:
    """A user's place in the waiting queue for a book."""

    def __init__(self, reservation_id: int, user_id: int, book_id: int, reservation_date: datetime,
                 position: int, status: ReservationStatus | str = ReservationStatus.PENDING) -> None:
        self.reservation_id = reservation_id
        self.user_id = user_id
        self.book_id = book_id
        self.reservation_date = reservation_date
        self.position = position
        self.status = ReservationStatus(status)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict:
        return {
            "reservation_id": self.reservation_id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "reservation_date": format_timestamp(self.reservation_date),
            # Positions of fulfilled/cancelled reservations carry no meaning.
            "position": self.position if self.is_active else None,
            "status": self.status.value,
        }

    @staticmethod
    def from_dict(data: dict) -> "Reservation":
        return Reservation(
            reservation_id=data["reservation_id"],
            user_id=data["user_id"],
            book_id=data["book_id"],
            reservation_date=parse_timestamp(data["reservation_date"]),
            position=data["position"],
            status=data.get("status", ReservationStatus.PENDING),
        )
