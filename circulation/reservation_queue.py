import logging
import sqlite3
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from circulation.database import format_timestamp, utcnow
from circulation.errors import DuplicateReservation, ReservationNotFound
from circulation.reservation import ACTIVE_STATUSES, Reservation, ReservationStatus

logger = logging.getLogger(__name__)

_RESERVATION_COLUMNS = "reservation_id, user_id, book_id, reservation_date, position, status"


def _placeholders(values: Iterable) -> str:
    return ", ".join("?" for _ in values)


_ACTIVE_VALUES = tuple(s.value for s in ACTIVE_STATUSES)
_ACTIVE_IN = f"status IN ({_placeholders(_ACTIVE_VALUES)})"


class ReservationQueue:
    """Per-book FIFO queue of reservations.

    Active reservations (pending or ready) of a book always hold positions
    1..N in (reservation_date, reservation_id) order. Any change to the active
    set is followed by :meth:`recalc_positions` on the same connection, so the
    renumbering commits or rolls back together with the change.
    """

    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], datetime] = utcnow) -> None:
        self.conn = conn
        self.clock = clock

    def get_reservation(self, reservation_id: int) -> Reservation:
        row = self.conn.execute(
            f"SELECT {_RESERVATION_COLUMNS} FROM reservations WHERE reservation_id = ?", (reservation_id,)
        ).fetchone()
        if row is None:
            raise ReservationNotFound(f"Reservation {reservation_id} not found.", reservation_id=reservation_id)
        return Reservation.from_dict(dict(row))

    def enqueue(self, book_id: int, user_id: int, allow_duplicates: bool = False) -> Reservation:
        if not allow_duplicates:
            duplicate = self.conn.execute(
                f"SELECT reservation_id FROM reservations WHERE book_id = ? AND user_id = ? AND {_ACTIVE_IN}",
                (book_id, user_id, *_ACTIVE_VALUES),
            ).fetchone()
            if duplicate is not None:
                raise DuplicateReservation(
                    f"User {user_id} already holds reservation {duplicate['reservation_id']} for book {book_id}.",
                    book_id=book_id,
                    user_id=user_id,
                )
        next_position = self.conn.execute(
            f"SELECT COALESCE(MAX(position), 0) + 1 FROM reservations WHERE book_id = ? AND {_ACTIVE_IN}",
            (book_id, *_ACTIVE_VALUES),
        ).fetchone()[0]
        cursor = self.conn.execute(
            "INSERT INTO reservations (user_id, book_id, reservation_date, position, status) VALUES (?, ?, ?, ?, ?)",
            (user_id, book_id, format_timestamp(self.clock()), next_position, ReservationStatus.PENDING.value),
        )
        # A clock step backwards could put the new row ahead of older ones.
        self.recalc_positions(book_id)
        return self.get_reservation(cursor.lastrowid)

    def recalc_positions(self, book_id: int) -> int:
        """Renumber the active reservations of a book 1..N. Returns N."""
        ids = [
            row["reservation_id"]
            for row in self.conn.execute(
                f"SELECT reservation_id FROM reservations WHERE book_id = ? AND {_ACTIVE_IN} "
                "ORDER BY reservation_date ASC, reservation_id ASC",
                (book_id, *_ACTIVE_VALUES),
            ).fetchall()
        ]
        self.conn.executemany(
            "UPDATE reservations SET position = ? WHERE reservation_id = ? AND position != ?",
            [(position, reservation_id, position) for position, reservation_id in enumerate(ids, start=1)],
        )
        return len(ids)

    def peek_next(self, book_id: int, statuses: Iterable[ReservationStatus] = ACTIVE_STATUSES) -> Optional[Reservation]:
        values = tuple(ReservationStatus(s).value for s in statuses)
        row = self.conn.execute(
            f"SELECT {_RESERVATION_COLUMNS} FROM reservations "
            f"WHERE book_id = ? AND status IN ({_placeholders(values)}) "
            "ORDER BY position ASC, reservation_date ASC, reservation_id ASC LIMIT 1",
            (book_id, *values),
        ).fetchone()
        return Reservation.from_dict(dict(row)) if row else None

    def _set_status(self, reservation_id: int, status: ReservationStatus) -> Reservation:
        cursor = self.conn.execute(
            "UPDATE reservations SET status = ? WHERE reservation_id = ?", (status.value, reservation_id)
        )
        if cursor.rowcount == 0:
            raise ReservationNotFound(f"Reservation {reservation_id} not found.", reservation_id=reservation_id)
        return self.get_reservation(reservation_id)

    def mark_ready(self, reservation_id: int) -> Reservation:
        return self._set_status(reservation_id, ReservationStatus.READY)

    def mark_fulfilled(self, reservation_id: int) -> Reservation:
        reservation = self._set_status(reservation_id, ReservationStatus.FULFILLED)
        self.recalc_positions(reservation.book_id)
        return reservation

    def mark_cancelled(self, reservation_id: int) -> Reservation:
        reservation = self._set_status(reservation_id, ReservationStatus.CANCELLED)
        self.recalc_positions(reservation.book_id)
        return reservation

    # ------------------------- Queries ------------------------- #
    def list_queue(self, book_id: int) -> List[Reservation]:
        rows = self.conn.execute(
            f"SELECT {_RESERVATION_COLUMNS} FROM reservations WHERE book_id = ? AND {_ACTIVE_IN} "
            "ORDER BY position ASC",
            (book_id, *_ACTIVE_VALUES),
        ).fetchall()
        return [Reservation.from_dict(dict(row)) for row in rows]

    def list_active(self) -> List[Reservation]:
        """Active reservations of every book, grouped by book title."""
        rows = self.conn.execute(
            f"""
            SELECT r.reservation_id, r.user_id, r.book_id, r.reservation_date, r.position, r.status
            FROM reservations r JOIN books b ON b.book_id = r.book_id
            WHERE r.{_ACTIVE_IN}
            ORDER BY b.title ASC, r.book_id ASC, r.position ASC
            """,
            _ACTIVE_VALUES,
        ).fetchall()
        return [Reservation.from_dict(dict(row)) for row in rows]

    def list_user_reservations(self, user_id: int) -> List[Reservation]:
        rows = self.conn.execute(
            f"SELECT {_RESERVATION_COLUMNS} FROM reservations WHERE user_id = ? "
            "ORDER BY reservation_date DESC, reservation_id DESC",
            (user_id,),
        ).fetchall()
        return [Reservation.from_dict(dict(row)) for row in rows]

    def reservation_stats(self) -> Dict[str, int]:
        row = self.conn.execute(
            """
            SELECT
                COALESCE(SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END), 0) AS pending_reservations,
                COALESCE(SUM(CASE WHEN status = 'ready' THEN 1 ELSE 0 END), 0) AS ready_reservations
            FROM reservations
            """
        ).fetchone()
        return dict(row)
