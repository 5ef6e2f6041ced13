import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TypeVar

from circulation.book import Book, BookCopy, BookInventory, InventoryDiscrepancy
from circulation.catalog import CatalogStore
from circulation.database import Database, utcnow
from circulation.errors import (
    ConsistencyError,
    InvalidReservationState,
    InventoryInconsistent,
    LoanNotFound,
    NoCopiesAvailable,
    NoPhysicalCopyAvailable,
)
from circulation.ledger import LoanLedger
from circulation.loan import Loan
from circulation.reservation import Reservation, ReservationStatus
from circulation.reservation_queue import ReservationQueue

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReturnResult:
    """Outcome of a return: the closed loan and, if someone was waiting, who is next."""

    def __init__(self, loan: Loan, reservation: Optional[Reservation] = None) -> None:
        self.loan = loan
        self.reservation = reservation

    @property
    def notification(self) -> Optional[str]:
        if self.reservation is None:
            return None
        return f"Reservation for user {self.reservation.user_id} is now ready"

    def to_dict(self) -> dict:
        return {
            "loan": self.loan.to_dict(),
            "notification": self.notification,
            "reservation": self.reservation.to_dict() if self.reservation else None,
        }


class _Stores:
    """The three stores bound to one transaction."""

    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], datetime]) -> None:
        self.catalog = CatalogStore(conn, clock)
        self.ledger = LoanLedger(conn, clock)
        self.queue = ReservationQueue(conn, clock)


class CirculationCoordinator:
    """Runs every circulation operation as one atomic transaction.

    The coordinator is the only writer of loan/reservation status, queue
    positions and book availability. Each write operation takes the database
    write lock, works through the stores and either commits everything or rolls
    everything back. Lock contention is retried a bounded number of times;
    every other error reaches the caller after the rollback.
    """

    def __init__(self, db: Database, clock: Optional[Callable[[], datetime]] = None,
                 retry_attempts: int = 3, retry_backoff: float = 0.05,
                 allow_duplicate_reservations: bool = False) -> None:
        self.db = db
        self.clock = clock or utcnow
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.allow_duplicate_reservations = allow_duplicate_reservations

    # ------------------------- Plumbing ------------------------- #
    def _write(self, name: str, work: Callable[[_Stores], T]) -> T:
        try:
            return self.db.run_with_retry(
                lambda conn: work(_Stores(conn, self.clock)),
                attempts=self.retry_attempts,
                backoff=self.retry_backoff,
                name=name,
            )
        except ConsistencyError as e:
            logger.error(f"{name} aborted on inconsistent state: {e.message} {e.context}")
            raise

    def _read(self, work: Callable[[_Stores], T]) -> T:
        with self.db.reader() as conn:
            return work(_Stores(conn, self.clock))

    # ------------------------- Core operations ------------------------- #
    def checkout(self, book_id: int, user_id: int) -> Loan:
        def work(s: _Stores) -> Loan:
            book = s.catalog.lock_book(book_id)
            if book.available_copies <= 0:
                raise NoCopiesAvailable(book_id=book_id)
            copy_id = s.catalog.find_free_copy(book_id)
            if copy_id is None:
                raise InventoryInconsistent(
                    f"Book {book_id} reports {book.available_copies} available copies but none is free.",
                    book_id=book_id,
                )
            loan = s.ledger.create_loan(copy_id, user_id)
            s.catalog.decrement_available(book_id)
            loan.book_id = book_id
            return loan

        loan = self._write("checkout", work)
        logger.info(f"Loan {loan.loan_id} created: user={user_id} book={book_id} copy={loan.copy_id}")
        return loan

    def return_copy(self, loan_id: int) -> ReturnResult:
        def work(s: _Stores) -> ReturnResult:
            active = s.ledger.get_active_loan(loan_id)
            if active is None:
                raise LoanNotFound(f"Active loan {loan_id} not found.", loan_id=loan_id)
            if active.book_id is None:
                raise InventoryInconsistent(
                    f"Active loan {loan_id} points at missing copy {active.copy_id}.", loan_id=loan_id
                )
            s.catalog.lock_book(active.book_id)
            loan = s.ledger.mark_returned(loan_id)
            s.catalog.increment_available(active.book_id)
            # Only a pending reservation advances; one already marked ready keeps its place.
            reservation = s.queue.peek_next(active.book_id, statuses=(ReservationStatus.PENDING,))
            if reservation is not None:
                reservation = s.queue.mark_ready(reservation.reservation_id)
            return ReturnResult(loan, reservation)

        result = self._write("return", work)
        logger.info(f"Loan {loan_id} returned")
        if result.notification:
            logger.info(result.notification)
        return result

    def reserve(self, book_id: int, user_id: int) -> Reservation:
        def work(s: _Stores) -> Reservation:
            s.catalog.lock_book(book_id)
            return s.queue.enqueue(book_id, user_id, allow_duplicates=self.allow_duplicate_reservations)

        reservation = self._write("reserve", work)
        logger.info(
            f"Reservation {reservation.reservation_id} queued: user={user_id} book={book_id} "
            f"position={reservation.position}"
        )
        return reservation

    def cancel_reservation(self, reservation_id: int) -> Reservation:
        def work(s: _Stores) -> Reservation:
            reservation = s.queue.get_reservation(reservation_id)
            if not reservation.is_active:
                raise InvalidReservationState(
                    f"Reservation {reservation_id} is already {reservation.status.value}.",
                    reservation_id=reservation_id,
                )
            return s.queue.mark_cancelled(reservation_id)

        reservation = self._write("cancel_reservation", work)
        logger.info(f"Reservation {reservation_id} cancelled")
        return reservation

    def fulfill_reservation(self, reservation_id: int) -> Loan:
        def work(s: _Stores) -> Loan:
            reservation = s.queue.get_reservation(reservation_id)
            book = s.catalog.lock_book(reservation.book_id)
            if not reservation.is_active:
                raise InvalidReservationState(
                    "Only pending or ready reservations can be fulfilled.", reservation_id=reservation_id
                )
            if book.available_copies <= 0:
                raise NoCopiesAvailable(
                    "No available copies to fulfill this reservation.", book_id=book.book_id
                )
            copy_id = s.catalog.find_free_copy(book.book_id)
            if copy_id is None:
                raise NoPhysicalCopyAvailable(book_id=book.book_id, reservation_id=reservation_id)
            loan = s.ledger.create_loan(copy_id, reservation.user_id)
            s.catalog.decrement_available(book.book_id)
            s.queue.mark_fulfilled(reservation_id)
            loan.book_id = book.book_id
            return loan

        loan = self._write("fulfill_reservation", work)
        logger.info(f"Reservation {reservation_id} fulfilled with loan {loan.loan_id}")
        return loan

    # ------------------------- Inventory ------------------------- #
    def add_book(self, title: str, author: str, copies: int = 1) -> Book:
        book = self._write("add_book", lambda s: s.catalog.add_book(title, author, copies))
        logger.info(f"Book {book.book_id} added with {copies} copies")
        return book

    def add_copies(self, book_id: int, count: int) -> Book:
        def work(s: _Stores) -> Book:
            s.catalog.lock_book(book_id)
            return s.catalog.add_copies(book_id, count)

        return self._write("add_copies", work)

    def remove_copies(self, book_id: int, count: int) -> Book:
        def work(s: _Stores) -> Book:
            s.catalog.lock_book(book_id)
            return s.catalog.remove_available_copies(book_id, count)

        return self._write("remove_copies", work)

    # ------------------------- Reads ------------------------- #
    def get_book(self, book_id: int) -> Book:
        return self._read(lambda s: s.catalog.get_book(book_id))

    def list_books(self) -> List[BookInventory]:
        return self._read(lambda s: s.catalog.list_books())

    def list_copies(self, book_id: int) -> List[BookCopy]:
        return self._read(lambda s: s.catalog.list_copies(book_id))

    def is_copy_available(self, copy_id: int) -> bool:
        return self._read(lambda s: s.catalog.is_copy_available(copy_id))

    def get_loan(self, loan_id: int) -> Loan:
        return self._read(lambda s: s.ledger.get_loan(loan_id))

    def list_user_loans(self, user_id: int) -> List[Loan]:
        return self._read(lambda s: s.ledger.list_user_loans(user_id))

    def list_active_loans(self) -> List[Loan]:
        return self._read(lambda s: s.ledger.list_active_loans())

    def list_overdue_loans(self) -> List[Loan]:
        return self._read(lambda s: s.ledger.list_overdue_loans(self.clock()))

    def get_reservation(self, reservation_id: int) -> Reservation:
        return self._read(lambda s: s.queue.get_reservation(reservation_id))

    def get_queue(self, book_id: int) -> List[Reservation]:
        def work(s: _Stores) -> List[Reservation]:
            s.catalog.get_book(book_id)
            return s.queue.list_queue(book_id)

        return self._read(work)

    def list_active_reservations(self) -> List[Reservation]:
        return self._read(lambda s: s.queue.list_active())

    def list_user_reservations(self, user_id: int) -> List[Reservation]:
        return self._read(lambda s: s.queue.list_user_reservations(user_id))

    def dashboard_stats(self) -> Dict[str, Any]:
        def work(s: _Stores) -> Dict[str, Any]:
            stats: Dict[str, Any] = {"total_books": s.catalog.count_books()}
            stats.update(s.ledger.loan_stats(self.clock()))
            stats.update(s.queue.reservation_stats())
            return stats

        return self._read(work)

    def audit_inventory(self) -> List[InventoryDiscrepancy]:
        return self._read(lambda s: s.catalog.audit_inventory())
