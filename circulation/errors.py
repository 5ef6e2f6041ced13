"""Errors raised by the circulation engine.

Four families, each mapped to one HTTP status by ``api.py``:

- ``NotFoundError``: the entity id does not exist (404).
- ``PreconditionError``: the request is valid but the current state forbids it,
  e.g. no copies left or a reservation already fulfilled (400).
- ``ConsistencyError``: stored state contradicts itself (counter vs. copies).
  This is always a bug; it is logged and surfaced as a server error (500).
- ``ConcurrencyConflict``: the write lock could not be acquired; the caller may
  retry the whole operation (409).
"""

from typing import Any, Dict, Optional


class CirculationError(Exception):
    code = "circulation_error"
    default_message = "Circulation operation failed."

    def __init__(self, message: Optional[str] = None, **context: Any) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class NotFoundError(CirculationError, LookupError):
    code = "not_found"


class PreconditionError(CirculationError, ValueError):
    code = "precondition_failed"


class ConsistencyError(CirculationError):
    code = "inconsistent_state"


class ConcurrencyConflict(CirculationError):
    code = "concurrency_conflict"
    default_message = "The database is busy; retry the operation."


# --- Not found ---
class BookNotFound(NotFoundError):
    code = "book_not_found"
    default_message = "Book not found."


class CopyNotFound(NotFoundError):
    code = "copy_not_found"
    default_message = "Book copy not found."


class LoanNotFound(NotFoundError):
    code = "loan_not_found"
    default_message = "Active loan not found."


class ReservationNotFound(NotFoundError):
    code = "reservation_not_found"
    default_message = "Reservation not found."


# --- Preconditions ---
class NoCopiesAvailable(PreconditionError):
    code = "no_copies_available"
    default_message = "No copies available for checkout. Please place a reservation."


class InvalidReservationState(PreconditionError):
    code = "invalid_reservation_state"
    default_message = "Only pending or ready reservations can be changed."


class DuplicateReservation(PreconditionError):
    code = "duplicate_reservation"
    default_message = "User already has an active reservation for this book."


class InsufficientAvailableCopies(PreconditionError):
    code = "insufficient_available_copies"
    default_message = "Not enough unloaned copies to remove."


class LoanNotActive(PreconditionError):
    code = "loan_not_active"
    default_message = "Loan is not active."


class InvalidQuantity(PreconditionError):
    code = "invalid_quantity"
    default_message = "Number of copies must be at least 1."


class InvalidBookDetails(PreconditionError):
    code = "invalid_book_details"
    default_message = "Title and author are required."


# --- Consistency ---
class InventoryInconsistent(ConsistencyError):
    code = "inventory_inconsistent"
    default_message = "Availability counter disagrees with the copies on record."


class NoPhysicalCopyAvailable(ConsistencyError):
    code = "no_physical_copy_available"
    default_message = "No available physical copy to fulfill reservation."


class CopyAlreadyLoaned(ConsistencyError):
    code = "copy_already_loaned"
    default_message = "Copy already has an active loan."
