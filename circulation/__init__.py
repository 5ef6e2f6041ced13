"""Library circulation engine.

Modules:
- Data models (book.py, loan.py, reservation.py)
- Database layer and transaction scope (database.py)
- Stores bound to one transaction (catalog.py, ledger.py, reservation_queue.py)
- Operations that keep them consistent (coordinator.py)
- Error taxonomy (errors.py)
"""

from typing import Optional

from .book import Book, BookCopy, BookInventory, CopyStatus, InventoryDiscrepancy
from .coordinator import CirculationCoordinator, ReturnResult
from .database import Database, initialize_database
from .errors import CirculationError
from .loan import LOAN_PERIOD_DAYS, Loan, LoanStatus
from .reservation import Reservation, ReservationStatus


def create_coordinator(database_file: Optional[str] = None, busy_timeout: float = 5.0,
                       **options) -> CirculationCoordinator:
    """Open (and if needed create) the database and wrap it in a coordinator."""
    db = initialize_database(database_file, busy_timeout=busy_timeout)
    return CirculationCoordinator(db, **options)


__all__ = [
    "Book",
    "BookCopy",
    "BookInventory",
    "CopyStatus",
    "InventoryDiscrepancy",
    "Loan",
    "LoanStatus",
    "LOAN_PERIOD_DAYS",
    "Reservation",
    "ReservationStatus",
    "Database",
    "initialize_database",
    "CirculationCoordinator",
    "ReturnResult",
    "CirculationError",
    "create_coordinator",
]
