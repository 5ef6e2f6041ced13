import logging
import os
import subprocess
import sys
from functools import wraps
from typing import Optional

import typer
from rich.console import Console

from circulation import CirculationCoordinator, create_coordinator
from circulation.errors import CirculationError, ConsistencyError
from config import settings
from ui_helpers import (
    print_audit,
    print_books,
    print_loans,
    print_reservations,
    print_stats_result,
    set_output_mode,
)

APP_NAME = "Library Circulation CLI"

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

console = Console()


def _database_file() -> str:
    return os.environ.get("LIBRARY_DB_FILE") or settings.database_file


class CoordinatorManager:
    """Holds one coordinator per database file for the life of the process."""

    _instance: Optional[CirculationCoordinator] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> CirculationCoordinator:
        current_db = _database_file()
        # Rebuild when the database file changes (e.g. a per-test database).
        if cls._instance is None or current_db != cls._db_file_snapshot:
            cls._instance = create_coordinator(
                current_db,
                busy_timeout=settings.db_busy_timeout,
                retry_attempts=settings.db_retry_attempts,
                retry_backoff=settings.db_retry_backoff,
                allow_duplicate_reservations=settings.allow_duplicate_reservations,
            )
            cls._db_file_snapshot = current_db
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None
        cls._db_file_snapshot = None


def handle_circulation_errors(func):
    """Print circulation errors as one line and exit with status 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CirculationError as e:
            if isinstance(e, ConsistencyError):
                logger.error(f"{func.__name__}: {e.message}")
            print(f"Error: {e.message}")
            raise typer.Exit(code=1)
    return wrapper


# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    if output:
        set_output_mode(output)


@app.command("init-db")
def cli_init_db():
    """Create the database tables if they do not exist."""
    CoordinatorManager.get_instance()
    print(f"Database ready at {_database_file()}")


@app.command("add-book")
@handle_circulation_errors
def cli_add_book(
    title: str,
    author: str,
    copies: int = typer.Option(1, "--copies", "-c", help="Number of physical copies"),
):
    """Add a book with a number of copies."""
    book = CoordinatorManager.get_instance().add_book(title, author, copies)
    print(f"Added book {book.book_id}: {book.title} by {book.author} ({book.total_copies} copies)")


@app.command("add-copies")
@handle_circulation_errors
def cli_add_copies(book_id: int, count: int = typer.Argument(1)):
    """Add copies to an existing book."""
    book = CoordinatorManager.get_instance().add_copies(book_id, count)
    print(f"Book {book.book_id} now has {book.available_copies}/{book.total_copies} copies available")


@app.command("remove-copies")
@handle_circulation_errors
def cli_remove_copies(book_id: int, count: int = typer.Argument(1)):
    """Remove unloaned copies from a book."""
    book = CoordinatorManager.get_instance().remove_copies(book_id, count)
    print(f"Book {book.book_id} now has {book.available_copies}/{book.total_copies} copies available")


@app.command("books")
def cli_books():
    """List books with their availability."""
    print_books(CoordinatorManager.get_instance().list_books())


@app.command("checkout")
@handle_circulation_errors
def cli_checkout(book_id: int, user_id: int):
    """Check out a copy of a book for a user."""
    loan = CoordinatorManager.get_instance().checkout(book_id, user_id)
    print(f"Loan {loan.loan_id} created: copy {loan.copy_id} due {loan.due_date.date().isoformat()}")


@app.command("return")
@handle_circulation_errors
def cli_return(loan_id: int):
    """Return a loaned copy."""
    result = CoordinatorManager.get_instance().return_copy(loan_id)
    print(f"Loan {result.loan.loan_id} returned")
    if result.notification:
        print(result.notification)


@app.command("reserve")
@handle_circulation_errors
def cli_reserve(book_id: int, user_id: int):
    """Join the waiting queue for a book."""
    reservation = CoordinatorManager.get_instance().reserve(book_id, user_id)
    print(f"Reservation {reservation.reservation_id} placed at position {reservation.position}")


@app.command("cancel")
@handle_circulation_errors
def cli_cancel(reservation_id: int):
    """Cancel a reservation."""
    CoordinatorManager.get_instance().cancel_reservation(reservation_id)
    print(f"Reservation {reservation_id} cancelled")


@app.command("fulfill")
@handle_circulation_errors
def cli_fulfill(reservation_id: int):
    """Turn a reservation into a loan."""
    loan = CoordinatorManager.get_instance().fulfill_reservation(reservation_id)
    print(f"Reservation {reservation_id} fulfilled with loan {loan.loan_id} (copy {loan.copy_id})")


@app.command("queue")
@handle_circulation_errors
def cli_queue(book_id: int):
    """Show the reservation queue of a book."""
    print_reservations(CoordinatorManager.get_instance().get_queue(book_id))


@app.command("loans")
def cli_loans(user_id: int):
    """List a user's loans, newest first."""
    coordinator = CoordinatorManager.get_instance()
    print_loans(coordinator.list_user_loans(user_id), coordinator.clock())


@app.command("active-loans")
def cli_active_loans():
    """List open loans, soonest due first."""
    coordinator = CoordinatorManager.get_instance()
    print_loans(coordinator.list_active_loans(), coordinator.clock(), empty_message="No active loans.")


@app.command("overdue")
def cli_overdue():
    """List overdue loans."""
    coordinator = CoordinatorManager.get_instance()
    print_loans(coordinator.list_overdue_loans(), coordinator.clock(), empty_message="No overdue loans.")


@app.command("stats")
def cli_stats():
    """Show circulation statistics."""
    print_stats_result(CoordinatorManager.get_instance().dashboard_stats())


@app.command("audit")
def cli_audit():
    """Check availability counters against copies and loans."""
    discrepancies = CoordinatorManager.get_instance().audit_inventory()
    print_audit(discrepancies)
    if discrepancies:
        raise typer.Exit(code=1)


@app.command("serve")
def cli_serve(reload: bool = typer.Option(False, "--reload", help="Restart on code changes")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, check=False)
    except KeyboardInterrupt:
        console.print("[dim]Server stopped[/]")


if __name__ == "__main__":
    app()
