import json
import os
from typing import Any, Dict, List, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from circulation.book import BookInventory, InventoryDiscrepancy
from circulation.loan import Loan
from circulation.reservation import Reservation

# Environment variable controlling CLI output mode.
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _print_rows(title: str, columns: Sequence[str], rows: List[Sequence[Any]], payload: List[Dict[str, Any]]) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for column in columns:
            table.add_column(column)
        for row in rows:
            table.add_row(*("" if v is None else str(v) for v in row))
        _console.print(table)
    else:
        for row in rows:
            print(" | ".join("-" if v is None else str(v) for v in row))


def print_books(books: List[BookInventory]) -> None:
    """Print books with their counters.
    - plain: 'id | title | author | available/total' lines, or 'No books in library.'
    - json: list of objects
    - rich: table
    """
    if not books:
        print("No books in library.")
        return
    rows = [
        (b.book.book_id, b.book.title, b.book.author, f"{b.book.available_copies}/{b.book.total_copies}")
        for b in books
    ]
    _print_rows("📚 Books", ("ID", "Title", "Author", "Available"), rows, [b.to_dict() for b in books])


def print_loans(loans: List[Loan], now, empty_message: str = "No loans found.") -> None:
    """Print loans with their due date, flagging overdue ones.
    - plain: 'loan | book | copy | user | due | status' lines, or the empty message
    - json: list of loan objects with is_overdue
    - rich: table
    """
    if not loans:
        print(empty_message)
        return
    rows = [
        (
            loan.loan_id,
            loan.book_id,
            loan.copy_id,
            loan.user_id,
            loan.due_date.date().isoformat(),
            "overdue" if loan.is_overdue(now) else loan.status.value,
        )
        for loan in loans
    ]
    payload = [dict(loan.to_dict(), is_overdue=loan.is_overdue(now)) for loan in loans]
    _print_rows("📖 Loans", ("Loan", "Book", "Copy", "User", "Due", "Status"), rows, payload)


def print_reservations(reservations: List[Reservation], empty_message: str = "Queue is empty.") -> None:
    """Print reservations in queue order.
    - plain: 'reservation | book | user | position | status' lines, or the empty message
    - json: list of reservation objects
    - rich: table
    """
    if not reservations:
        print(empty_message)
        return
    rows = [
        (r.reservation_id, r.book_id, r.user_id, r.position if r.is_active else None, r.status.value)
        for r in reservations
    ]
    _print_rows(
        "⏳ Reservations",
        ("Reservation", "Book", "User", "Position", "Status"),
        rows,
        [r.to_dict() for r in reservations],
    )


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print dashboard statistics.
    - plain: 'Key Name: value' lines
    - json: one object
    - rich: panel
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{key.replace('_', ' ').title()}:[/] {value}" for key, value in stats.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, value in stats.items():
            print(f"{key.replace('_', ' ').title()}: {value}")


def print_audit(discrepancies: List[InventoryDiscrepancy]) -> None:
    """Print inventory discrepancies.
    - plain: 'book | title | problems' lines, or 'Inventory is consistent.'
    - json: list of discrepancy objects
    - rich: table
    """
    if not discrepancies:
        print("Inventory is consistent.")
        return
    rows = [(d.book_id, d.title, d.describe()) for d in discrepancies]
    _print_rows("⚠️  Inventory discrepancies", ("Book", "Title", "Problems"), rows,
                [d.to_dict() for d in discrepancies])
