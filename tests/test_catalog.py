import pytest

from circulation.catalog import CatalogStore
from circulation.errors import (
    BookNotFound,
    CopyNotFound,
    InsufficientAvailableCopies,
    InvalidBookDetails,
    InvalidQuantity,
    InventoryInconsistent,
    NoCopiesAvailable,
)
from circulation.ledger import LoanLedger


def _add_book(db, copies=2, title="Dune", author="Frank Herbert"):
    with db.transaction() as conn:
        return CatalogStore(conn).add_book(title, author, copies)


def test_add_book_creates_copy_rows(db):
    book = _add_book(db, copies=3)
    assert book.total_copies == 3
    assert book.available_copies == 3

    with db.reader() as conn:
        catalog = CatalogStore(conn)
        assert catalog.count_free_copies(book.book_id) == 3
        assert catalog.get_book(book.book_id).title == "Dune"


def test_add_book_requires_at_least_one_copy(db):
    with pytest.raises(InvalidQuantity):
        _add_book(db, copies=0)


def test_add_book_requires_title_and_author(db):
    with pytest.raises(InvalidBookDetails):
        _add_book(db, title="   ")


def test_get_missing_book(db):
    with db.reader() as conn:
        with pytest.raises(BookNotFound):
            CatalogStore(conn).get_book(999)


def test_lock_book_outside_transaction_is_rejected(db):
    book = _add_book(db)
    with db.reader() as conn:
        with pytest.raises(RuntimeError):
            CatalogStore(conn).lock_book(book.book_id)


def test_decrement_stops_at_zero(db):
    book = _add_book(db, copies=1)
    with db.transaction() as conn:
        assert CatalogStore(conn).decrement_available(book.book_id).available_copies == 0

    with pytest.raises(NoCopiesAvailable):
        with db.transaction() as conn:
            CatalogStore(conn).decrement_available(book.book_id)


def test_increment_cannot_exceed_total(db):
    book = _add_book(db, copies=1)
    with pytest.raises(InventoryInconsistent):
        with db.transaction() as conn:
            CatalogStore(conn).increment_available(book.book_id)


def test_find_free_copy_skips_loaned_copies(db):
    book = _add_book(db, copies=2)
    with db.transaction() as conn:
        catalog = CatalogStore(conn)
        first = catalog.find_free_copy(book.book_id)
        LoanLedger(conn).create_loan(first, user_id=1)
        second = catalog.find_free_copy(book.book_id)
        assert second is not None and second != first
        LoanLedger(conn).create_loan(second, user_id=2)
        assert catalog.find_free_copy(book.book_id) is None


def test_add_copies_grows_total_and_available(db):
    book = _add_book(db, copies=1)
    with db.transaction() as conn:
        updated = CatalogStore(conn).add_copies(book.book_id, 2)
    assert (updated.total_copies, updated.available_copies) == (3, 3)


def test_add_copies_to_missing_book(db):
    with pytest.raises(BookNotFound):
        with db.transaction() as conn:
            CatalogStore(conn).add_copies(42, 1)


def test_remove_available_copies_keeps_loaned_ones(db):
    book = _add_book(db, copies=3)
    with db.transaction() as conn:
        catalog = CatalogStore(conn)
        loaned = catalog.find_free_copy(book.book_id)
        LoanLedger(conn).create_loan(loaned, user_id=7)
        catalog.decrement_available(book.book_id)

    with db.transaction() as conn:
        updated = CatalogStore(conn).remove_available_copies(book.book_id, 2)
    assert (updated.total_copies, updated.available_copies) == (1, 0)

    with db.reader() as conn:
        assert CatalogStore(conn).is_copy_available(loaned) is False


def test_remove_more_than_unloaned_fails_without_changes(db):
    book = _add_book(db, copies=2)
    with db.transaction() as conn:
        catalog = CatalogStore(conn)
        LoanLedger(conn).create_loan(catalog.find_free_copy(book.book_id), user_id=1)
        catalog.decrement_available(book.book_id)

    with pytest.raises(InsufficientAvailableCopies):
        with db.transaction() as conn:
            CatalogStore(conn).remove_available_copies(book.book_id, 2)

    with db.reader() as conn:
        book = CatalogStore(conn).get_book(book.book_id)
    assert (book.total_copies, book.available_copies) == (2, 1)


def test_is_copy_available_unknown_copy(db):
    with db.reader() as conn:
        with pytest.raises(CopyNotFound):
            CatalogStore(conn).is_copy_available(12345)


def test_audit_reports_counter_drift(db):
    healthy = _add_book(db, copies=2, title="Emma", author="Jane Austen")
    drifted = _add_book(db, copies=2)
    with db.transaction() as conn:
        conn.execute("UPDATE books SET available_copies = 1 WHERE book_id = ?", (drifted.book_id,))

    with db.reader() as conn:
        catalog = CatalogStore(conn)
        discrepancies = catalog.audit_inventory()
        inventory = {item.book.book_id: item for item in catalog.list_books()}

    assert [d.book_id for d in discrepancies] == [drifted.book_id]
    assert "available_copies=1 but 2 free copies" in discrepancies[0].describe()
    assert inventory[healthy.book_id].is_consistent
    assert not inventory[drifted.book_id].is_consistent


def test_list_books_includes_book_without_copies(db):
    book = _add_book(db, copies=1)
    with db.transaction() as conn:
        CatalogStore(conn).remove_available_copies(book.book_id, 1)

    with db.reader() as conn:
        [item] = CatalogStore(conn).list_books()
    assert (item.copy_rows, item.free_copies) == (0, 0)
    assert item.is_consistent


def test_list_copies_tracks_copy_status(db):
    book = _add_book(db, copies=2)
    with db.transaction() as conn:
        catalog = CatalogStore(conn)
        LoanLedger(conn).create_loan(catalog.find_free_copy(book.book_id), user_id=1)
        copies = catalog.list_copies(book.book_id)

    assert [c.status.value for c in copies] == ["loaned", "available"]
    assert not copies[0].is_available()
    assert copies[1].is_available()

    with db.reader() as conn:
        with pytest.raises(BookNotFound):
            CatalogStore(conn).list_copies(999)


def test_remove_copies_reports_free_copies_when_counter_drifts(db):
    book = _add_book(db, copies=2)
    # loan recorded without touching the counter: 2 available on the book row, 1 free copy
    with db.transaction() as conn:
        catalog = CatalogStore(conn)
        LoanLedger(conn).create_loan(catalog.find_free_copy(book.book_id), user_id=1)

    with pytest.raises(InsufficientAvailableCopies, match="only 1 unloaned"):
        with db.transaction() as conn:
            CatalogStore(conn).remove_available_copies(book.book_id, 2)
