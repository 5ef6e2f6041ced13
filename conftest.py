from datetime import datetime, timedelta, timezone

import pytest

from circulation import CirculationCoordinator
from circulation.database import initialize_database


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path, request):
    # A separate database file for every test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    return initialize_database(db_file, busy_timeout=5.0)


@pytest.fixture
def coordinator(db, clock):
    return CirculationCoordinator(db, clock=clock, retry_attempts=3, retry_backoff=0.01)


@pytest.fixture
def check_invariants(db):
    """Return a function asserting the circulation invariants over the whole database."""

    def check():
        with db.reader() as conn:
            books = conn.execute("SELECT book_id, total_copies, available_copies FROM books").fetchall()
            for book in books:
                active = conn.execute(
                    """
                    SELECT COUNT(*) FROM loans l JOIN book_copy bc ON bc.copy_id = l.copy_id
                    WHERE bc.book_id = ? AND l.status = 'active'
                    """,
                    (book["book_id"],),
                ).fetchone()[0]
                assert 0 <= book["available_copies"] <= book["total_copies"]
                assert book["available_copies"] == book["total_copies"] - active

                positions = [
                    row["position"]
                    for row in conn.execute(
                        """
                        SELECT position FROM reservations
                        WHERE book_id = ? AND status IN ('pending', 'ready')
                        ORDER BY reservation_date, reservation_id
                        """,
                        (book["book_id"],),
                    ).fetchall()
                ]
                assert positions == list(range(1, len(positions) + 1))

            double_loans = conn.execute(
                "SELECT copy_id FROM loans WHERE status = 'active' GROUP BY copy_id HAVING COUNT(*) > 1"
            ).fetchall()
            assert double_loans == []

    return check


@pytest.fixture
def blocker(db):
    """A raw connection holding the database write lock."""
    conn = db.connect()
    conn.execute("BEGIN IMMEDIATE")
    yield conn
    if conn.in_transaction:
        conn.execute("ROLLBACK")
    conn.close()
