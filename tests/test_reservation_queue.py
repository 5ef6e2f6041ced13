from datetime import timedelta

import pytest

from circulation.catalog import CatalogStore
from circulation.errors import DuplicateReservation, ReservationNotFound
from circulation.reservation import ReservationStatus
from circulation.reservation_queue import ReservationQueue


@pytest.fixture
def book_id(db, clock):
    with db.transaction() as conn:
        return CatalogStore(conn, clock).add_book("Beloved", "Toni Morrison", 1).book_id


def _enqueue(db, clock, book_id, user_id, **kwargs):
    with db.transaction() as conn:
        reservation = ReservationQueue(conn, clock).enqueue(book_id, user_id, **kwargs)
    clock.advance(minutes=1)
    return reservation


def test_enqueue_assigns_consecutive_positions(db, clock, book_id):
    positions = [_enqueue(db, clock, book_id, user).position for user in (10, 11, 12)]
    assert positions == [1, 2, 3]


def test_duplicate_active_reservation_is_rejected(db, clock, book_id):
    _enqueue(db, clock, book_id, 10)
    with pytest.raises(DuplicateReservation):
        _enqueue(db, clock, book_id, 10)


def test_duplicates_allowed_when_enabled(db, clock, book_id):
    _enqueue(db, clock, book_id, 10)
    second = _enqueue(db, clock, book_id, 10, allow_duplicates=True)
    assert second.position == 2


def test_cancel_closes_the_gap(db, clock, book_id):
    first, middle, last = (_enqueue(db, clock, book_id, user) for user in (1, 2, 3))
    with db.transaction() as conn:
        queue = ReservationQueue(conn, clock)
        cancelled = queue.mark_cancelled(middle.reservation_id)
        remaining = queue.list_queue(book_id)

    assert cancelled.status is ReservationStatus.CANCELLED
    assert cancelled.to_dict()["position"] is None
    assert [(r.reservation_id, r.position) for r in remaining] == [
        (first.reservation_id, 1),
        (last.reservation_id, 2),
    ]


def test_recalc_follows_reservation_date_then_id(db, clock, book_id):
    first = _enqueue(db, clock, book_id, 1)
    second = _enqueue(db, clock, book_id, 2)
    with db.transaction() as conn:
        # scramble the stored positions and move the second one earlier in time
        conn.execute("UPDATE reservations SET position = 7 WHERE reservation_id = ?", (first.reservation_id,))
        earlier = (clock.now - timedelta(days=1)).isoformat(timespec="microseconds")
        conn.execute(
            "UPDATE reservations SET reservation_date = ?, position = 9 WHERE reservation_id = ?",
            (earlier, second.reservation_id),
        )
        queue = ReservationQueue(conn, clock)
        assert queue.recalc_positions(book_id) == 2
        ordered = [r.reservation_id for r in queue.list_queue(book_id)]
    assert ordered == [second.reservation_id, first.reservation_id]


def test_ready_reservation_keeps_its_position(db, clock, book_id):
    first = _enqueue(db, clock, book_id, 1)
    _enqueue(db, clock, book_id, 2)
    with db.transaction() as conn:
        queue = ReservationQueue(conn, clock)
        ready = queue.mark_ready(first.reservation_id)
        nxt_pending = queue.peek_next(book_id, statuses=(ReservationStatus.PENDING,))
        nxt_any = queue.peek_next(book_id)

    assert (ready.status, ready.position) == (ReservationStatus.READY, 1)
    assert nxt_pending.user_id == 2
    assert nxt_any.reservation_id == first.reservation_id


def test_fulfilled_reservation_leaves_queue(db, clock, book_id):
    first = _enqueue(db, clock, book_id, 1)
    second = _enqueue(db, clock, book_id, 2)
    with db.transaction() as conn:
        queue = ReservationQueue(conn, clock)
        queue.mark_fulfilled(first.reservation_id)
        stats = queue.reservation_stats()
        remaining = queue.list_queue(book_id)
    assert [(r.reservation_id, r.position) for r in remaining] == [(second.reservation_id, 1)]
    assert stats == {"pending_reservations": 1, "ready_reservations": 0}


def test_user_reservations_include_history(db, clock, book_id):
    first = _enqueue(db, clock, book_id, 1)
    with db.transaction() as conn:
        ReservationQueue(conn, clock).mark_cancelled(first.reservation_id)
    second = _enqueue(db, clock, book_id, 1)

    with db.reader() as conn:
        history = ReservationQueue(conn, clock).list_user_reservations(1)
    assert [r.reservation_id for r in history] == [second.reservation_id, first.reservation_id]


def test_unknown_reservation(db, clock):
    with db.transaction() as conn:
        queue = ReservationQueue(conn, clock)
        with pytest.raises(ReservationNotFound):
            queue.get_reservation(99)
        with pytest.raises(ReservationNotFound):
            queue.mark_cancelled(99)
