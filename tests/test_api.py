import pytest
from fastapi.testclient import TestClient

from api import app, get_coordinator
from circulation import CirculationCoordinator
from circulation.database import Database
from config import settings

HEADERS = {"X-API-Key": settings.api_key}


@pytest.fixture
def client(coordinator):
    # Route every request to the per-test coordinator
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _add_book(client, copies=1, title="Dune"):
    response = client.post("/books", headers=HEADERS, json={"title": title, "author": "Frank Herbert", "copies": copies})
    assert response.status_code == 201
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["db"] is True


def test_add_book_with_valid_api_key(client):
    book = _add_book(client, copies=2)
    assert book["total_copies"] == 2
    assert book["available_copies"] == 2


def test_add_book_with_invalid_api_key(client):
    response = client.post("/books", headers={"X-API-Key": "invalid-key"}, json={"title": "Dune", "author": "F"})
    assert response.status_code == 403


def test_add_book_without_api_key(client):
    response = client.post("/books", json={"title": "Dune", "author": "F"})
    assert response.status_code in (401, 403)


def test_add_book_rejects_zero_copies(client):
    response = client.post("/books", headers=HEADERS, json={"title": "Dune", "author": "F", "copies": 0})
    assert response.status_code == 422


def test_add_book_rejects_blank_title(client):
    response = client.post("/books", headers=HEADERS, json={"title": "  ", "author": "F"})
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_book_details"


def test_get_books_lists_inventory(client):
    _add_book(client, copies=2)
    response = client.get("/books")
    assert response.status_code == 200
    [book] = response.json()
    assert book["copy_rows"] == 2
    assert book["consistent"] is True


def test_unknown_book_is_404(client):
    response = client.get("/books/999")
    assert response.status_code == 404
    assert response.json() == {"detail": "Book 999 not found.", "code": "book_not_found"}


def test_checkout_and_return_flow(client):
    book = _add_book(client)

    response = client.post("/loans/checkout", json={"book_id": book["book_id"], "user_id": 1})
    assert response.status_code == 201
    loan = response.json()
    assert loan["status"] == "active"
    assert loan["book_id"] == book["book_id"]
    assert loan["days_remaining"] == 14
    assert loan["is_overdue"] is False

    availability = client.get(f"/copies/{loan['copy_id']}/availability").json()
    assert availability == {"copy_id": loan["copy_id"], "available": False}

    response = client.post("/loans/checkout", json={"book_id": book["book_id"], "user_id": 2})
    assert response.status_code == 400
    assert response.json()["code"] == "no_copies_available"

    reservation = client.post("/reservations", json={"book_id": book["book_id"], "user_id": 2})
    assert reservation.status_code == 201
    assert reservation.json()["position"] == 1

    response = client.put(f"/loans/{loan['loan_id']}/return")
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Book returned successfully"
    assert body["loan"]["status"] == "returned"
    assert body["loan"]["days_remaining"] is None
    assert body["notification"] == "Reservation for user 2 is now ready"
    assert body["reservation"]["status"] == "ready"

    response = client.put(f"/loans/{loan['loan_id']}/return")
    assert response.status_code == 404


def test_fulfill_requires_api_key(client):
    book = _add_book(client)
    reservation = client.post("/reservations", json={"book_id": book["book_id"], "user_id": 4}).json()

    assert client.post(f"/reservations/{reservation['reservation_id']}/fulfill").status_code in (401, 403)

    response = client.post(f"/reservations/{reservation['reservation_id']}/fulfill", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["user_id"] == 4
    assert client.get(f"/books/{book['book_id']}/queue").json() == []


def test_cancel_reservation(client):
    book = _add_book(client)
    first = client.post("/reservations", json={"book_id": book["book_id"], "user_id": 1}).json()
    second = client.post("/reservations", json={"book_id": book["book_id"], "user_id": 2}).json()

    response = client.post(f"/reservations/{first['reservation_id']}/cancel")
    assert response.status_code == 200
    assert response.json()["message"] == "Reservation cancelled successfully"
    assert response.json()["reservation"]["status"] == "cancelled"
    assert response.json()["reservation"]["position"] is None

    queue = client.get(f"/books/{book['book_id']}/queue").json()
    assert [(r["reservation_id"], r["position"]) for r in queue] == [(second["reservation_id"], 1)]

    again = client.post(f"/reservations/{first['reservation_id']}/cancel")
    assert again.status_code == 400
    assert again.json()["code"] == "invalid_reservation_state"


def test_duplicate_reservation_is_400(client):
    book = _add_book(client)
    client.post("/reservations", json={"book_id": book["book_id"], "user_id": 1})
    response = client.post("/reservations", json={"book_id": book["book_id"], "user_id": 1})
    assert response.status_code == 400
    assert response.json()["code"] == "duplicate_reservation"


def test_user_views_and_overdue(client, clock):
    book = _add_book(client)
    loan = client.post("/loans/checkout", json={"book_id": book["book_id"], "user_id": 7}).json()
    clock.advance(days=15)

    overdue = client.get("/loans/overdue").json()
    assert [item["loan_id"] for item in overdue] == [loan["loan_id"]]
    assert overdue[0]["is_overdue"] is True
    assert overdue[0]["days_remaining"] == -1

    assert [item["loan_id"] for item in client.get("/loans/user/7").json()] == [loan["loan_id"]]
    assert client.get(f"/loans/{loan['loan_id']}").json()["user_id"] == 7
    assert client.get("/loans/9999").status_code == 404

    client.post("/reservations", json={"book_id": book["book_id"], "user_id": 7})
    assert len(client.get("/reservations/user/7").json()) == 1
    assert len(client.get("/reservations/active").json()) == 1


def test_copy_management(client):
    book = _add_book(client, copies=1)

    response = client.post(f"/books/{book['book_id']}/copies", headers=HEADERS, json={"count": 2})
    assert response.status_code == 200
    assert response.json()["total_copies"] == 3

    response = client.delete(f"/books/{book['book_id']}/copies", headers=HEADERS, params={"count": 3})
    assert response.json()["total_copies"] == 0

    response = client.delete(f"/books/{book['book_id']}/copies", headers=HEADERS, params={"count": 1})
    assert response.status_code == 400
    assert response.json()["code"] == "insufficient_available_copies"


def test_dashboard_stats(client):
    book = _add_book(client)
    client.post("/loans/checkout", json={"book_id": book["book_id"], "user_id": 1})
    client.post("/reservations", json={"book_id": book["book_id"], "user_id": 2})

    stats = client.get("/admin/dashboard-stats").json()
    assert stats == {
        "total_books": 1,
        "active_loans": 1,
        "overdue_loans": 0,
        "total_returned": 0,
        "pending_reservations": 1,
        "ready_reservations": 0,
    }


def test_inventory_inconsistency_is_500_and_audited(client, db):
    book = _add_book(client)
    client.post("/loans/checkout", json={"book_id": book["book_id"], "user_id": 1})
    with db.transaction() as conn:
        conn.execute("UPDATE books SET available_copies = 1 WHERE book_id = ?", (book["book_id"],))

    response = client.post("/loans/checkout", json={"book_id": book["book_id"], "user_id": 2})
    assert response.status_code == 500
    assert response.json()["code"] == "inventory_inconsistent"

    audit = client.get("/admin/inventory-audit", headers=HEADERS)
    assert audit.status_code == 200
    [item] = audit.json()
    assert item["book_id"] == book["book_id"]
    assert "free copies" in item["problems"]


def test_list_copies(client):
    book = _add_book(client, copies=2)
    loan = client.post("/loans/checkout", json={"book_id": book["book_id"], "user_id": 1}).json()

    copies = client.get(f"/books/{book['book_id']}/copies").json()
    statuses = {c["copy_id"]: c["status"] for c in copies}
    assert statuses[loan["copy_id"]] == "loaned"
    assert sorted(statuses.values()) == ["available", "loaned"]
    assert client.get("/books/999/copies").status_code == 404


def test_active_loans(client, clock):
    book = _add_book(client, copies=2)
    first = client.post("/loans/checkout", json={"book_id": book["book_id"], "user_id": 1}).json()
    clock.advance(days=1)
    second = client.post("/loans/checkout", json={"book_id": book["book_id"], "user_id": 2}).json()
    client.put(f"/loans/{first['loan_id']}/return")

    response = client.get("/loans/active")
    assert response.status_code == 200
    assert [item["loan_id"] for item in response.json()] == [second["loan_id"]]
    assert response.json()[0]["status"] == "active"


def test_lock_contention_is_409(db, clock, blocker):
    impatient = CirculationCoordinator(
        Database(db.path, busy_timeout=0.01), clock=clock, retry_attempts=2, retry_backoff=0.01
    )
    app.dependency_overrides[get_coordinator] = lambda: impatient
    try:
        response = TestClient(app).post("/loans/checkout", json={"book_id": 1, "user_id": 1})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 409
    assert response.json()["code"] == "concurrency_conflict"
