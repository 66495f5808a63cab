import pytest
from fastapi.testclient import TestClient

from api import app, get_library
from conftest import DUNE_ISBN, ULYSSES_ISBN
from config import settings

HEADERS = {"X-API-Key": settings.api_key, "X-Performed-By": "desk"}


@pytest.fixture
def client(stocked):
    # Route every request to the per-test library
    app.dependency_overrides[get_library] = lambda: stocked
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _lend(client, **body):
    return client.post("/lending/lend", headers=HEADERS, json=body)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["total_books"] == 2


def test_get_books(client):
    response = client.get("/books")
    assert response.status_code == 200
    books = response.json()
    assert [b["title"] for b in books] == ["Dune", "Ulysses"]
    assert books[0]["copiesAvailable"] == 1
    assert "_id" in books[0]


def test_add_book_with_valid_api_key(client):
    payload = {"isbn": "9780134686097", "title": "Effective Java", "author": "Joshua Bloch", "copiesAvailable": 2}
    response = client.post("/books", headers=HEADERS, json=payload)
    assert response.status_code == 201
    assert response.json()["isbn"] == "9780134686097"
    assert response.json()["copiesAvailable"] == 2


def test_add_book_with_invalid_api_key(client):
    payload = {"isbn": "9780134686097", "title": "Effective Java", "author": "Joshua Bloch"}
    response = client.post("/books", headers={"X-API-Key": "invalid-key"}, json=payload)
    assert response.status_code == 403


def test_add_book_invalid_isbn(client):
    payload = {"isbn": "9780321765723", "title": "Bad", "author": "Nobody"}
    response = client.post("/books", headers=HEADERS, json=payload)
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_book_update_delete_and_genres(client):
    response = client.put(f"/books/{DUNE_ISBN}", headers=HEADERS, json={"genre": "SF"})
    assert response.status_code == 200
    assert response.json()["genre"] == "SF"
    assert client.get("/books/genres/list").json() == ["Classic", "SF"]

    assert client.delete(f"/books/{DUNE_ISBN}", headers=HEADERS).status_code == 200
    assert client.get(f"/books/{DUNE_ISBN}").status_code == 404
    assert client.delete(f"/books/{DUNE_ISBN}", headers=HEADERS).status_code == 404


def test_readers(client):
    response = client.post("/reader/add", headers=HEADERS,
                           json={"fullName": "Amal Fernando", "nic": "987654321V", "email": "amal@example.com"})
    assert response.status_code == 201
    assert response.json()["memberId"] == "MBR-00003"

    assert len(client.get("/reader/all").json()) == 3
    assert client.get("/reader/MBR-00003").json()["fullName"] == "Amal Fernando"
    response = client.put("/reader/MBR-00003", headers=HEADERS, json={"phone": "0771234567"})
    assert response.json()["phone"] == "0771234567"
    assert client.delete("/reader/MBR-00003", headers=HEADERS).status_code == 200
    assert client.get("/reader/MBR-00003").status_code == 404


def test_lend_by_member_id(client):
    response = _lend(client, memberId="MBR-00001", isbn=ULYSSES_ISBN)
    assert response.status_code == 201
    body = response.json()
    assert body["readerId"]["memberId"] == "MBR-00001"
    assert body["bookId"]["isbn"] == ULYSSES_ISBN
    assert body["status"] == "active"
    assert body["isReturned"] is False
    assert body["lentBy"] == "desk"
    assert client.get(f"/books/{ULYSSES_ISBN}").json()["copiesAvailable"] == 1


def test_lend_by_nic(client):
    response = _lend(client, nic="123456789V", isbn=DUNE_ISBN)
    assert response.status_code == 201
    assert response.json()["readerId"]["fullName"] == "Kamala Silva"


@pytest.mark.parametrize("body,status,code", [
    ({"isbn": ULYSSES_ISBN}, 400, "validation_error"),
    ({"memberId": "MBR-00001"}, 400, "validation_error"),
    ({"memberId": "MBR-00404", "isbn": ULYSSES_ISBN}, 404, "not_found"),
    ({"memberId": "MBR-00001", "isbn": "9780134686097"}, 404, "not_found"),
])
def test_lend_errors(client, body, status, code):
    response = _lend(client, **body)
    assert response.status_code == status
    assert response.json()["code"] == code


def test_lend_when_no_copies_left(client):
    assert _lend(client, memberId="MBR-00001", isbn=DUNE_ISBN).status_code == 201
    response = _lend(client, memberId="MBR-00002", isbn=DUNE_ISBN)
    assert response.status_code == 409
    assert response.json()["code"] == "unavailable"


def test_lend_requires_api_key(client):
    response = client.post("/lending/lend", headers={"X-API-Key": "nope"},
                           json={"memberId": "MBR-00001", "isbn": ULYSSES_ISBN})
    assert response.status_code == 403


def test_return_twice(client):
    lending_id = _lend(client, memberId="MBR-00001", isbn=ULYSSES_ISBN).json()["_id"]
    first = client.post(f"/lending/return/{lending_id}", headers=HEADERS)
    assert first.status_code == 200
    assert first.json()["status"] == "returned"
    assert first.json()["fineAmount"] is None

    second = client.put(f"/lending/return/{lending_id}", headers=HEADERS)
    assert second.status_code == 409
    assert second.json()["code"] == "already_returned"
    assert client.get(f"/books/{ULYSSES_ISBN}").json()["copiesAvailable"] == 2


def test_return_unknown(client):
    assert client.post("/lending/return/999", headers=HEADERS).status_code == 404
    assert client.post("/lending/return/abc", headers=HEADERS).status_code == 400


def test_overdue_and_fines(client, clock):
    lending_id = _lend(client, memberId="MBR-00001", isbn=ULYSSES_ISBN).json()["_id"]
    clock.advance(days=15)

    overdue = client.get("/lending/overdue").json()["overdue"]
    assert [r["_id"] for r in overdue] == [lending_id]
    assert overdue[0]["isOverdue"] is True
    assert overdue[0]["daysOverdue"] == 1

    returned = client.post(f"/lending/return/{lending_id}", headers=HEADERS).json()
    assert returned["fineAmount"] == 50.0
    assert client.get("/lending/overdue").json() == {"overdue": []}
    assert [r["_id"] for r in client.get("/lending/overdue-returned").json()] == [lending_id]
    assert client.get("/lending/returned").status_code == 200


def test_notify_overdues(client, clock):
    lending_id = _lend(client, memberId="MBR-00002", isbn=DUNE_ISBN).json()["_id"]
    _lend(client, memberId="MBR-00001", isbn=ULYSSES_ISBN)
    clock.advance(days=15)
    client.post("/lending/return/2", headers=HEADERS)

    response = client.post("/lending/notify-overdues", headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 1
    notice = body["notices"][0]
    assert notice["member"]["memberId"] == "MBR-00002"
    assert notice["items"] == [{
        "lendingId": lending_id,
        "title": "Dune",
        "isbn": DUNE_ISBN,
        "dueDate": notice["items"][0]["dueDate"],
        "daysOverdue": 1,
        "fineToDate": 50.0,
    }]
    assert client.get("/audit/all", params={"action": "OTHER"}).json()[0]["performedBy"] == "desk"


def test_notify_overdues_requires_api_key(client):
    response = client.post("/lending/notify-overdues", headers={"X-API-Key": "wrong"})
    assert response.status_code == 403


def test_list_lendings_with_filters(client, clock):
    first = _lend(client, memberId="MBR-00001", isbn=ULYSSES_ISBN).json()["_id"]
    clock.advance(days=1)
    second = _lend(client, memberId="MBR-00002", isbn=DUNE_ISBN).json()["_id"]

    response = client.get("/lending")
    assert response.status_code == 200
    assert response.headers["X-Total-Count"] == "2"
    assert [r["_id"] for r in response.json()] == [second, first]

    assert [r["_id"] for r in client.get("/lending", params={"q": "kamala"}).json()] == [second]
    assert [r["_id"] for r in client.get("/lending/all", params={"order": "asc"}).json()] == [first, second]
    assert [r["_id"] for r in client.get("/lending", params={"limit": 1, "offset": 1}).json()] == [first]
    assert client.get("/lending", params={"status": "lost"}).status_code == 400
    assert client.get("/lending", params={"sort_by": "colour"}).status_code == 400


def test_paginated_lendings(client):
    for _ in range(2):
        _lend(client, memberId="MBR-00001", isbn=ULYSSES_ISBN)
    body = client.get("/lending/paginated", params={"page": 2, "page_size": 1}).json()
    assert body["total"] == 2
    assert body["total_pages"] == 2
    assert len(body["items"]) == 1


def test_lendings_by_book_reader_and_id(client):
    lending_id = _lend(client, memberId="MBR-00002", isbn=DUNE_ISBN).json()["_id"]
    assert [r["_id"] for r in client.get(f"/lending/book/{DUNE_ISBN}").json()] == [lending_id]
    assert [r["_id"] for r in client.get("/lending/reader/MBR-00002").json()] == [lending_id]
    assert client.get("/lending/reader/MBR-00001").json() == []
    assert client.get(f"/lending/{lending_id}").json()["bookId"]["title"] == "Dune"
    assert client.get("/lending/12345").status_code == 404


def test_dashboard_and_audit(client):
    _lend(client, memberId="MBR-00001", isbn=ULYSSES_ISBN)
    stats = client.get("/dash/all").json()
    assert stats["activeLendings"] == 1
    assert stats["totalReaders"] == 2

    logs = client.get("/audit/all", params={"action": "LEND"}).json()
    assert len(logs) == 1
    assert logs[0]["performedBy"] == "desk"
    assert client.get("/audit/all", params={"action": "EXPLODE"}).status_code == 400
