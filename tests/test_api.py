import json
from datetime import date
from threading import Thread

import pytest
from fastapi.testclient import TestClient

import api
from api import app, get_library
from backup import build_backup, dump_backup
from config import settings

HEADERS = {"X-API-Key": settings.api_key}


@pytest.fixture
def client(lib):
    # Every request gets the per-test library
    app.dependency_overrides[get_library] = lambda: lib
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _create_book(client, isbn="9780321765723", copies=1):
    payload = {"title": "Effective C++", "author": "Scott Meyers", "isbn": isbn, "total_copies": copies}
    response = client.post("/books", headers=HEADERS, json=payload)
    assert response.status_code == 201
    return response.json()


def _create_student(client, reg="2024001"):
    payload = {"name": "Ana Souza", "registration_number": reg, "class_name": "7A"}
    response = client.post("/students", headers=HEADERS, json=payload)
    assert response.status_code == 201
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["db"] is True
    assert body["total_books"] == 0


def test_get_books(client):
    response = client.get("/books")
    assert response.status_code == 200
    assert response.json() == []


def test_add_book_with_valid_api_key(client):
    book = _create_book(client, copies=2)
    assert book["isbn"] == "9780321765723"
    assert book["available_copies"] == 2

    response = client.get(f"/books/{book['id']}")
    assert response.status_code == 200
    assert response.json()["title"] == "Effective C++"


def test_add_book_with_invalid_api_key(client):
    payload = {"title": "T", "author": "A", "isbn": "1"}
    response = client.post("/books", headers={"X-API-Key": "invalid-key"}, json=payload)
    assert response.status_code == 403
    assert client.get("/books").json() == []


def test_add_book_without_api_key(client):
    response = client.post("/books", json={"title": "T", "author": "A", "isbn": "1"})
    assert response.status_code == 403


def test_duplicate_isbn_is_conflict(client):
    _create_book(client)
    response = client.post("/books", headers=HEADERS, json={"title": "X", "author": "Y", "isbn": "9780321765723"})
    assert response.status_code == 409
    assert response.json()["reason"] == "constraint_violation"
    assert response.json()["field"] == "isbn"


def test_blank_title_is_bad_request(client):
    response = client.post("/books", headers=HEADERS, json={"title": " ", "author": "Y", "isbn": "1"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Title cannot be empty."


def test_search_books(client):
    _create_book(client)
    assert len(client.get("/books", params={"q": "meyers"}).json()) == 1
    assert client.get("/books", params={"q": "tolkien"}).json() == []


def test_get_missing_book(client):
    response = client.get("/books/999")
    assert response.status_code == 404


def test_update_and_delete_book(client):
    book = _create_book(client, copies=1)

    response = client.put(f"/books/{book['id']}", headers=HEADERS, json={"total_copies": 3})
    assert response.status_code == 200
    assert response.json()["available_copies"] == 3

    response = client.delete(f"/books/{book['id']}", headers=HEADERS)
    assert response.status_code == 200
    assert response.json() == {"deleted": book["id"]}

    response = client.delete(f"/books/{book['id']}", headers=HEADERS)
    assert response.status_code == 404


def test_update_book_without_fields_is_bad_request(client):
    book = _create_book(client)
    response = client.put(f"/books/{book['id']}", headers=HEADERS, json={})
    assert response.status_code == 400


def test_students_crud(client):
    student = _create_student(client)
    assert client.get(f"/students/{student['id']}").json()["name"] == "Ana Souza"

    response = client.put(f"/students/{student['id']}", headers=HEADERS, json={"class_name": "8A"})
    assert response.json()["class_name"] == "8A"

    assert len(client.get("/students", params={"q": "ana"}).json()) == 1
    assert client.delete(f"/students/{student['id']}", headers=HEADERS).status_code == 200
    assert client.get(f"/students/{student['id']}").status_code == 404


def test_checkout_and_return(client):
    book = _create_book(client)
    student = _create_student(client)

    response = client.post("/loans", headers=HEADERS,
                           json={"book_id": book["id"], "student_id": student["id"], "due_date": "2030-01-15"})
    assert response.status_code == 201
    loan = response.json()
    assert loan["status"] == "active"
    assert loan["due_date"] == "2030-01-15"
    assert client.get(f"/books/{book['id']}").json()["available_copies"] == 0

    listed = client.get("/loans").json()
    assert listed[0]["book_title"] == "Effective C++"
    assert listed[0]["student_name"] == "Ana Souza"

    response = client.post(f"/loans/{loan['id']}/return", headers=HEADERS, json={"return_date": "2030-01-10"})
    assert response.status_code == 200
    assert response.json()["return_date"] == "2030-01-10"
    assert client.get("/loans", params={"status": "returned"}).json()[0]["id"] == loan["id"]

    response = client.post(f"/loans/{loan['id']}/return", headers=HEADERS)
    assert response.status_code == 409
    assert response.json()["reason"] == "invalid_loan_state"


def test_checkout_unavailable_is_conflict(client):
    book = _create_book(client, copies=0)
    student = _create_student(client)
    response = client.post("/loans", headers=HEADERS, json={"book_id": book["id"], "student_id": student["id"]})
    assert response.status_code == 409
    assert response.json()["reason"] == "unavailable"


def test_checkout_unknown_student_is_not_found(client):
    book = _create_book(client)
    response = client.post("/loans", headers=HEADERS, json={"book_id": book["id"], "student_id": 42})
    assert response.status_code == 404


def test_overdue_and_stats(client, lib):
    book = _create_book(client)
    student = _create_student(client)
    lib.checkout(book["id"], student["id"], loan_date=date(2020, 1, 1))

    overdue = client.get("/loans/overdue").json()
    assert len(overdue) == 1
    assert overdue[0]["overdue_days"] > 0

    stats = client.get("/stats").json()
    assert stats["total_books"] == 1
    assert stats["active_loans"] == 1
    assert stats["overdue_loans"] == 1


def test_export_backup(client):
    _create_book(client)
    response = client.get("/backup", headers=HEADERS)
    assert response.status_code == 200
    assert "attachment; filename=\"backup-library-" in response.headers["content-disposition"]
    payload = json.loads(response.content)
    assert payload["recordCount"] == 1
    assert payload["books"][0]["isbn"] == "9780321765723"


def test_export_backup_requires_api_key(client):
    assert client.get("/backup").status_code == 403


def test_import_backup(client, lib):
    _create_book(client)
    snapshot = {
        "books": [{"id": 5, "title": "Emma", "author": "Jane Austen", "isbn": "111",
                   "totalCopies": 1, "availableCopies": 1}],
        "students": [],
        "loans": [],
    }
    response = client.post("/backup", headers=HEADERS, content=dump_backup(build_backup(snapshot)).encode("utf-8"))
    assert response.status_code == 200
    assert response.json()["state"] == "committed"
    assert response.json()["record_count"] == 1
    assert [b.title for b in lib.list_books()] == ["Emma"]


def test_import_invalid_backup_is_bad_request(client, lib):
    _create_book(client)
    response = client.post("/backup", headers=HEADERS, content=b"{broken")
    assert response.status_code == 400
    assert response.json()["reason"] == "parse_error"

    payload = build_backup({"books": [], "students": [], "loans": []})
    payload["checksum"] = "0"
    response = client.post("/backup", headers=HEADERS, content=json.dumps(payload).encode("utf-8"))
    assert response.status_code == 400
    assert response.json()["reason"] == "checksum_mismatch"
    assert len(lib.list_books()) == 1


def test_import_rolled_back_is_server_error(client, lib):
    _create_book(client)
    book = {"title": "Emma", "author": "Jane Austen", "isbn": "dup", "totalCopies": 1, "availableCopies": 1}
    snapshot = {"books": [dict(book, id=1), dict(book, id=2)], "students": [], "loans": []}
    response = client.post("/backup", headers=HEADERS, content=dump_backup(build_backup(snapshot)).encode("utf-8"))
    assert response.status_code == 500
    assert response.json()["reason"] == "rolled_back"
    assert response.json()["recoverable"] is True
    assert [b.isbn for b in lib.list_books()] == ["9780321765723"]


def test_get_library_opens_one_library_across_threads(db_file, monkeypatch):
    monkeypatch.setattr(api, "_library", None)
    opened = []
    threads = [Thread(target=lambda: opened.append(api.get_library())) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len({id(library) for library in opened}) == 1
    opened[0].close()


def test_concurrent_requests_share_the_library(client):
    _create_book(client)
    statuses = []

    def browse():
        for _ in range(20):
            statuses.append(client.get("/books").status_code)
            statuses.append(client.get("/stats").status_code)

    threads = [Thread(target=browse) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert set(statuses) == {200}


def test_import_hostile_backup_is_bad_request(client):
    response = client.post("/backup", headers=HEADERS, content=("[" * 200000 + "]" * 200000).encode("ascii"))
    assert response.status_code == 400
    assert response.json()["reason"] == "parse_error"

    body = (
        '{"version":"1.0","exportTimestamp":"2024-01-01T00:00:00.000Z","recordCount":1,'
        '"books":[{"title":"\\udc00"}],"students":[],"loans":[],"checksum":"abc"}'
    )
    response = client.post("/backup", headers=HEADERS, content=body.encode("ascii"))
    assert response.status_code == 400
    assert response.json()["reason"] == "checksum_mismatch"
