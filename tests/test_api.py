from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from pymongo.errors import PyMongoError, ServerSelectionTimeoutError

import database
from config import Settings
from main import create_app
from reports import ReportingEngine
from repository import BookRepository

BOOK = {"title": "T", "author": "A", "genre": "Fiction", "totalCopies": 2, "availableCopies": 2}


def create(client, **fields):
    response = client.post("/api/books", json={**BOOK, **fields})
    assert response.status_code == 201
    return response.json()["bookId"]


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "OK", "message": "Server is running"}


def test_root_and_schema(client):
    assert client.get("/").status_code == 200
    schema = client.get("/schema").json()
    assert "totalCopies" in schema["book"]["properties"]
    assert "borrowerName" in schema["borrowRecord"]["properties"]


def test_create_and_fetch_book(client):
    response = client.post("/api/books", json=BOOK)
    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "Book added successfully"

    book = client.get(f"/api/books/{body['bookId']}").json()
    assert book["id"] == body["bookId"]
    assert book["title"] == "T"
    assert book["borrowHistory"] == []
    assert book["ratings"] == []
    assert book["addedDate"]


def test_create_requires_title(client):
    response = client.post("/api/books", json={"author": "A"})
    assert response.status_code == 422
    assert "title" in response.json()["error"]


def test_list_books(client):
    create(client, title="One")
    create(client, title="Two")
    response = client.get("/api/books")
    assert response.status_code == 200
    assert sorted(b["title"] for b in response.json()) == ["One", "Two"]


def test_get_unknown_and_malformed_ids(client):
    response = client.get(f"/api/books/{ObjectId()}")
    assert response.status_code == 404
    assert response.json() == {"error": "Book not found"}
    assert client.get("/api/books/not-an-id").status_code == 404


def test_update_book(client):
    book_id = create(client)
    response = client.put(f"/api/books/{book_id}", json={"genre": "Drama", "_id": "ignored"})
    assert response.status_code == 200
    assert response.json() == {"message": "Book updated successfully"}
    assert client.get(f"/api/books/{book_id}").json()["genre"] == "Drama"


def test_update_unknown_book(client):
    response = client.put(f"/api/books/{ObjectId()}", json={"title": "X"})
    assert response.status_code == 404


def test_update_breaking_copy_counts(client):
    book_id = create(client)
    response = client.put(f"/api/books/{book_id}", json={"availableCopies": 5})
    assert response.status_code == 400
    assert "error" in response.json()


def test_delete_book(client):
    book_id = create(client)
    assert client.delete(f"/api/books/{book_id}").status_code == 200
    assert client.get(f"/api/books/{book_id}").status_code == 404


def test_delete_unknown_book_is_404(client):
    response = client.delete(f"/api/books/{ObjectId()}")
    assert response.status_code == 404
    assert response.json() == {"error": "Book not found"}


def test_borrow_and_return(client):
    book_id = create(client)

    response = client.post(f"/api/books/{book_id}/borrow", json={"borrowerName": "alice"})
    assert response.status_code == 200
    book = client.get(f"/api/books/{book_id}").json()
    assert book["availableCopies"] == 1
    assert book["borrowHistory"][0]["status"] == "borrowed"

    response = client.post(f"/api/books/{book_id}/return", json={"borrowerName": "alice"})
    assert response.status_code == 200
    book = client.get(f"/api/books/{book_id}").json()
    assert book["availableCopies"] == 2
    assert book["borrowHistory"][0]["status"] == "returned"
    assert book["borrowHistory"][0]["returnDate"]


def test_borrow_unknown_book(client):
    response = client.post(f"/api/books/{ObjectId()}/borrow", json={"borrowerName": "alice"})
    assert response.status_code == 404


def test_borrow_when_none_left(client):
    book_id = create(client, totalCopies=1, availableCopies=1)
    client.post(f"/api/books/{book_id}/borrow", json={"borrowerName": "alice"})
    response = client.post(f"/api/books/{book_id}/borrow", json={"borrowerName": "bob"})
    assert response.status_code == 400
    assert response.json() == {"error": "No copies available"}


def test_return_without_active_borrow(client):
    book_id = create(client)
    response = client.post(f"/api/books/{book_id}/return", json={"borrowerName": "alice"})
    assert response.status_code == 400
    assert response.json() == {"error": "No active borrow record found"}


def test_return_unknown_book(client):
    response = client.post(f"/api/books/{ObjectId()}/return", json={"borrowerName": "alice"})
    assert response.status_code == 404


def test_add_rating(client):
    book_id = create(client)
    response = client.post(f"/api/books/{book_id}/rating", json={"rating": 5, "review": "Loved it"})
    assert response.status_code == 200
    [entry] = client.get(f"/api/books/{book_id}").json()["ratings"]
    assert entry["rating"] == 5
    assert entry["review"] == "Loved it"


@pytest.mark.parametrize("value", [0, 6])
def test_rating_out_of_range(client, value):
    book_id = create(client)
    response = client.post(f"/api/books/{book_id}/rating", json={"rating": value})
    assert response.status_code == 422


def test_rating_unknown_book(client):
    response = client.post(f"/api/books/{ObjectId()}/rating", json={"rating": 3})
    assert response.status_code == 404


def test_ratings_flow_into_dashboard(client):
    first = create(client, title="First")
    second = create(client, title="Second")
    for book_id, value in ((first, 5), (first, 4), (second, 3)):
        client.post(f"/api/books/{book_id}/rating", json={"rating": value})

    stats = client.get("/api/books/stats/dashboard").json()
    assert stats["totalRatings"] == 3
    assert stats["avgRating"] == pytest.approx(4.0)


def test_popular_after_two_borrows(client):
    book_id = create(client)
    client.post(f"/api/books/{book_id}/borrow", json={"borrowerName": "alice"})
    client.post(f"/api/books/{book_id}/borrow", json={"borrowerName": "bob"})

    assert client.get(f"/api/books/{book_id}").json()["availableCopies"] == 0
    [popular] = client.get("/api/books/stats/popular").json()
    assert popular["id"] == book_id
    assert popular["borrowCount"] == 2


@pytest.mark.parametrize("report", [
    "dashboard", "popular", "ratings", "low-stock", "trends", "authors", "borrowers",
])
def test_every_report_responds(client, report):
    create(client)
    response = client.get(f"/api/books/stats/{report}")
    assert response.status_code == 200


def test_store_failure_is_500():
    collection = MagicMock()
    collection.find.side_effect = ServerSelectionTimeoutError("store unreachable")
    collection.aggregate.side_effect = ServerSelectionTimeoutError("store unreachable")
    app = create_app(repository=BookRepository(collection), reports=ReportingEngine(collection))
    client = TestClient(app)

    for path in ("/api/books", "/api/books/stats/dashboard"):
        response = client.get(path)
        assert response.status_code == 500
        assert response.json() == {"error": "store unreachable"}


def test_collection_paths_accept_trailing_slash(client):
    response = client.post("/api/books/", json=BOOK, follow_redirects=False)
    assert response.status_code == 201
    book_id = response.json()["bookId"]

    response = client.get("/api/books/", follow_redirects=False)
    assert response.status_code == 200
    assert [b["id"] for b in response.json()] == [book_id]


def test_update_null_clears_optional_field(client):
    book_id = create(client)
    response = client.put(f"/api/books/{book_id}", json={"genre": None})
    assert response.status_code == 200
    assert client.get(f"/api/books/{book_id}").json()["genre"] is None


def test_update_null_title_is_rejected(client):
    book_id = create(client)
    response = client.put(f"/api/books/{book_id}", json={"title": None})
    assert response.status_code == 422
    assert client.get(f"/api/books/{book_id}").json()["title"] == "T"


def test_lowering_total_below_loans_is_rejected(client):
    book_id = create(client)
    client.post(f"/api/books/{book_id}/borrow", json={"borrowerName": "alice"})
    response = client.put(f"/api/books/{book_id}", json={"totalCopies": 1})
    assert response.status_code == 400
    assert client.get(f"/api/books/{book_id}").json()["totalCopies"] == 2


UNREACHABLE = Settings(database_url="mongodb://127.0.0.1:1", database_timeout_ms=300)


def test_connect_fails_fast_when_store_is_unreachable():
    with pytest.raises(PyMongoError):
        database.connect(UNREACHABLE)


def test_startup_aborts_when_store_is_unreachable():
    app = create_app(settings=UNREACHABLE)
    with pytest.raises(Exception):
        with TestClient(app):
            pass
