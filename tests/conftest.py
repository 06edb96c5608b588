from datetime import datetime, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from main import create_app
from reports import ReportingEngine
from repository import BookRepository

FIXED_NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def collection():
    # Fresh in-memory collection per test
    client = mongomock.MongoClient(tz_aware=True)
    yield client["library_test"]["books"]
    client.close()


@pytest.fixture
def repo(collection):
    return BookRepository(collection)


@pytest.fixture
def reports(collection):
    return ReportingEngine(collection, clock=lambda: FIXED_NOW)


@pytest.fixture
def client(repo, reports):
    app = create_app(repository=repo, reports=reports)
    return TestClient(app)


@pytest.fixture
def add_book(collection):
    """Insert a raw book document and return its id as a string."""

    def _add(**fields):
        doc = {
            "title": "Untitled",
            "author": "Anonymous",
            "genre": None,
            "totalCopies": 1,
            "availableCopies": 1,
            "borrowHistory": [],
            "ratings": [],
            "addedDate": FIXED_NOW,
        }
        doc.update(fields)
        return str(collection.insert_one(doc).inserted_id)

    return _add


def borrow(name, when, status="borrowed", returned=None):
    return {"borrowerName": name, "borrowDate": when, "returnDate": returned, "status": status}


def rating(value, review=None, when=FIXED_NOW):
    return {"rating": value, "review": review, "reviewDate": when}
