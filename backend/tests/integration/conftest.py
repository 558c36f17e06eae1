"""
tests/integration/conftest.py — Fixtures and helpers for all integration tests.

Design:
  - The app is created once per session using create_app("testing"), which
    points at in-memory SQLite unless TEST_DATABASE_URL is set.
  - The table is created once via db.create_all() at session start.
  - Between tests, all rows are deleted so tests are isolated.

Helper fixtures (factories, so tests can pass arbitrary arguments):
  - create_expense(**overrides) → Expense JSON of a freshly created expense
  - item_id(expense, name)      → id of the first item with that name
  - person(expense, name)       → the person dict with that name
"""

from __future__ import annotations

import pytest
from sqlalchemy import text

from backend.forkthebill import create_app
from backend.forkthebill.extensions import db as _db
from backend.forkthebill.services.receipt_service import ReceiptParseError


# ═══════════════════════════════════════════════════════════════════════════
# Session-scoped app fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def app():
    """
    Creates the Flask application in 'testing' mode once for the entire
    test session, creates the schema, and drops it at teardown.
    """
    flask_app = create_app("testing")

    with flask_app.app_context():
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


# ═══════════════════════════════════════════════════════════════════════════
# Function-scoped test isolation
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def clean_tables(app):
    """Deletes all rows after every test in the integration suite."""
    yield  # run the test

    with app.app_context():
        _db.session.rollback()  # discard any uncommitted state from a failed test
        _db.session.execute(text("DELETE FROM expenses"))
        _db.session.commit()


# ═══════════════════════════════════════════════════════════════════════════
# Receipt parser double
# ═══════════════════════════════════════════════════════════════════════════

class FakeReceiptParser:
    """Returns a canned receipt, or raises ReceiptParseError for b"blurry"."""

    def __init__(self) -> None:
        self.calls: list[tuple[bytes, str]] = []

    def parse(self, image: bytes, content_type: str) -> dict:
        self.calls.append((image, content_type))
        if image == b"blurry":
            raise ReceiptParseError("image too blurry")
        return {
            "restaurantName": "Olive Garden",
            "items": [
                {"name": "Coke", "price": "9.00", "quantity": 3},
                {"name": "Pizza", "price": "18.00"},
            ],
            "tax": "3.05",
        }


@pytest.fixture
def receipt_parser(app, monkeypatch):
    parser = FakeReceiptParser()
    monkeypatch.setitem(app.extensions, "receipt_parser", parser)
    return parser


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def create_expense(client):
    """
    POST /expense with a two-item default body: Pizza 18.00 and Salad 12.50,
    tax 3.05, paid by Alice. Keyword arguments override body keys.
    """

    def _create(**overrides) -> dict:
        body = {
            "payerName": "Alice",
            "restaurantName": "Olive Garden",
            "items": [
                {"name": "Pizza", "price": "18.00"},
                {"name": "Salad", "price": "12.50"},
            ],
            "tax": "3.05",
        }
        body.update(overrides)
        resp = client.post("/expense", json=body)
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()

    return _create


@pytest.fixture
def item_id():
    def _item_id(expense: dict, name: str) -> str:
        return next(i["id"] for i in expense["items"] if i["name"] == name)

    return _item_id


@pytest.fixture
def person():
    def _person(expense: dict, name: str) -> dict | None:
        return next((p for p in expense["people"] if p["name"] == name), None)

    return _person
