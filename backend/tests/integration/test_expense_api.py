"""
tests/integration/test_expense_api.py — Expense create, fetch, replace, items
and adjustments over HTTP.

Endpoints covered:
  POST  /expense                        → 201
  GET   /expense/:slug                  → 200 / 404
  PUT   /expense/:slug                  → 200
  POST  /expense/:slug/items            → 200
  PATCH /expense/:slug/adjustments      → 200

Also covers the error envelope for schema errors, malformed JSON, unknown
routes, optimistic-concurrency conflicts and unexpected exceptions.
Amounts must appear as strings in JSON, never numbers.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from backend.forkthebill.errors import ConflictError
from backend.forkthebill.repositories.expense_repository import SqlExpenseRepository
from backend.forkthebill.services import expense_service


# ═══════════════════════════════════════════════════════════════════════════
# POST /expense
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateExpense:

    def test_create_returns_201_with_expense(self, create_expense):
        data = create_expense()

        assert data["slug"].startswith("olive-garden-")
        assert data["payerName"] == "Alice"
        assert data["subtotal"] == "30.50"
        assert data["tax"] == "3.05"
        assert data["totalAmount"] == "33.55"
        assert [p["name"] for p in data["people"]] == ["Alice"]
        for item in data["items"]:
            assert isinstance(item["price"], str), "Item prices must be strings in JSON"
            assert item["claimedBy"] == []

    def test_create_splits_quantity_lines(self, create_expense):
        data = create_expense(items=[{"name": "Coke", "price": "10.00", "quantity": 3}])

        assert [i["price"] for i in data["items"]] == ["3.34", "3.33", "3.33"]
        assert [i["quantity"] for i in data["items"]] == [1, 2, 3]
        assert all(i["totalQuantity"] == 3 for i in data["items"])

    def test_create_accepts_numbers_for_amounts(self, create_expense):
        data = create_expense(items=[{"name": "Pizza", "price": 18.5}], tax=2)

        assert data["items"][0]["price"] == "18.50"
        assert data["tax"] == "2.00"

    def test_create_with_people(self, create_expense):
        data = create_expense(people=[{"name": "Bob", "isFinished": True}])

        bob = next(p for p in data["people"] if p["name"] == "Bob")
        assert bob["finished"] is True
        assert bob["totalOwed"] == "0.00"

    def test_create_missing_payer_is_400(self, client):
        resp = client.post("/expense", json={"items": []})

        assert resp.status_code == 400
        error = resp.get_json()["error"]
        assert error["code"] == "MISSING_FIELD"
        assert error["field"] == "payerName"

    def test_create_precision_error_is_400(self, client):
        resp = client.post("/expense", json={"payerName": "Alice", "tax": "1.001"})

        assert resp.status_code == 400
        assert resp.get_json()["error"] == {
            "code": "INVALID_AMOUNT_PRECISION",
            "message": "Amount must have at most 2 decimal places.",
            "field": "tax",
        }

    def test_nested_error_reports_field_path(self, client):
        resp = client.post("/expense", json={
            "payerName": "Alice",
            "items": [{"name": "Pizza", "price": "-5"}],
        })

        assert resp.status_code == 400
        error = resp.get_json()["error"]
        assert error["code"] == "INVALID_AMOUNT"
        assert error["field"] == "items.0.price"

    def test_duplicate_people_is_400(self, client):
        resp = client.post("/expense", json={
            "payerName": "Alice",
            "people": [{"name": "Bob"}, {"name": "Bob"}],
        })

        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "DUPLICATE_PARTICIPANT"

    def test_malformed_json_is_400(self, client):
        resp = client.post("/expense", data="{not json", content_type="application/json")

        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "MALFORMED_REQUEST"


# ═══════════════════════════════════════════════════════════════════════════
# GET /expense/:slug
# ═══════════════════════════════════════════════════════════════════════════

class TestGetExpense:

    def test_get_returns_stored_expense(self, client, create_expense):
        created = create_expense()

        resp = client.get(f"/expense/{created['slug']}")

        assert resp.status_code == 200
        assert resp.get_json() == created

    def test_get_unknown_slug_is_404(self, client):
        resp = client.get("/expense/does-not-exist")

        assert resp.status_code == 404
        assert resp.get_json()["error"]["code"] == "EXPENSE_NOT_FOUND"

    def test_unknown_route_is_404_envelope(self, client):
        resp = client.get("/nothing/here")

        assert resp.status_code == 404
        assert resp.get_json()["error"]["code"] == "ROUTE_NOT_FOUND"

    def test_wrong_method_is_405_envelope(self, client):
        resp = client.delete("/expense")

        assert resp.status_code == 405
        assert resp.get_json()["error"]["code"] == "METHOD_NOT_ALLOWED"

    def test_unexpected_error_is_500_without_details(self, client, monkeypatch):
        def boom(slug, repository):
            raise RuntimeError("database on fire")

        monkeypatch.setattr(expense_service, "get_expense", boom)

        resp = client.get("/expense/anything")

        assert resp.status_code == 500
        error = resp.get_json()["error"]
        assert error["code"] == "INTERNAL_ERROR"
        assert "fire" not in error["message"]


# ═══════════════════════════════════════════════════════════════════════════
# PUT /expense/:slug
# ═══════════════════════════════════════════════════════════════════════════

class TestReplaceExpense:

    def test_replace_items_keeps_known_claims(self, client, create_expense, item_id):
        created = create_expense()
        slug = created["slug"]
        pizza = item_id(created, "Pizza")
        client.post(f"/expense/{slug}/items/{pizza}/claim", json={"participantName": "Bob"})

        resp = client.put(f"/expense/{slug}", json={
            "restaurantName": "Olive Garden Downtown",
            "items": [{"id": pizza, "name": "Pizza", "price": "20.00"}],
            "tax": "2.00",
            "totalAmount": "0.00",
        })

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["restaurantName"] == "Olive Garden Downtown"
        assert len(data["items"]) == 1
        assert data["totalAmount"] == "22.00"
        bob = next(p for p in data["people"] if p["name"] == "Bob")
        assert data["items"][0]["claimedBy"] == [bob["id"]]
        assert bob["totalOwed"] == "22.00"

    def test_replace_without_quantities_keeps_groups(self, client, create_expense):
        created = create_expense(items=[{"name": "Coke", "price": "9.00", "quantity": 3}])

        resp = client.put(f"/expense/{created['slug']}", json={
            "items": [
                {"id": i["id"], "name": i["name"], "price": i["price"]}
                for i in created["items"]
            ],
            "tax": "1.00",
        })

        assert resp.status_code == 200
        assert [(i["quantity"], i["totalQuantity"]) for i in resp.get_json()["items"]] == [
            (1, 3), (2, 3), (3, 3),
        ]

    def test_create_applies_flag_to_payer_entry(self, create_expense):
        created = create_expense(people=[
            {"name": "Alice", "isFinished": True},
            {"name": "Bob", "isFinished": True},
        ])

        assert {p["name"]: p["finished"] for p in created["people"]} == {
            "Alice": True,
            "Bob": True,
        }

    def test_replace_with_unknown_claimant_is_404(self, client, create_expense):
        created = create_expense()

        resp = client.put(f"/expense/{created['slug']}", json={
            "items": [{"name": "Pizza", "price": "20.00", "claimedBy": ["ghost"]}],
        })

        assert resp.status_code == 404
        assert resp.get_json()["error"]["code"] == "PARTICIPANT_NOT_FOUND"

    def test_failed_replace_leaves_state_untouched(self, client, create_expense):
        created = create_expense()
        slug = created["slug"]

        client.put(f"/expense/{slug}", json={
            "tax": "9.00",
            "items": [{"name": "Pizza", "price": "20.00", "claimedBy": ["ghost"]}],
        })

        assert client.get(f"/expense/{slug}").get_json() == created


# ═══════════════════════════════════════════════════════════════════════════
# POST /expense/:slug/items and PATCH /expense/:slug/adjustments
# ═══════════════════════════════════════════════════════════════════════════

class TestItemsAndAdjustments:

    def test_add_multi_quantity_item(self, client, create_expense):
        slug = create_expense()["slug"]

        resp = client.post(
            f"/expense/{slug}/items",
            json={"name": "Coke", "totalPrice": "9.00", "quantity": 3},
        )

        assert resp.status_code == 200
        cokes = [i for i in resp.get_json()["items"] if i["name"] == "Coke"]
        assert len(cokes) == 3
        assert all(c["price"] == "3.00" for c in cokes)
        assert all(c["totalQuantity"] == 3 for c in cokes)
        assert all(c["claimedBy"] == [] for c in cokes)

    def test_add_item_zero_quantity_is_400(self, client, create_expense):
        slug = create_expense()["slug"]

        resp = client.post(
            f"/expense/{slug}/items",
            json={"name": "Coke", "totalPrice": "9.00", "quantity": 0},
        )

        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "INVALID_QUANTITY"

    def test_update_adjustments(self, client, create_expense, item_id, person):
        created = create_expense()
        slug = created["slug"]
        client.post(
            f"/expense/{slug}/items/{item_id(created, 'Pizza')}/claim",
            json={"participantName": "Alice"},
        )
        client.post(
            f"/expense/{slug}/items/{item_id(created, 'Salad')}/claim",
            json={"participantName": "Bob"},
        )

        resp = client.patch(
            f"/expense/{slug}/adjustments",
            json={"tax": "5.00", "serviceCharge": "2.00", "discount": "1.00"},
        )

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["tax"] == "5.00"
        assert data["serviceCharge"] == "2.00"
        assert data["discount"] == "1.00"
        assert person(data, "Alice")["subtotal"] == "18.00"
        assert person(data, "Bob")["subtotal"] == "12.50"
        owed = sum(Decimal(p["totalOwed"]) for p in data["people"])
        assert owed == Decimal(data["totalAmount"])

    def test_negative_adjustment_is_400(self, client, create_expense):
        slug = create_expense()["slug"]

        resp = client.patch(f"/expense/{slug}/adjustments", json={"discount": "-1"})

        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "INVALID_AMOUNT"


# ═══════════════════════════════════════════════════════════════════════════
# Optimistic concurrency
# ═══════════════════════════════════════════════════════════════════════════

class TestConflicts:

    def test_persistent_conflict_is_409(self, client, create_expense, item_id, monkeypatch):
        created = create_expense()

        def always_conflict(self, expense):
            raise ConflictError("someone else saved first")

        monkeypatch.setattr(SqlExpenseRepository, "save", always_conflict)

        resp = client.post(
            f"/expense/{created['slug']}/items/{item_id(created, 'Pizza')}/claim",
            json={"participantName": "Bob"},
        )

        assert resp.status_code == 409
        assert resp.get_json()["error"]["code"] == "EXPENSE_CONFLICT"

    def test_stale_version_is_rejected_by_storage(self, app, create_expense):
        created = create_expense()

        with app.app_context():
            from backend.forkthebill.extensions import db

            repo = SqlExpenseRepository(db.session)
            first = repo.get(created["slug"])
            second = repo.get(created["slug"])

            repo.save(first)
            db.session.commit()

            with pytest.raises(ConflictError):
                repo.save(second)
            db.session.rollback()

            assert repo.get(created["slug"]).version == 2
