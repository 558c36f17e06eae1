"""
routes/expenses.py — Expense and item route handlers.

Layer rules:
  - Parse, validate, call ONE service, commit, return the expense.
  - No business logic. No DB queries. No bare SQL.
  - Responses are the bare Expense JSON the UI reads; errors use the
    {"error": {...}} envelope from the global handlers.

Endpoints (registered without a prefix):
  GET    /expense/:slug                                → 200  fetch
  POST   /expense                                      → 201  create
  POST   /expense/upload                               → 201  create from receipt image
  PUT    /expense/:slug                                → 200  replace items/adjustments
  POST   /expense/:slug/items                          → 200  add item (split by quantity)
  PATCH  /expense/:slug/adjustments                    → 200  update tax/service/discount
  POST   /expense/:slug/items/:itemId/claim            → 200  claim
  DELETE /expense/:slug/items/:itemId/claim/:personId  → 200  unclaim
"""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from backend.forkthebill.engine.models import Expense
from backend.forkthebill.errors import AppError, ErrorCode
from backend.forkthebill.extensions import db
from backend.forkthebill.repositories.expense_repository import SqlExpenseRepository
from backend.forkthebill.schemas.expense_schema import (
    AddItemSchema,
    AdjustmentsSchema,
    ClaimItemSchema,
    CreateExpenseSchema,
    ExpenseResponseSchema,
    ReplaceExpenseSchema,
    UploadReceiptSchema,
)
from backend.forkthebill.services import expense_service, receipt_service

expenses_bp = Blueprint("expenses", __name__)


# ── Shared helpers ─────────────────────────────────────────────────────────
# Pure wiring, no logic.

def repository() -> SqlExpenseRepository:
    return SqlExpenseRepository(db.session)


def max_attempts() -> int:
    return current_app.config["MUTATION_MAX_ATTEMPTS"]


def expense_response(expense: Expense, status: int = 200):
    return jsonify(ExpenseResponseSchema().dump(expense)), status


# ── Expense routes ─────────────────────────────────────────────────────────

@expenses_bp.route("/expense/<slug>", methods=["GET"])
def get_expense(slug: str):
    """GET /expense/:slug — Fetch an expense with items and people."""
    expense = expense_service.get_expense(slug, repository())
    return expense_response(expense)


@expenses_bp.route("/expense", methods=["POST"])
def create_expense():
    """POST /expense — Create an expense from manually entered items."""
    data = CreateExpenseSchema().load(request.get_json(force=True) or {})
    expense = expense_service.create_expense(data, repository())
    db.session.commit()
    return expense_response(expense, 201)


@expenses_bp.route("/expense/upload", methods=["POST"])
def create_expense_from_receipt():
    """
    POST /expense/upload — multipart form with the receipt image as `bill`
    and the payer's display name as `payerName`.
    """
    form = UploadReceiptSchema().load(request.form.to_dict())
    upload = request.files.get("bill")
    if upload is None:
        raise AppError(
            ErrorCode.MISSING_FIELD,
            "Attach the receipt image as the `bill` field.",
            400,
            field="bill",
        )

    expense = receipt_service.create_expense_from_receipt(
        image=upload.read(),
        content_type=upload.mimetype,
        payer_name=form["payer_name"],
        parser=current_app.extensions.get("receipt_parser"),
        repository=repository(),
        allowed_mimetypes=current_app.config["RECEIPT_ALLOWED_MIMETYPES"],
    )
    db.session.commit()
    return expense_response(expense, 201)


@expenses_bp.route("/expense/<slug>", methods=["PUT"])
def replace_expense(slug: str):
    """PUT /expense/:slug — Replace header fields, items and adjustments."""
    data = ReplaceExpenseSchema().load(request.get_json(force=True) or {})
    expense = expense_service.replace_expense(slug, data, repository(), max_attempts())
    db.session.commit()
    return expense_response(expense)


@expenses_bp.route("/expense/<slug>/adjustments", methods=["PATCH"])
def update_adjustments(slug: str):
    """PATCH /expense/:slug/adjustments — Omitted fields keep their value."""
    data = AdjustmentsSchema().load(request.get_json(force=True) or {})
    expense = expense_service.update_adjustments(slug, data, repository(), max_attempts())
    db.session.commit()
    return expense_response(expense)


# ── Item routes ────────────────────────────────────────────────────────────

@expenses_bp.route("/expense/<slug>/items", methods=["POST"])
def add_item(slug: str):
    """POST /expense/:slug/items — Append `quantity` unclaimed items."""
    data = AddItemSchema().load(request.get_json(force=True) or {})
    expense = expense_service.add_item(slug, data, repository(), max_attempts())
    db.session.commit()
    return expense_response(expense)


@expenses_bp.route("/expense/<slug>/items/<item_id>/claim", methods=["POST"])
def claim_item(slug: str, item_id: str):
    """
    POST /expense/:slug/items/:itemId/claim — Claim an item. A name that is
    not yet a participant becomes one.
    """
    data = ClaimItemSchema().load(request.get_json(force=True) or {})
    expense = expense_service.claim_item(
        slug,
        item_id,
        data["participant_ref"],
        repository(),
        max_attempts(),
    )
    db.session.commit()
    return expense_response(expense)


@expenses_bp.route(
    "/expense/<slug>/items/<item_id>/claim/<participant_id>",
    methods=["DELETE"],
)
def unclaim_item(slug: str, item_id: str, participant_id: str):
    """
    DELETE /expense/:slug/items/:itemId/claim/:participantId — Unclaim.
    Unclaiming an item the participant never claimed is a no-op.
    """
    expense = expense_service.unclaim_item(
        slug,
        item_id,
        participant_id,
        repository(),
        max_attempts(),
    )
    db.session.commit()
    return expense_response(expense)
