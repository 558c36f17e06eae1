"""
routes/people.py — Participant route handlers.

Endpoints:
  POST /expense/:slug/people                      → 200  add participant
  PUT  /expense/:slug/people/:personId/finish     → 200  mark finished
  PUT  /expense/:slug/people/:personId/pending    → 200  mark pending
  PUT  /expense/:slug/people/:personId/toggle     → 200  flip finished

:personId is a participant id or an exact display name. An unknown name
creates the participant first, so the UI can mark someone finished before
they have claimed anything. A value shaped like a generated id that matches
nobody is 404 PARTICIPANT_NOT_FOUND.
"""

from __future__ import annotations

from flask import Blueprint, request

from backend.forkthebill.extensions import db
from backend.forkthebill.routes.expenses import expense_response, max_attempts, repository
from backend.forkthebill.schemas.expense_schema import AddParticipantSchema
from backend.forkthebill.services import expense_service

people_bp = Blueprint("people", __name__)


@people_bp.route("/expense/<slug>/people", methods=["POST"])
def add_participant(slug: str):
    """POST /expense/:slug/people — Add a participant by name. Idempotent."""
    data = AddParticipantSchema().load(request.get_json(force=True) or {})
    expense = expense_service.add_participant(slug, data, repository(), max_attempts())
    db.session.commit()
    return expense_response(expense)


@people_bp.route("/expense/<slug>/people/<person_id>/finish", methods=["PUT"])
def mark_finished(slug: str, person_id: str):
    expense = expense_service.set_finished(
        slug, person_id, True, repository(), max_attempts()
    )
    db.session.commit()
    return expense_response(expense)


@people_bp.route("/expense/<slug>/people/<person_id>/pending", methods=["PUT"])
def mark_pending(slug: str, person_id: str):
    expense = expense_service.set_finished(
        slug, person_id, False, repository(), max_attempts()
    )
    db.session.commit()
    return expense_response(expense)


@people_bp.route("/expense/<slug>/people/<person_id>/toggle", methods=["PUT"])
def toggle_finished(slug: str, person_id: str):
    """Not idempotent: each call flips the flag."""
    expense = expense_service.toggle_finished(
        slug, person_id, repository(), max_attempts()
    )
    db.session.commit()
    return expense_response(expense)
