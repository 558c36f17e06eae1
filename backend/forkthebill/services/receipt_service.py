"""
services/receipt_service.py — Create an expense from a receipt image.

Text extraction is NOT done here. A ReceiptParser is an external collaborator
(an OCR or vision-model client) injected into the app factory:

    create_app("production", receipt_parser=MyVisionParser(...))

The parser turns image bytes into a plain dict:

    {
        "restaurantName": "Olive Garden",
        "items": [{"name": "Coke", "price": "9.00", "quantity": 3}, ...],
        "tax": "3.05", "serviceCharge": "0", "discount": "0"
    }

This module validates that dict with ParsedReceiptSchema and hands it to
expense_service.create_expense(). A parser signals an unreadable image by
raising ReceiptParseError; any other exception is a bug and propagates.
"""

from __future__ import annotations

import logging
from typing import Protocol

from marshmallow import ValidationError

from backend.forkthebill.engine.models import Expense
from backend.forkthebill.errors import AppError, ErrorCode
from backend.forkthebill.schemas.expense_schema import ParsedReceiptSchema
from backend.forkthebill.services import expense_service

logger = logging.getLogger(__name__)


class ReceiptParseError(Exception):
    """Raised by a ReceiptParser when the image holds no usable receipt."""


class ReceiptParser(Protocol):

    def parse(self, image: bytes, content_type: str) -> dict: ...


def _validate_upload(
        image: bytes,
        content_type: str,
        allowed_mimetypes: tuple[str, ...],
) -> None:
    if not image:
        raise AppError(
            ErrorCode.MISSING_FIELD,
            "The uploaded receipt file is empty.",
            400,
            field="bill",
        )
    if content_type not in allowed_mimetypes:
        raise AppError(
            ErrorCode.UNSUPPORTED_MEDIA_TYPE,
            f"Receipt files of type {content_type!r} are not supported. "
            f"Allowed: {', '.join(allowed_mimetypes)}.",
            415,
            field="bill",
        )


def create_expense_from_receipt(
        image: bytes,
        content_type: str,
        payer_name: str,
        parser: ReceiptParser | None,
        repository: expense_service.ExpenseRepository,
        allowed_mimetypes: tuple[str, ...],
) -> Expense:
    """
    Parses the receipt and stores a new expense paid by payer_name.

    Raises:
        AppError(RECEIPT_PARSER_UNAVAILABLE, 503) — no parser configured.
        AppError(UNSUPPORTED_MEDIA_TYPE, 415)     — not an accepted file type.
        AppError(RECEIPT_UNREADABLE, 422)         — parser could not read it,
                                                    or returned malformed data.
    """
    if parser is None:
        raise AppError(
            ErrorCode.RECEIPT_PARSER_UNAVAILABLE,
            "Receipt upload is not available. Enter the items manually.",
            503,
        )

    _validate_upload(image, content_type, allowed_mimetypes)

    try:
        raw = parser.parse(image, content_type)
    except ReceiptParseError as exc:
        logger.info("Receipt parser rejected upload: %s", exc)
        raise AppError(
            ErrorCode.RECEIPT_UNREADABLE,
            "We could not read that receipt. Try a clearer photo.",
            422,
            field="bill",
        ) from exc

    try:
        parsed = ParsedReceiptSchema().load(raw)
    except ValidationError as exc:
        logger.warning("Receipt parser returned malformed data: %s", exc.messages)
        raise AppError(
            ErrorCode.RECEIPT_UNREADABLE,
            "The receipt was read but its contents were not usable.",
            422,
            field="bill",
        ) from exc

    parsed["payer_name"] = payer_name
    return expense_service.create_expense(parsed, repository)
