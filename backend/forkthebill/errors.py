"""
errors.py — AppError base class and error code registry.

Every error returned by the Fork the Bill API must use a code defined here.
Do not raise strings or generic exceptions from engine, service or route code.

Error kinds:
  NotFound      (404) — expense, item or participant missing
  InvalidAmount (400) — negative, non-numeric or over-precise monetary input
  InvalidState  (422) — request is well-formed but cannot apply to the expense
  Conflict      (409) — optimistic-concurrency write collision at the storage
                        boundary; never raised by the engine itself

Error codes are a contract with the UI. They do not change once published.
Messages are human-readable prose and may be improved at any time.
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field  # which request field caused the error

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        return {"error": payload}

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


class NotFoundError(AppError):
    """An expense, item or participant does not exist."""

    def __init__(self, code: str, message: str, field: str | None = None) -> None:
        super().__init__(code, message, 404, field=field)


class InvalidAmountError(AppError):
    """A monetary input is negative, non-numeric or has too many decimals."""

    def __init__(
            self,
            message: str,
            field: str | None = None,
            code: str | None = None,
    ) -> None:
        super().__init__(code or ErrorCode.INVALID_AMOUNT, message, 400, field=field)


class InvalidStateError(AppError):
    """The request cannot be applied to the expense as it currently stands."""

    def __init__(self, code: str, message: str, field: str | None = None) -> None:
        super().__init__(code, message, 422, field=field)


class ConflictError(AppError):
    """A concurrent writer changed the expense between read and write."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.EXPENSE_CONFLICT, message, 409)


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the comment.
#
# IMPORTANT: these are the string values sent in the API response.
# Do not rename them without a major version bump.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD              = "MISSING_FIELD"
    INVALID_FIELD              = "INVALID_FIELD"
    INVALID_AMOUNT             = "INVALID_AMOUNT"
    INVALID_AMOUNT_PRECISION   = "INVALID_AMOUNT_PRECISION"
    MALFORMED_REQUEST          = "MALFORMED_REQUEST"
    UNSUPPORTED_MEDIA_TYPE     = "UNSUPPORTED_MEDIA_TYPE"     # 415
    PAYLOAD_TOO_LARGE          = "PAYLOAD_TOO_LARGE"          # 413
    METHOD_NOT_ALLOWED         = "METHOD_NOT_ALLOWED"         # 405

    # ── Not Found Errors (404) ─────────────────────────────────────────────
    EXPENSE_NOT_FOUND          = "EXPENSE_NOT_FOUND"
    ITEM_NOT_FOUND             = "ITEM_NOT_FOUND"
    PARTICIPANT_NOT_FOUND      = "PARTICIPANT_NOT_FOUND"
    ROUTE_NOT_FOUND            = "ROUTE_NOT_FOUND"

    # ── Conflict Errors (409) ──────────────────────────────────────────────
    EXPENSE_CONFLICT           = "EXPENSE_CONFLICT"

    # ── Business Rule Violations (422) ────────────────────────────────────
    INVALID_QUANTITY           = "INVALID_QUANTITY"
    UNKNOWN_CLAIMANT           = "UNKNOWN_CLAIMANT"
    BLANK_NAME                 = "BLANK_NAME"
    DUPLICATE_PARTICIPANT      = "DUPLICATE_PARTICIPANT"
    DUPLICATE_ITEM             = "DUPLICATE_ITEM"
    RECEIPT_UNREADABLE         = "RECEIPT_UNREADABLE"

    # ── Unavailable (503) ──────────────────────────────────────────────────
    RECEIPT_PARSER_UNAVAILABLE = "RECEIPT_PARSER_UNAVAILABLE"

    # ── System Errors (500) ────────────────────────────────────────────────
    INTERNAL_ERROR             = "INTERNAL_ERROR"
