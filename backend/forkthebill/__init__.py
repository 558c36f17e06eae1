"""
forkthebill/__init__.py — Flask application factory.

Pattern: create_app(config_name) creates and returns a configured Flask app.
         Nothing is initialised at import time — this enables:
           - Multiple isolated test app instances
           - Clean separation between app creation and app startup
           - Alembic to import the metadata without starting the server

Responsibilities:
  1. Load configuration from config_by_name[config_name]
  2. Configure logging at LOG_LEVEL
  3. Initialise extensions (SQLAlchemy, Marshmallow) via init_app()
  4. Register the expense and people blueprints (no URL prefix)
  5. Register global error handlers (AppError → JSON, Exception → 500)
  6. Register a custom JSON provider to serialise Decimal as string
  7. Attach the optional receipt parser as app.extensions["receipt_parser"]
"""

from __future__ import annotations

import logging.config
import traceback
from decimal import Decimal

from flask import Flask, jsonify, request
from flask.json.provider import DefaultJSONProvider
from marshmallow import ValidationError
from werkzeug.exceptions import HTTPException

from backend.config import config_by_name, validate_production_config


# ── Custom JSON provider ───────────────────────────────────────────────────
# Flask's default JSON encoder does not handle Decimal.
# Monetary amounts are serialised as strings to preserve precision.

class DecimalJSONProvider(DefaultJSONProvider):
    """
    Extends Flask's default JSON provider to serialise Decimal as str.

    Example: Decimal("10.50") → "10.50" (not 10.5 or 10.500000001)
    """

    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        return super().default(o)


# ── Application factory ────────────────────────────────────────────────────

def create_app(config_name: str = "development", receipt_parser=None) -> Flask:
    """
    Creates and returns a configured Flask application instance.

    Args:
        config_name:    One of "development", "testing", "production".
                        Resolved via config_by_name in config.py.
        receipt_parser: Optional object with parse(image, content_type) -> dict.
                        Without one, POST /expense/upload answers 503.

    Returns:
        A fully configured Flask app ready to serve requests.
    """
    app = Flask(__name__)
    app.json_provider_class = DecimalJSONProvider
    app.json = DecimalJSONProvider(app)

    # ── Configuration ──────────────────────────────────────────────────────
    config_class = config_by_name.get(config_name, config_by_name["development"])
    app.config.from_object(config_class)
    app.json.sort_keys = app.config["JSON_SORT_KEYS"]

    if config_name == "production":
        validate_production_config(app)  # raises ValueError if misconfigured

    _configure_logging(app)

    # ── Extensions ─────────────────────────────────────────────────────────
    # Import here (not at module top) to avoid circular imports.
    from backend.forkthebill.extensions import db, ma
    db.init_app(app)
    ma.init_app(app)

    app.extensions["receipt_parser"] = receipt_parser

    # ── Model registration ─────────────────────────────────────────────────
    # Import the model so that SQLAlchemy's MetaData is populated.
    with app.app_context():
        from backend.forkthebill.models import expense  # noqa: F401

    _register_blueprints(app)
    _register_error_handlers(app)
    _register_cors(app)

    return app


def _configure_logging(app: Flask) -> None:
    """
    One stream handler on the root logger so module loggers
    (logging.getLogger(__name__)) and app.logger share a format.
    """
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            },
        },
        "handlers": {
            "stream": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
        },
        "root": {
            "level": app.config["LOG_LEVEL"],
            "handlers": ["stream"],
        },
    })


def _register_blueprints(app: Flask) -> None:
    """
    Route files declare full paths (/expense/...), so no url_prefix is set.
    """
    from backend.forkthebill.routes.expenses import expenses_bp
    from backend.forkthebill.routes.people import people_bp

    app.register_blueprint(expenses_bp)
    app.register_blueprint(people_bp)


def _first_error(messages, path: tuple = ()) -> tuple[str | None, str]:
    """
    Walks a marshmallow messages structure to its first leaf.

    {"items": {0: {"price": ["INVALID_AMOUNT"]}}} → ("items.0.price", "INVALID_AMOUNT")
    """
    if isinstance(messages, dict):
        for key, value in messages.items():
            key_path = path if key == "_schema" else (*path, str(key))
            return _first_error(value, key_path)
    elif isinstance(messages, list) and messages:
        return _first_error(messages[0], path)
    elif isinstance(messages, str):
        return (".".join(path) or None), messages
    return (".".join(path) or None), "Invalid input."


def _register_error_handlers(app: Flask) -> None:
    """
    Registers global error handlers.

    Handlers:
      AppError        → structured JSON error envelope with the correct status
      ValidationError → the first schema error as an envelope (400)
      HTTPException   → routing and protocol errors (404, 405, 413, bad JSON)
      Exception       → generic INTERNAL_ERROR (500); traceback logged

    Stack traces never leave the server.
    """
    from backend.forkthebill.errors import AppError, ErrorCode

    http_codes = {
        400: ErrorCode.MALFORMED_REQUEST,
        404: ErrorCode.ROUTE_NOT_FOUND,
        405: ErrorCode.METHOD_NOT_ALLOWED,
        413: ErrorCode.PAYLOAD_TOO_LARGE,
        415: ErrorCode.UNSUPPORTED_MEDIA_TYPE,
    }
    registered_codes = set(vars(ErrorCode).values())

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        """
        Converts an AppError raised anywhere in the request lifecycle into
        the standard error envelope. Routes never catch AppError.
        """
        from backend.forkthebill.extensions import db
        db.session.rollback()
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        """
        Returns only the FIRST error. A message that is a registered
        ErrorCode becomes the code; "Missing data for required field"
        becomes MISSING_FIELD; anything else is INVALID_FIELD.
        """
        field, raw_message = _first_error(error.messages)

        if raw_message in registered_codes:
            code = raw_message
            message = _code_to_message(code)
        elif raw_message.startswith("Missing data for required field"):
            code = ErrorCode.MISSING_FIELD
            message = raw_message
        else:
            code = ErrorCode.INVALID_FIELD
            message = raw_message

        response_body = {"error": {"code": code, "message": message}}
        if field is not None:
            response_body["error"]["field"] = field

        return jsonify(response_body), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        code = http_codes.get(error.code)
        if code is None:
            return error
        return jsonify({
            "error": {"code": code, "message": error.description},
        }), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        """
        Catches all unhandled exceptions and returns a generic 500 response.
        The full traceback is written to the application logger.
        """
        from backend.forkthebill.extensions import db
        db.session.rollback()
        app.logger.error(
            "Unhandled exception: %s\n%s",
            str(error),
            traceback.format_exc(),
        )
        return jsonify({
            "error": {
                "code": ErrorCode.INTERNAL_ERROR,
                "message": "An unexpected error occurred. Please try again later.",
            }
        }), 500


def _register_cors(app: Flask) -> None:
    """
    Adds CORS headers so the browser UI, served from another origin, can
    call the API. Enabled by CORS_ALLOW_ALL, or always in DEBUG/TESTING.
    """

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allow_all = bool(
            app.config.get("CORS_ALLOW_ALL")
            or app.config.get("DEBUG")
            or app.config.get("TESTING")
        )

        if allow_all:
            response.headers["Access-Control-Allow-Origin"] = origin if origin else "*"
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Methods"] = (
                "GET, POST, PUT, PATCH, DELETE, OPTIONS"
            )
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"

        return response


def _code_to_message(code: str) -> str:
    """
    Returns a human-readable default message for a known error code.
    Used when a ValidationError message IS the error code constant itself
    (e.g. INVALID_AMOUNT_PRECISION raised as ValidationError in schemas).
    """
    _messages = {
        "INVALID_AMOUNT": "Amount must be a non-negative number.",
        "INVALID_AMOUNT_PRECISION": "Amount must have at most 2 decimal places.",
        "INVALID_QUANTITY": "Quantity must be a whole number of at least 1.",
        "DUPLICATE_PARTICIPANT": "The same name appears more than once in people.",
    }
    return _messages.get(code, "Invalid input.")
