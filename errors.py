"""API errors and the JSON response envelope shared by every endpoint."""

import logging
from flask import jsonify
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class APIError(Exception):
    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class BadRequest(APIError):
    status_code = 400


class Conflict(APIError):
    # Duplicates and capacity violations are reported as 400s
    status_code = 400


class AuthenticationError(APIError):
    status_code = 401


class PermissionDenied(APIError):
    status_code = 403


class NotFound(APIError):
    status_code = 404


def success_response(message, data=None, status=200, **extra):
    body = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    body.update(extra)
    return jsonify(body), status


def error_response(message, status, **extra):
    body = {"success": False, "message": message}
    body.update(extra)
    return jsonify(body), status


def format_validation_errors(exc):
    return [
        {"field": ".".join(str(p) for p in err["loc"]) or "body", "message": err["msg"]}
        for err in exc.errors()
    ]


def is_foreign_key_violation(exc):
    text = str(getattr(exc, "orig", exc)).lower()
    return "foreign key" in text or "a foreign key constraint fails" in text


def register_error_handlers(app):
    from app import db

    @app.errorhandler(APIError)
    def handle_api_error(exc):
        return error_response(exc.message, exc.status_code)

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc):
        return error_response("Validation failed", 400, errors=format_validation_errors(exc))

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(exc):
        db.session.rollback()
        if is_foreign_key_violation(exc):
            return error_response("Invalid reference to a related record", 400)
        logger.error(f"Integrity error: {exc.orig}")
        return error_response("Request conflicts with existing data", 400)

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return error_response(exc.description or exc.name, exc.code)

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc):
        logger.exception(f"Unhandled error: {exc}")
        db.session.rollback()
        return error_response("Server error", 500)
