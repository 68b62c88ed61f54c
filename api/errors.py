from flask import jsonify, current_app
from werkzeug.exceptions import HTTPException
from marshmallow import ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
import logging

from services.results import ErrorKind, Result

logger = logging.getLogger(__name__)

# Failed token results -> HTTP status
# (a lost rotation race reaches the API as INVALID_REFRESH_TOKEN)
STATUS_BY_KIND = {
    ErrorKind.VALIDATION_FAILURE: 422,
    ErrorKind.USER_NOT_FOUND: 404,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_REFRESH_TOKEN: 401,
    ErrorKind.INVALID_ACCESS_TOKEN: 401,
    ErrorKind.TOKEN_PERSISTENCE_FAILED: 500,
    ErrorKind.UNAVAILABLE: 503,
}


def error_response(error: str, message: str, status: int, details: dict | None = None):
    payload = {"error": error, "message": message, "status": status}
    if details:
        payload["details"] = details
    return jsonify(payload), status


def result_error_response(result: Result):
    """Render a failed services.results.Result with the uniform envelope."""
    status = STATUS_BY_KIND.get(result.error, 400)
    return error_response(result.error.value.upper(), result.message, status, details=result.details or None)


def register_error_handlers(app):
    # 400 Bad Request (generic)
    @app.errorhandler(400)
    def bad_request(e):
        if current_app and current_app.debug:
            logger.exception("Unhandled exception", exc_info=e)
        message = getattr(e, "description", "Bad request")
        return error_response("BAD_REQUEST", message, 400)

    # 401 Unauthorized
    @app.errorhandler(401)
    def unauthorized(e):
        message = getattr(e, "description", "Unauthorized")
        return error_response("UNAUTHORIZED", message, 401)

    # 403 Forbidden
    @app.errorhandler(403)
    def forbidden(e):
        message = getattr(e, "description", "Forbidden")
        return error_response("FORBIDDEN", message, 403)

    # 404 Not Found
    @app.errorhandler(404)
    def not_found(e):
        if current_app and current_app.debug:
            logger.exception("Unhandled exception", exc_info=e)
        return error_response("NOT_FOUND", "Resource not found", 404)

    # 409 Conflict
    @app.errorhandler(409)
    def conflict(e):
        if current_app and current_app.debug:
            logger.exception("Unhandled exception", exc_info=e)
        message = getattr(e, "description", "Conflict")
        return error_response("CONFLICT", message, 409)

    # 422 Unprocessable Entity (validation)
    @app.errorhandler(422)
    def unprocessable(e):
        if current_app and current_app.debug:
            logger.exception("Unhandled exception", exc_info=e)
        message = getattr(e, "description", "Unprocessable entity")
        return error_response("VALIDATION_ERROR", message, 422)

    # 503 Service Unavailable (storage outage)
    @app.errorhandler(503)
    def unavailable(e):
        message = getattr(e, "description", "Service temporarily unavailable")
        return error_response("UNAVAILABLE", message, 503)

    # Marshmallow validation errors map to 422
    @app.errorhandler(ValidationError)
    def handle_validation_error(err: ValidationError):
        # err.messages contains field-level details
        if current_app and current_app.debug:
            logger.exception("Unhandled exception", exc_info=err)
        return error_response("VALIDATION_ERROR", "Invalid input", 422, details=err.messages)

    # Integrity errors (unique constraints, FK violations, check constraints)
    @app.errorhandler(IntegrityError)
    def handle_integrity_error(err: IntegrityError):
        message = str(getattr(err, "orig", err))
        lower_msg = message.lower()
        if current_app and current_app.debug:
            logger.exception("Unhandled exception", exc_info=err)
        # Heuristics: tailor the status
        if "unique constraint" in lower_msg or "unique violation" in lower_msg:
            return error_response("CONFLICT", "Unique constraint violated.", 409)
        if "foreign key constraint" in lower_msg or "foreign key mismatch" in lower_msg:
            return error_response("BAD_REQUEST", "Foreign key constraint failed.", 400)
        return error_response("BAD_REQUEST", "Integrity error.", 400)

    # Database unreachable
    @app.errorhandler(OperationalError)
    def handle_operational_error(err: OperationalError):
        logger.error("Database unavailable: %s", err.__class__.__name__)
        return error_response("UNAVAILABLE", "Service temporarily unavailable", 503)

    # Werkzeug HTTPExceptions map to their status codes
    @app.errorhandler(HTTPException)
    def handle_http_exception(err: HTTPException):
        code = err.code or 400
        return error_response(err.name.upper().replace(" ", "_"), err.description, code)

    # 500 Internal Error (catch-all)
    @app.errorhandler(Exception)
    def internal_error(err: Exception):
        logger.exception("Unhandled exception", exc_info=err)
        details = None
        # In dev, include exception details to speed up debugging
        if current_app and current_app.debug:
            details = {"type": err.__class__.__name__, "message": str(err)}
        return error_response("INTERNAL_ERROR", "An unexpected error occurred", 500, details=details)
