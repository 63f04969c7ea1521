import logging
import traceback

from flask import jsonify, request

from expenseai_billing.errors import DomainError

logger = logging.getLogger(__name__)


def _http_error(error, message, status):
    return jsonify({
        "success": False,
        "error": error,
        "message": message,
        "path": request.path,
    }), status


def register_error_handlers(app):
    """Register all error handlers for the application"""

    @app.errorhandler(DomainError)
    def handle_domain_error(error):
        log = logger.error if error.status_code >= 500 else logger.warning
        log(
            f"{error.__class__.__name__}: {error.message}",
            extra={"path": request.path, "code": error.code},
        )
        payload = {"success": False, **error.to_dict()}
        response = jsonify(payload)
        response.status_code = error.status_code
        if error.retryable:
            response.headers["Retry-After"] = "30"
        return response

    @app.errorhandler(400)
    def bad_request(e):
        logger.warning(f"Bad request: {str(e)} - Path: {request.path}")
        return _http_error(
            "BAD_REQUEST",
            "The request could not be understood or was missing required parameters.",
            400,
        )

    @app.errorhandler(404)
    def not_found(e):
        logger.info(f"Not found: {request.path}")
        return _http_error("NOT_FOUND", "The requested resource was not found on the server.", 404)

    @app.errorhandler(405)
    def method_not_allowed(e):
        logger.warning(f"Method not allowed: {request.method} {request.path}")
        return _http_error(
            "METHOD_NOT_ALLOWED",
            f"The {request.method} method is not supported for this endpoint.",
            405,
        )

    @app.errorhandler(500)
    def server_error(e):
        logger.error(f"Server error: {str(e)} - Path: {request.path}")
        if app.config.get("DEBUG", False):
            logger.error(f"Traceback: {traceback.format_exc()}")
        return _http_error(
            "SERVER_ERROR",
            "An internal server error occurred. Please try again later.",
            500,
        )
