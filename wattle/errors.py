"""
Error taxonomy and JSON error handlers
"""
from flask import jsonify
from werkzeug.exceptions import HTTPException


class WattleError(Exception):
    """Base error carrying an HTTP status code"""
    status_code = 500

    def __init__(self, message: str = "", status_code: int = None):
        super().__init__(message)
        self.message = message or self.__class__.__name__
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {"success": False, "error": self.message}


class ValidationError(WattleError):
    status_code = 400


class UnauthorizedError(WattleError):
    status_code = 401


class ForbiddenError(WattleError):
    status_code = 403


class NotFoundError(WattleError):
    status_code = 404


class UpstreamError(WattleError):
    """An external AI or storage call failed"""
    status_code = 500


class InternalError(WattleError):
    status_code = 500


def register_error_handlers(app):
    """Render every error as a JSON body at the outermost boundary"""

    @app.errorhandler(WattleError)
    def handle_wattle_error(e):
        if e.status_code >= 500:
            app.logger.error(f"{type(e).__name__}: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({"success": False, "error": e.description or e.name}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        app.logger.exception("Unhandled error")
        err = InternalError(str(e) or "Internal server error")
        return jsonify(err.to_dict()), err.status_code
