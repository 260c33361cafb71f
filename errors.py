"""
Error taxonomy for the marketplace service.

Repositories raise these; the HTTP layer turns them into JSON responses via
register_error_handlers(). Every error carries the status code it maps to.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500
    code = "server_error"

    def __init__(self, detail: str = "", status_code: int = None):
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        if status_code is not None:
            self.status_code = status_code


class AuthError(AppError):
    """Bad credentials, invalid token, duplicate account or weak password."""
    status_code = 401
    code = "auth_error"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"


class InvalidIdError(AppError):
    status_code = 400
    code = "invalid_id"


class InvariantViolation(AppError):
    """Room count would leave [0, total_rooms], or a listing cannot take bookings."""
    status_code = 409
    code = "invariant_violation"


class InvalidTransition(AppError):
    status_code = 409
    code = "invalid_transition"


class DecodeError(AppError):
    """Stored document does not match the expected shape."""
    status_code = 500
    code = "decode_error"


class NetworkError(AppError):
    """Backend or identity provider unavailable."""
    status_code = 503
    code = "network_error"


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "error": exc.code})

    @app.exception_handler(PyMongoError)
    async def store_error(request: Request, exc: PyMongoError):
        logger.error("Document store error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=NetworkError.status_code, content={"detail": "Document store unavailable", "error": NetworkError.code})

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error", "error": "server_error"})
