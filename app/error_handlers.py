"""Global exception handlers.

Every error leaves the API as {"success": false, "error", "code", "details"?}.
Unexpected exceptions only carry their message in development.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import settings
from app.schemas.common import ErrorResponse, FieldError
from app.services.errors import DNCError

logger = logging.getLogger(__name__)


def register_error_handlers(app: FastAPI) -> None:
    """Register all global error handlers on the FastAPI app."""
    _register_dnc_error_handler(app)
    _register_validation_error_handler(app)
    _register_http_error_handler(app)
    _register_generic_error_handler(app)


def _error_content(error: ErrorResponse) -> dict:
    return error.model_dump(mode="json", exclude_none=True)


def _register_dnc_error_handler(app: FastAPI) -> None:

    @app.exception_handler(DNCError)
    async def dnc_error_handler(request: Request, exc: DNCError):
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            f"{exc.code} on {request.url.path}: {exc.message}",
            extra={"error_code": exc.code},
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())


def _register_validation_error_handler(app: FastAPI) -> None:

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        """Field-level request validation failures answer 400, not 422."""
        logger.info(f"Validation error on {request.url.path}: {exc.errors()}")
        details = [
            FieldError(
                field=".".join(str(loc) for loc in e["loc"] if loc != "body"),
                message=e["msg"],
            ).model_dump()
            for e in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=_error_content(ErrorResponse(
                error="Validation failed",
                code="VALIDATION_ERROR",
                details=details,
            )),
        )


def _register_http_error_handler(app: FastAPI) -> None:

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        code = "NOT_FOUND" if exc.status_code == status.HTTP_404_NOT_FOUND else "HTTP_ERROR"
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_content(ErrorResponse(error=str(exc.detail), code=code)),
            headers=getattr(exc, "headers", None),
        )


def _register_generic_error_handler(app: FastAPI) -> None:

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        logger.error(
            f"Unhandled exception on {request.url.path}: {exc}",
            exc_info=True,
        )
        error = ErrorResponse(error="Internal server error", code="INTERNAL_ERROR")
        if settings.is_debug:
            error.details = {"exception": type(exc).__name__, "message": str(exc)}
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_content(error),
        )
