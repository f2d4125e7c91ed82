from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException

from finance_tracker.api.limits import GENERAL_LIMIT_MESSAGE
from finance_tracker.core import settings
from finance_tracker.errors import FinanceTrackerError
from finance_tracker.logger import get_logger

logger = get_logger(__name__)


def _location(loc: tuple) -> str:
    parts = [str(part) for part in loc if part not in ("body", "query", "path")]
    return ".".join(parts)


def format_validation_errors(errors: list[dict], prefix: str = "") -> str:
    """Flatten pydantic errors into one ``"; "``-joined message."""
    messages = []
    for error in errors:
        location = _location(tuple(error.get("loc", ())))
        message = error.get("msg", "invalid value")
        text = f"{location}: {message}" if location else message
        messages.append(f"{prefix}{text}")
    return "; ".join(messages)


def describe_validation_error(exc: PydanticValidationError, prefix: str = "") -> str:
    return format_validation_errors(exc.errors(), prefix=prefix)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(FinanceTrackerError)
    async def handle_domain_error(request: Request, exc: FinanceTrackerError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        message = format_validation_errors(list(exc.errors()))
        return JSONResponse(status_code=400, content={"error": message, "code": "validation"})

    # Plain function: the rate limit middleware calls it without awaiting.
    @app.exception_handler(RateLimitExceeded)
    def handle_rate_limit(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        message = getattr(exc.limit, "error_message", None) or GENERAL_LIMIT_MESSAGE
        logger.warning("[API] Rate limit hit on %s %s: %s", request.method, request.url.path, exc.detail)
        return JSONResponse(status_code=429, content={"error": message, "code": "rate_limited"})

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("[API] Unhandled error on %s %s.", request.method, request.url.path)
        message = "Internal server error" if settings.is_production() else str(exc)
        return JSONResponse(status_code=500, content={"error": message})
