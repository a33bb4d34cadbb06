"""Error hierarchy and FastAPI handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.requests import Request

from paas_billing.core.logging import get_request_id

INTERNAL_ERROR_MESSAGE = "internal server error"


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class AuthError(AppError):
    code = "unauthorized"
    status_code = 401


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class TransientError(AppError):
    """Upstream or database failure that is worth retrying."""
    code = "transient_error"
    status_code = 503


class FatalError(AppError):
    """Persisted state is inconsistent; the process must not carry on."""
    code = "fatal_error"
    status_code = 500


class InvalidEventError(ValidationError):
    code = "invalid_event"


class DuplicateEventError(ConflictError):
    code = "duplicate_event"


class ClosedMonthError(ConflictError):
    code = "closed_month"


class ConfigValidationError(ValidationError):
    code = "invalid_config"


class FormulaError(ValidationError):
    code = "invalid_formula"


class FormulaEvaluationError(AppError):
    code = "formula_evaluation_error"
    status_code = 500


class PricingError(AppError):
    """Usage cannot be priced with the installed configuration."""
    code = "pricing_error"
    status_code = 500


class ConsolidationConflictError(FatalError):
    code = "consolidation_conflict"


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(message: str) -> dict:
    return {"error": message}


def _error_response(status_code: int, message: str, rid: str) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=_error_payload(message))
    response.headers["x-request-id"] = rid
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    logger = logging.getLogger("paas_billing")
    if exc.status_code >= 500:
        logger.error(
            "app.error",
            exc_info=exc,
            extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
        )
        return _error_response(500, INTERNAL_ERROR_MESSAGE, rid)
    logger.warning(
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return _error_response(exc.status_code, exc.message, rid)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    logger = logging.getLogger("paas_billing")
    logger.warning("http.error", extra={"request_id": rid, "status": exc.status_code})
    if exc.status_code >= 500:
        return _error_response(exc.status_code, INTERNAL_ERROR_MESSAGE, rid)
    message = exc.detail if exc.detail else "HTTP error"
    return _error_response(exc.status_code, str(message), rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("paas_billing")
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return _error_response(500, INTERNAL_ERROR_MESSAGE, rid)
