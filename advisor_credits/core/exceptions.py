from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


# Ledger / engine taxonomy


class InsufficientCreditsError(AppError):
    """Balance too low. Recoverable by purchasing credits."""

    def __init__(self, credits_available: int, credits_required: int = 1):
        self.credits_available = credits_available
        self.credits_required = credits_required
        super().__init__(
            "No credits available. Please purchase credits first.",
            code="INSUFFICIENT_CREDITS",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"credits_available": credits_available, "credits_required": credits_required},
        )


class AlreadyEntitledError(AppError):
    def __init__(self, dependent_id: str):
        super().__init__(
            "Dependent already has an active entitlement. No credit deducted.",
            code="ALREADY_ENTITLED",
            status_code=status.HTTP_409_CONFLICT,
            details={"dependent_id": dependent_id},
        )


class ContentionError(AppError):
    """Optimistic-concurrency retries exhausted."""

    def __init__(self, message: str = "Concurrent update, please retry", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONTENTION", status_code=status.HTTP_409_CONFLICT, details=details)


class PersistenceError(AppError):
    """Store unreachable, timed out or rejected a write."""

    def __init__(self, message: str = "Storage unavailable", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="PERSISTENCE_FAILURE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details,
        )


class InconsistentStateError(AppError):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, code="INCONSISTENT_STATE", details=details)


class InvalidTransitionError(AppError):
    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            f"Cannot move {entity} from {current} to {target}",
            code="INVALID_TRANSITION",
            status_code=status.HTTP_409_CONFLICT,
            details={"entity": entity, "from": current, "to": target},
        )


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from advisor_credits.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
