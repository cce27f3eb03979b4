from typing import Any

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
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
    def __init__(self, message: str = "Forbidden", details: dict[str, Any] | None = None):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN, details=details)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None, code: str = "CONFLICT"):
        super().__init__(message, code=code, status_code=status.HTTP_409_CONFLICT, details=details)


class AlreadyProcessedError(ConflictError):
    """Idempotency hit: the reference was applied before. Callers treat this as success."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(
            f"Reference {reference} was already processed",
            details={"reference": reference, "already_processed": True},
            code="ALREADY_PROCESSED",
        )


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None, code: str = "BAD_REQUEST"):
        super().__init__(message, code=code, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class InsufficientFundsError(BadRequestError):
    def __init__(self, required: int, available: int | None = None):
        details: dict[str, Any] = {"required": required}
        if available is not None:
            details["available"] = available
        super().__init__("Insufficient balance in wallet", details=details, code="INSUFFICIENT_FUNDS")


class InsufficientStockError(BadRequestError):
    def __init__(self, bundle_id: str, requested: int, available: int | None = None):
        super().__init__(
            "Bundle is out of stock",
            details={"bundle_id": bundle_id, "requested": requested, "available": available},
            code="OUT_OF_STOCK",
        )


class InvalidAdjustmentError(BadRequestError):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details=details, code="INVALID_ADJUSTMENT")


class ProviderRejectedError(AppError):
    """Fulfillment provider declined or could not be reached. Nothing was charged."""

    def __init__(self, message: str, details: dict[str, Any] | None = None, transport_failure: bool = False):
        super().__init__(
            message,
            code="PROVIDER_REJECTED",
            status_code=status.HTTP_502_BAD_GATEWAY if transport_failure else status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class PaymentGatewayError(AppError):
    def __init__(self, message: str = "Payment gateway error", details: dict[str, Any] | None = None):
        super().__init__(message, code="PAYMENT_GATEWAY_ERROR", status_code=status.HTTP_502_BAD_GATEWAY, details=details)


class StoreUnavailableError(AppError):
    def __init__(self, message: str = "Database service temporarily unavailable", retry_after: int = 5):
        self.retry_after = retry_after
        super().__init__(
            message,
            code="STORE_UNAVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"retry_after": retry_after},
        )


class StockInconsistencyError(AppError):
    """A caller asked for a stock transition the counters cannot support (caller bug)."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, code="INCONSISTENT_STATE", details=details)


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body: dict[str, Any] = {
        "success": False,
        "message": exc.message,
        "error": {
            "code": exc.code,
            "details": exc.details,
        },
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    headers = None
    if isinstance(exc, StoreUnavailableError):
        headers = {"Retry-After": str(exc.retry_after)}
    return ORJSONResponse(status_code=exc.status_code, content=body, headers=headers)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    if isinstance(exc, StockInconsistencyError):
        from datamart.core.logging import get_logger
        get_logger(__name__).error("inconsistent_state", message=exc.message, **exc.details)
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "success": False,
        "message": "Validation error",
        "error": {
            "code": "VALIDATION_ERROR",
            "details": {"errors": jsonable_encoder(exc.errors())},
        },
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from datamart.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "success": False,
        "message": "Internal server error",
        "error": {
            "code": "INTERNAL_ERROR",
            "details": {},
        },
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
