"""FastAPI exception handlers converting PaymentError to HTTP responses.

Every error body has the ErrorResponse shape:
    {"success": false, "error_code": ..., "message": ..., "recovery": ..., "details": ...}

The ErrorCode-to-HTTP status mapping:
- 400 Bad Request: validation, onboarding state, gateway-rejected requests,
  bad webhook signatures
- 401 Unauthorized / 403 Forbidden: organization admin checks
- 404 Not Found: unknown organization, attempt or subscription
- 409 Conflict: idempotency conflicts and in-progress attempts
- 502 Bad Gateway / 503 Service Unavailable: Stripe failures

Usage:
    from orgpay_api.exceptions import register_exception_handlers
    register_exception_handlers(app)
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_502_BAD_GATEWAY,
    HTTP_503_SERVICE_UNAVAILABLE,
)

from orgpay.models.errors import ErrorCode, ErrorResponse, PaymentError
from orgpay.utils.logging import get_logger

logger = get_logger(__name__)

ERROR_CODE_TO_HTTP_STATUS: dict[ErrorCode, int] = {
    # Request errors -> 400 Bad Request
    ErrorCode.VALIDATION_FAILED: HTTP_400_BAD_REQUEST,
    ErrorCode.CONNECT_ACCOUNT_MISSING: HTTP_400_BAD_REQUEST,
    ErrorCode.CONNECT_ACCOUNT_NOT_READY: HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: HTTP_400_BAD_REQUEST,
    ErrorCode.STRIPE_REQUEST_REJECTED: HTTP_400_BAD_REQUEST,
    # Authentication errors
    ErrorCode.AUTH_REQUIRED: HTTP_401_UNAUTHORIZED,
    ErrorCode.FORBIDDEN: HTTP_403_FORBIDDEN,
    # Not found errors -> 404 Not Found
    ErrorCode.ORGANIZATION_NOT_FOUND: HTTP_404_NOT_FOUND,
    ErrorCode.PAYMENT_ATTEMPT_NOT_FOUND: HTTP_404_NOT_FOUND,
    ErrorCode.SUBSCRIPTION_NOT_FOUND: HTTP_404_NOT_FOUND,
    # Idempotency errors -> 409 Conflict
    ErrorCode.IDEMPOTENCY_CONFLICT: HTTP_409_CONFLICT,
    ErrorCode.TRANSIENT_CONFLICT: HTTP_409_CONFLICT,
    # Gateway errors
    ErrorCode.STRIPE_API_ERROR: HTTP_502_BAD_GATEWAY,
    ErrorCode.STRIPE_UNAVAILABLE: HTTP_503_SERVICE_UNAVAILABLE,
    # Never surfaced to a caller
    ErrorCode.SECURITY_MISMATCH: HTTP_500_INTERNAL_SERVER_ERROR,
}


def get_http_status_for_error(code: ErrorCode) -> int:
    """Get HTTP status code for an ErrorCode, defaulting to 400."""
    return ERROR_CODE_TO_HTTP_STATUS.get(code, HTTP_400_BAD_REQUEST)


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    """Render a PaymentError as an ErrorResponse with its mapped status."""
    status_code = get_http_status_for_error(exc.code)
    if status_code >= HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error(
            "%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code.value
        )
    else:
        logger.info(
            "%s %s rejected: %s (%s)", request.method, request.url.path, exc.message, exc.code.value
        )

    return JSONResponse(
        status_code=status_code,
        content=exc.to_error_response().model_dump(mode="json"),
    )


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render request-model validation failures as 400 ErrorResponse bodies."""
    details: dict[str, str] = {}
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        details[location or "body"] = str(error.get("msg", "invalid"))

    error_response = ErrorResponse.from_code(ErrorCode.VALIDATION_FAILED, details or None)
    return JSONResponse(
        status_code=HTTP_400_BAD_REQUEST,
        content=error_response.model_dump(mode="json"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(PaymentError, payment_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
