"""Standard error codes and exceptions for payment operations.

Every failure surfaced to an API caller is a PaymentError carrying an
ErrorCode. The API layer maps codes to HTTP statuses (see
orgpay_api.exceptions); services never deal in HTTP.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ErrorCode(str, Enum):
    """Standard error codes for payment and webhook operations."""

    # Request errors (ERR_PAY_001-ERR_PAY_009)
    VALIDATION_FAILED = "ERR_PAY_001"
    ORGANIZATION_NOT_FOUND = "ERR_PAY_002"
    PAYMENT_ATTEMPT_NOT_FOUND = "ERR_PAY_003"
    CONNECT_ACCOUNT_MISSING = "ERR_PAY_004"
    CONNECT_ACCOUNT_NOT_READY = "ERR_PAY_005"
    SUBSCRIPTION_NOT_FOUND = "ERR_PAY_006"

    # Idempotency errors (ERR_IDEM_001-ERR_IDEM_002)
    IDEMPOTENCY_CONFLICT = "ERR_IDEM_001"
    TRANSIENT_CONFLICT = "ERR_IDEM_002"

    # Authentication errors (ERR_AUTH_001-ERR_AUTH_002)
    AUTH_REQUIRED = "ERR_AUTH_001"
    FORBIDDEN = "ERR_AUTH_002"

    # Stripe errors (ERR_STRIPE_001-ERR_STRIPE_004)
    INVALID_WEBHOOK_SIGNATURE = "ERR_STRIPE_001"
    STRIPE_API_ERROR = "ERR_STRIPE_002"
    STRIPE_REQUEST_REJECTED = "ERR_STRIPE_003"
    STRIPE_UNAVAILABLE = "ERR_STRIPE_004"

    # Webhook tenant isolation (never returned to a caller)
    SECURITY_MISMATCH = "ERR_SEC_001"


# Human-readable error messages
ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.VALIDATION_FAILED: "Request validation failed",
    ErrorCode.ORGANIZATION_NOT_FOUND: "Organization not found",
    ErrorCode.PAYMENT_ATTEMPT_NOT_FOUND: "Payment attempt not found",
    ErrorCode.CONNECT_ACCOUNT_MISSING: "Organization has not set up donations",
    ErrorCode.CONNECT_ACCOUNT_NOT_READY: "Stripe onboarding is not completed for this organization",
    ErrorCode.SUBSCRIPTION_NOT_FOUND: "Organization has no subscription to update",
    ErrorCode.IDEMPOTENCY_CONFLICT: "Idempotency key used for a different request payload",
    ErrorCode.TRANSIENT_CONFLICT: "Payment is already processing for this idempotency key",
    ErrorCode.AUTH_REQUIRED: "Authentication required to perform this action",
    ErrorCode.FORBIDDEN: "Not allowed to manage this organization",
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: "Invalid webhook signature",
    ErrorCode.STRIPE_API_ERROR: "Stripe API error occurred",
    ErrorCode.STRIPE_REQUEST_REJECTED: "Stripe rejected the payment request",
    ErrorCode.STRIPE_UNAVAILABLE: "Unable to verify Stripe connection. Please try again.",
    ErrorCode.SECURITY_MISMATCH: "Connected account does not belong to organization",
}

# Recovery suggestions for API clients
ERROR_RECOVERY: dict[ErrorCode, str] = {
    ErrorCode.VALIDATION_FAILED: "Check the request parameters and try again",
    ErrorCode.ORGANIZATION_NOT_FOUND: "Verify the organization id or slug",
    ErrorCode.PAYMENT_ATTEMPT_NOT_FOUND: "Start a new payment without paymentAttemptId",
    ErrorCode.CONNECT_ACCOUNT_MISSING: "Ask an organization admin to connect a Stripe account",
    ErrorCode.CONNECT_ACCOUNT_NOT_READY: "Ask an organization admin to finish Stripe onboarding",
    ErrorCode.SUBSCRIPTION_NOT_FOUND: "Start a subscription before changing it",
    ErrorCode.IDEMPOTENCY_CONFLICT: "Use a new idempotency key for a different request",
    ErrorCode.TRANSIENT_CONFLICT: "Retry shortly with the same idempotency key",
    ErrorCode.AUTH_REQUIRED: "Sign in and try again",
    ErrorCode.FORBIDDEN: "Ask an organization admin to perform this action",
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: "Verify webhook secret configuration",
    ErrorCode.STRIPE_API_ERROR: "Retry with the same idempotency key",
    ErrorCode.STRIPE_REQUEST_REJECTED: "Check the payment details and try again",
    ErrorCode.STRIPE_UNAVAILABLE: "Retry shortly",
    ErrorCode.SECURITY_MISMATCH: "Check the Connect webhook endpoint configuration",
}


class ErrorResponse(BaseModel):
    """Standard JSON body for failed API requests."""

    model_config = ConfigDict(strict=True)

    success: bool = False
    error_code: ErrorCode
    message: str
    recovery: str
    details: Optional[dict[str, str]] = None

    @classmethod
    def from_code(
        cls,
        code: ErrorCode,
        details: Optional[dict[str, str]] = None,
        message: Optional[str] = None,
    ) -> "ErrorResponse":
        """Create an ErrorResponse from an error code.

        Args:
            code: The error code
            details: Optional additional context about the error
            message: Optional override for the default message

        Returns:
            An ErrorResponse with the message and recovery hint for the code.
        """
        return cls(
            error_code=code,
            message=message or ERROR_MESSAGES[code],
            recovery=ERROR_RECOVERY[code],
            details=details,
        )


class PaymentError(Exception):
    """Base exception raised by payment operations.

    Can be caught and converted to an ErrorResponse for API responses.
    """

    default_code: ErrorCode = ErrorCode.VALIDATION_FAILED

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[ErrorCode] = None,
        details: Optional[dict[str, str]] = None,
    ):
        self.code = code or self.default_code
        self.message = message or ERROR_MESSAGES[self.code]
        self.recovery = ERROR_RECOVERY[self.code]
        self.details = details
        super().__init__(self.message)

    def to_error_response(self) -> ErrorResponse:
        """Convert this exception to an ErrorResponse."""
        return ErrorResponse.from_code(self.code, self.details, message=self.message)


class PaymentValidationError(PaymentError):
    """Bad input. Not retried."""

    default_code = ErrorCode.VALIDATION_FAILED


class AuthenticationRequiredError(PaymentError):
    default_code = ErrorCode.AUTH_REQUIRED


class ForbiddenError(PaymentError):
    default_code = ErrorCode.FORBIDDEN


class OrganizationNotFoundError(PaymentError):
    default_code = ErrorCode.ORGANIZATION_NOT_FOUND


class PaymentAttemptNotFoundError(PaymentError):
    default_code = ErrorCode.PAYMENT_ATTEMPT_NOT_FOUND


class IdempotencyConflictError(PaymentError):
    """Same idempotency key, different logical request.

    Indicates client-side key reuse or a replay; never retried automatically.
    """

    default_code = ErrorCode.IDEMPOTENCY_CONFLICT


class TransientConflictError(PaymentError):
    """Claim lost and no resource surfaced within the wait budget.

    The client should retry with the SAME key after backoff.
    """

    default_code = ErrorCode.TRANSIENT_CONFLICT

    def __init__(self, idempotency_key: str, attempt_id: Optional[str] = None) -> None:
        details = {"idempotency_key": idempotency_key}
        if attempt_id:
            details["payment_attempt_id"] = attempt_id
        super().__init__(details=details)
        self.idempotency_key = idempotency_key
        self.attempt_id = attempt_id


class GatewayError(PaymentError):
    """The payment gateway failed or rejected a request.

    `rejected` is True when the gateway refused the request itself (bad
    parameters, card errors); False for network, timeout or server errors
    whose outcome may be unknown.
    """

    default_code = ErrorCode.STRIPE_API_ERROR

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        stripe_error_code: Optional[str] = None,
        rejected: bool = False,
        details: Optional[dict[str, str]] = None,
    ) -> None:
        code = ErrorCode.STRIPE_REQUEST_REJECTED if rejected else ErrorCode.STRIPE_API_ERROR
        super().__init__(message, code=code, details=details)
        self.stripe_error_code = stripe_error_code
        self.rejected = rejected


class GatewayUnavailableError(PaymentError):
    """A gateway lookup needed to authorize the request failed; fail closed."""

    default_code = ErrorCode.STRIPE_UNAVAILABLE


class InvalidWebhookSignatureError(PaymentError):
    default_code = ErrorCode.INVALID_WEBHOOK_SIGNATURE


class SecurityMismatchError(PaymentError):
    """Webhook event's connected account or customer does not match the tenant."""

    default_code = ErrorCode.SECURITY_MISMATCH


# Stripe error code to user-friendly message mapping
STRIPE_ERROR_MESSAGES: dict[str, str] = {
    "card_declined": "Your card was declined. Please try a different card.",
    "expired_card": "Your card has expired. Please use a different card.",
    "insufficient_funds": "Your card has insufficient funds. Please try a different card.",
    "amount_too_small": "The donation amount is too small.",
    "amount_too_large": "The donation amount is too large.",
    "account_invalid": "The organization's payment account is not available.",
    "processing_error": "A processing error occurred. Please try again.",
    "rate_limit": "Too many requests. Please wait a moment and try again.",
    "idempotency_key_in_use": "This payment is already being processed. Please try again shortly.",
}

# Stripe error codes that indicate the caller should retry with the same key
STRIPE_RETRYABLE_ERRORS: set[str] = {
    "processing_error",
    "rate_limit",
    "lock_timeout",
    "idempotency_key_in_use",
    "api_connection_error",
}


def get_user_friendly_stripe_message(
    stripe_error_code: Optional[str],
    default_message: str = "Payment could not be started. Please try again.",
) -> str:
    """Get a user-friendly message for a Stripe error code.

    Args:
        stripe_error_code: The Stripe error code (e.g., 'card_declined').
        default_message: Message to use if error code is unknown.

    Returns:
        User-friendly error message.
    """
    if stripe_error_code and stripe_error_code in STRIPE_ERROR_MESSAGES:
        return STRIPE_ERROR_MESSAGES[stripe_error_code]
    return default_message


def is_stripe_error_retryable(stripe_error_code: Optional[str]) -> bool:
    """Check if a Stripe error is likely transient and retryable."""
    return stripe_error_code in STRIPE_RETRYABLE_ERRORS if stripe_error_code else False
