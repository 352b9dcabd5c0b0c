"""Pydantic models for payment attempts, donations, subscriptions and events."""

from .enums import (
    ATTEMPT_STATUS_PREDECESSORS,
    AttemptStatus,
    CheckoutMode,
    DonationStatus,
    FlowType,
    ProcessingResult,
    SubscriptionStatus,
    WebhookSource,
)
from .checkout import (
    ConnectAccountResult,
    DonationRequest,
    StartPaymentResult,
    SubscriptionUpdateRequest,
    SubscriptionUpdateResult,
)
from .financial import DonationRecord, DonationStats, Organization, SubscriptionRecord
from .payment_attempt import AttemptRequest, ClaimResult, PaymentAttempt
from .processed_event import EventRegistration, ProcessedEvent
from .errors import (
    AuthenticationRequiredError,
    ErrorCode,
    ErrorResponse,
    ERROR_MESSAGES,
    ERROR_RECOVERY,
    ForbiddenError,
    GatewayError,
    GatewayUnavailableError,
    IdempotencyConflictError,
    InvalidWebhookSignatureError,
    OrganizationNotFoundError,
    PaymentAttemptNotFoundError,
    PaymentError,
    PaymentValidationError,
    SecurityMismatchError,
    STRIPE_ERROR_MESSAGES,
    STRIPE_RETRYABLE_ERRORS,
    TransientConflictError,
    get_user_friendly_stripe_message,
    is_stripe_error_retryable,
)
from .stripe_events import (
    CheckoutSessionCompletedEvent,
    HANDLED_EVENT_TYPES,
    InvoiceEvent,
    PaymentIntentEvent,
    StripeEvent,
    SubscriptionEvent,
    UnknownEvent,
    event_snapshot,
    parse_stripe_event,
)

__all__ = [
    # Enums
    "ATTEMPT_STATUS_PREDECESSORS",
    "AttemptStatus",
    "CheckoutMode",
    "DonationStatus",
    "FlowType",
    "ProcessingResult",
    "SubscriptionStatus",
    "WebhookSource",
    # Checkout
    "ConnectAccountResult",
    "DonationRequest",
    "StartPaymentResult",
    "SubscriptionUpdateRequest",
    "SubscriptionUpdateResult",
    # Financial records
    "DonationRecord",
    "DonationStats",
    "Organization",
    "SubscriptionRecord",
    # Attempts and events
    "AttemptRequest",
    "ClaimResult",
    "PaymentAttempt",
    "EventRegistration",
    "ProcessedEvent",
    # Errors
    "AuthenticationRequiredError",
    "ErrorCode",
    "ErrorResponse",
    "ERROR_MESSAGES",
    "ERROR_RECOVERY",
    "ForbiddenError",
    "GatewayError",
    "GatewayUnavailableError",
    "IdempotencyConflictError",
    "InvalidWebhookSignatureError",
    "OrganizationNotFoundError",
    "PaymentAttemptNotFoundError",
    "PaymentError",
    "PaymentValidationError",
    "SecurityMismatchError",
    "STRIPE_ERROR_MESSAGES",
    "STRIPE_RETRYABLE_ERRORS",
    "TransientConflictError",
    "get_user_friendly_stripe_message",
    "is_stripe_error_retryable",
    # Stripe events
    "CheckoutSessionCompletedEvent",
    "HANDLED_EVENT_TYPES",
    "InvoiceEvent",
    "PaymentIntentEvent",
    "StripeEvent",
    "SubscriptionEvent",
    "UnknownEvent",
    "event_snapshot",
    "parse_stripe_event",
]
