"""Enumeration types for payment attempt and reconciliation models."""

from enum import Enum


class FlowType(str, Enum):
    """Kind of logical payment request a PaymentAttempt represents."""

    DONATION_CHECKOUT = "donation_checkout"
    DONATION_PAYMENT_INTENT = "donation_payment_intent"
    SUBSCRIPTION_UPDATE = "subscription_update"


class CheckoutMode(str, Enum):
    """Client-facing mode of the start-payment endpoint."""

    CHECKOUT = "checkout"
    PAYMENT_INTENT = "payment_intent"

    @property
    def flow_type(self) -> FlowType:
        if self is CheckoutMode.CHECKOUT:
            return FlowType.DONATION_CHECKOUT
        return FlowType.DONATION_PAYMENT_INTENT


class AttemptStatus(str, Enum):
    """Lifecycle of a PaymentAttempt.

    initiated -> claimed -> processing -> {succeeded | failed}
    """

    INITIATED = "initiated"
    CLAIMED = "claimed"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AttemptStatus.SUCCEEDED, AttemptStatus.FAILED)


# Statuses a PaymentAttempt may move *from* to reach the key status.
# CLAIMED is absent: only claim_attempt() performs that transition.
ATTEMPT_STATUS_PREDECESSORS: dict[AttemptStatus, tuple[AttemptStatus, ...]] = {
    AttemptStatus.PROCESSING: (AttemptStatus.CLAIMED, AttemptStatus.PROCESSING),
    AttemptStatus.SUCCEEDED: (
        AttemptStatus.CLAIMED,
        AttemptStatus.PROCESSING,
        AttemptStatus.SUCCEEDED,
    ),
    AttemptStatus.FAILED: (
        AttemptStatus.CLAIMED,
        AttemptStatus.PROCESSING,
        AttemptStatus.FAILED,
    ),
}


class DonationStatus(str, Enum):
    """Status mirrored onto a donation record from gateway events."""

    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SubscriptionStatus(str, Enum):
    """Local subscription status (gateway statuses plus `canceling`)."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELING = "canceling"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


class ProcessingResult(str, Enum):
    """Outcome recorded for a webhook delivery."""

    SUCCESS = "success"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    REJECTED = "rejected"
    ERROR = "error"


class WebhookSource(str, Enum):
    """Which webhook endpoint (and signing secret) delivered an event."""

    PLATFORM = "platform"
    CONNECT = "connect"
