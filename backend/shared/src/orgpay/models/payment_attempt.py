"""PaymentAttempt model: one row per logical client-initiated payment request."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from .enums import AttemptStatus, FlowType


class AttemptRequest(BaseModel):
    """Logically significant fields of a payment request.

    Written once when the attempt is created; `request_fingerprint`
    is immutable afterwards.
    """

    model_config = ConfigDict(strict=True, frozen=True)

    flow_type: FlowType
    amount_cents: int = Field(..., ge=100, description="Amount in minor units")
    currency: str = Field(..., min_length=3, max_length=3)
    organization_id: str
    connected_account_id: str | None = Field(
        default=None,
        description="Tenant's connected account (acct_xxx); None for platform flows",
    )
    platform_fee_cents: int = Field(default=0, ge=0)
    request_fingerprint: str
    metadata: dict[str, str] = Field(
        default_factory=dict,
        description="Opaque bag stored with the attempt; never sent to the gateway",
    )


class PaymentAttempt(BaseModel):
    """A logical payment request and the gateway resources it produced."""

    model_config = ConfigDict(strict=True)

    attempt_id: str = Field(..., description="Server-generated attempt ID")
    idempotency_key: str | None = Field(
        default=None,
        description="Client-supplied idempotency key (unique when present)",
    )
    flow_type: FlowType
    amount_cents: int = Field(..., ge=100)
    currency: str
    organization_id: str
    connected_account_id: str | None = None
    platform_fee_cents: int = Field(default=0, ge=0)
    request_fingerprint: str
    status: AttemptStatus

    provider_payment_intent_id: str | None = Field(
        default=None,
        description="Stripe PaymentIntent ID (pi_xxx)",
        examples=["pi_3ABC123DEF456"],
    )
    provider_checkout_session_id: str | None = Field(
        default=None,
        description="Stripe Checkout Session ID (cs_xxx)",
        examples=["cs_test_abc123def456"],
    )
    provider_subscription_id: str | None = Field(
        default=None,
        description="Stripe Subscription ID (sub_xxx) for subscription updates",
    )
    checkout_url: str | None = None
    client_secret: str | None = Field(
        default=None,
        description="PaymentIntent client secret handed to the client SDK",
    )

    last_error: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    claimed_at: datetime | None = None

    @property
    def has_provider_resource(self) -> bool:
        """True once the gateway resource for this attempt is known locally."""
        if self.flow_type == FlowType.DONATION_CHECKOUT:
            return bool(self.provider_checkout_session_id and self.checkout_url)
        if self.flow_type == FlowType.DONATION_PAYMENT_INTENT:
            return bool(self.provider_payment_intent_id and self.client_secret)
        return bool(self.provider_subscription_id)


class ClaimResult(BaseModel):
    """Result of claim_attempt()."""

    model_config = ConfigDict(strict=True)

    attempt: PaymentAttempt
    claimed: bool
