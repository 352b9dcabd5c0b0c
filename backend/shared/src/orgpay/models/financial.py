"""Financial records upserted by the webhook reconciler."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from .enums import DonationStatus, SubscriptionStatus


class DonationRecord(BaseModel):
    """A donation to an organization, keyed by provider resource ID.

    `donation_key` is the PaymentIntent ID once known; a checkout session
    ID is used only when the session carries no PaymentIntent.
    """

    model_config = ConfigDict(strict=True)

    organization_id: str
    donation_key: str
    provider_payment_intent_id: str | None = None
    provider_checkout_session_id: str | None = None
    amount_cents: int = Field(..., ge=0)
    currency: str
    donor_name: str | None = None
    donor_email: str | None = None
    purpose: str | None = None
    target_entity_id: str | None = None
    status: DonationStatus
    metadata: dict[str, str] = Field(default_factory=dict)
    counted_in_stats: bool = False
    created_at: datetime
    updated_at: datetime


class DonationStats(BaseModel):
    """Per-organization donation aggregate."""

    model_config = ConfigDict(strict=True)

    organization_id: str
    total_amount_cents: int = 0
    donation_count: int = 0
    last_donation_at: datetime | None = None


class SubscriptionRecord(BaseModel):
    """An organization's platform subscription, keyed by subscription ID."""

    model_config = ConfigDict(strict=True)

    organization_id: str
    subscription_id: str
    customer_id: str | None = None
    status: SubscriptionStatus
    price_id: str | None = None
    current_period_end: datetime | None = None
    grace_period_ends_at: datetime | None = None
    updated_at: datetime


class Organization(BaseModel):
    """Read-only view of a tenant from the organization directory."""

    model_config = ConfigDict(strict=True)

    organization_id: str
    slug: str
    name: str | None = None
    connected_account_id: str | None = Field(
        default=None,
        description="Stripe Connect account ID (acct_xxx)",
    )
    admin_user_ids: list[str] = Field(default_factory=list)
    stripe_customer_id: str | None = Field(
        default=None,
        description="Platform customer (cus_xxx) that pays for the subscription",
    )
