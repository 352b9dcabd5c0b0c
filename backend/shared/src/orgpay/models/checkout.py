"""Inputs and results of the checkout orchestrator."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import CheckoutMode


class DonationRequest(BaseModel):
    """A validated start-donation request (amount already in minor units)."""

    model_config = ConfigDict(strict=True, frozen=True, extra="forbid")

    organization_id: Optional[str] = None
    organization_slug: Optional[str] = None
    amount_cents: int
    currency: Optional[str] = None
    donor_name: Optional[str] = None
    donor_email: Optional[str] = None
    purpose: Optional[str] = None
    target_entity_id: Optional[str] = None
    mode: CheckoutMode = CheckoutMode.CHECKOUT
    idempotency_key: Optional[str] = None
    payment_attempt_id: Optional[str] = None


class StartPaymentResult(BaseModel):
    """Gateway resource handed back to the client.

    Checkout mode fills session_id/url; payment-intent mode fills
    payment_intent_id/client_secret.
    """

    model_config = ConfigDict(strict=True)

    mode: CheckoutMode
    session_id: Optional[str] = None
    url: Optional[str] = None
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    idempotency_key: str
    payment_attempt_id: str
    replayed: bool = Field(
        default=False,
        description="True when an existing resource was returned for a retry",
    )


class SubscriptionUpdateRequest(BaseModel):
    """Admin request to move an organization's subscription to another price."""

    model_config = ConfigDict(strict=True, frozen=True, extra="forbid")

    organization_id: str
    price_id: str = Field(..., min_length=1)
    idempotency_key: Optional[str] = None
    payment_attempt_id: Optional[str] = None


class SubscriptionUpdateResult(BaseModel):
    model_config = ConfigDict(strict=True)

    subscription_id: str
    price_id: str
    status: str
    idempotency_key: str
    payment_attempt_id: str
    replayed: bool = False


class SubscriptionReconcileResult(BaseModel):
    """Outcome of re-reading an organization's subscription from the gateway.

    `source` is "stored" when the row was already complete, "subscription"
    when the stored subscription ID was re-read, and "checkout" when the
    subscription was recovered from the organization's latest checkout.
    """

    model_config = ConfigDict(strict=True)

    organization_id: str
    subscription_id: str
    customer_id: Optional[str] = None
    status: str
    price_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    reconciled: bool
    source: str


class ConnectAccountResult(BaseModel):
    model_config = ConfigDict(strict=True)

    organization_id: str
    connected_account_id: str
    charges_enabled: bool
    details_submitted: bool
    ready: bool
    onboarding_url: Optional[str] = None
