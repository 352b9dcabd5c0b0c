"""API models for donation and payment attempt endpoints."""

from datetime import datetime
from typing import Optional, Union

from pydantic import ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from orgpay.models.checkout import DonationRequest, StartPaymentResult
from orgpay.models.enums import AttemptStatus, CheckoutMode, FlowType
from orgpay.models.payment_attempt import PaymentAttempt
from orgpay.services.fingerprint import amount_to_cents

from orgpay_api.models.common import ApiModel


class StartDonationRequest(ApiModel):
    """Request to start a donation.

    The amount is in major units ("50.00" or 50); the platform fee is never
    accepted from the client.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        json_schema_extra={
            "examples": [
                {
                    "organizationSlug": "river-cleanup",
                    "amount": "50.00",
                    "currency": "usd",
                    "donorName": "Jane Doe",
                    "donorEmail": "jane@example.org",
                    "mode": "checkout",
                    "idempotencyKey": "donate-7f3c2a",
                }
            ]
        },
    )

    organization_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    organization_slug: Optional[str] = Field(default=None, min_length=1, max_length=128)
    amount: Union[int, str, float] = Field(
        ...,
        description="Donation amount in major currency units",
        examples=["50.00"],
    )
    currency: Optional[str] = Field(default=None, max_length=3, examples=["usd"])
    donor_name: Optional[str] = Field(default=None, max_length=200)
    donor_email: Optional[str] = Field(default=None, max_length=320)
    purpose: Optional[str] = Field(default=None, max_length=500)
    target_entity_id: Optional[str] = Field(default=None, max_length=128)
    mode: CheckoutMode = CheckoutMode.CHECKOUT
    idempotency_key: Optional[str] = Field(
        default=None,
        description="Client token; retries with the same key return the same payment",
    )
    payment_attempt_id: Optional[str] = Field(
        default=None,
        description="Attempt ID returned by an earlier call, to resume it",
    )

    @model_validator(mode="after")
    def _require_organization(self) -> "StartDonationRequest":
        if not self.organization_id and not self.organization_slug:
            raise ValueError("organizationId or organizationSlug is required")
        return self

    def to_donation_request(self) -> DonationRequest:
        """Convert to the orchestrator's request, amount in minor units.

        Raises:
            PaymentValidationError: The amount is invalid or out of range.
        """
        return DonationRequest(
            organization_id=self.organization_id,
            organization_slug=self.organization_slug,
            amount_cents=amount_to_cents(self.amount),
            currency=self.currency,
            donor_name=self.donor_name,
            donor_email=self.donor_email,
            purpose=self.purpose,
            target_entity_id=self.target_entity_id,
            mode=self.mode,
            idempotency_key=self.idempotency_key,
            payment_attempt_id=self.payment_attempt_id,
        )


class StartDonationResponse(ApiModel):
    """Gateway resource for the donation: a hosted checkout URL or a client secret."""

    mode: CheckoutMode
    session_id: Optional[str] = None
    url: Optional[str] = None
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    idempotency_key: str
    payment_attempt_id: str
    replayed: bool = False

    @classmethod
    def from_result(cls, result: StartPaymentResult) -> "StartDonationResponse":
        return cls(**result.model_dump())


class PaymentAttemptStatusResponse(ApiModel):
    """Public view of a payment attempt (no donor details, no client secret)."""

    payment_attempt_id: str
    flow_type: FlowType
    status: AttemptStatus
    organization_id: str
    amount_cents: int
    currency: str
    platform_fee_cents: int
    provider_payment_intent_id: Optional[str] = None
    provider_checkout_session_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_attempt(cls, attempt: PaymentAttempt) -> "PaymentAttemptStatusResponse":
        return cls(
            payment_attempt_id=attempt.attempt_id,
            flow_type=attempt.flow_type,
            status=attempt.status,
            organization_id=attempt.organization_id,
            amount_cents=attempt.amount_cents,
            currency=attempt.currency,
            platform_fee_cents=attempt.platform_fee_cents,
            provider_payment_intent_id=attempt.provider_payment_intent_id,
            provider_checkout_session_id=attempt.provider_checkout_session_id,
            provider_subscription_id=attempt.provider_subscription_id,
            created_at=attempt.created_at,
            updated_at=attempt.updated_at,
        )
