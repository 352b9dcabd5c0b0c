"""API models for organization admin endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from orgpay.models.checkout import (
    ConnectAccountResult,
    SubscriptionReconcileResult,
    SubscriptionUpdateResult,
)

from orgpay_api.models.common import ApiModel


class SubscriptionUpdateBody(ApiModel):
    """Move the organization's subscription to another price."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        json_schema_extra={
            "examples": [{"priceId": "price_1Pro", "idempotencyKey": "plan-change-42"}]
        },
    )

    price_id: str = Field(..., min_length=1, max_length=255)
    idempotency_key: Optional[str] = None
    payment_attempt_id: Optional[str] = None


class SubscriptionUpdateResponse(ApiModel):
    subscription_id: str
    price_id: str
    status: str
    idempotency_key: str
    payment_attempt_id: str
    replayed: bool = False

    @classmethod
    def from_result(cls, result: SubscriptionUpdateResult) -> "SubscriptionUpdateResponse":
        return cls(**result.model_dump())


class ConnectAccountResponse(ApiModel):
    organization_id: str
    connected_account_id: str
    charges_enabled: bool
    details_submitted: bool
    ready: bool
    onboarding_url: Optional[str] = Field(
        default=None,
        description="Stripe-hosted onboarding link, present until the account is ready",
    )

    @classmethod
    def from_result(cls, result: ConnectAccountResult) -> "ConnectAccountResponse":
        return cls(**result.model_dump())


class SubscriptionReconcileResponse(ApiModel):
    organization_id: str
    subscription_id: str
    customer_id: Optional[str] = None
    status: str
    price_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    reconciled: bool = Field(
        ..., description="False when the stored row was already complete"
    )
    source: str = Field(
        ..., description="Where the subscription was read from: stored, subscription or checkout"
    )

    @classmethod
    def from_result(
        cls, result: SubscriptionReconcileResult
    ) -> "SubscriptionReconcileResponse":
        return cls(**result.model_dump())
