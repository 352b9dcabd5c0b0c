"""Typed Stripe webhook events.

Inbound events are parsed into a tagged union keyed by event type. Types
the reconciler does not know parse as UnknownEvent, so new Stripe event
types never fail validation.

Usage:
    event = parse_stripe_event(json.loads(payload))
    if isinstance(event, PaymentIntentEvent):
        ...
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter


def _expandable_id(value: Any) -> str | None:
    """Return the ID of a Stripe field that may be an ID or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return None


def _timestamp(value: int | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def organization_id(self) -> str | None:
        return self.metadata.get("organization_id") or None

    @property
    def payment_attempt_id(self) -> str | None:
        return self.metadata.get("payment_attempt_id") or None


class CustomerDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    email: str | None = None


class CheckoutSessionObject(_StripeObject):
    mode: str | None = None
    payment_status: str | None = None
    status: str | None = None
    payment_intent: str | dict[str, Any] | None = None
    subscription: str | dict[str, Any] | None = None
    customer: str | dict[str, Any] | None = None
    amount_total: int | None = None
    amount_subtotal: int | None = None
    currency: str | None = None
    customer_details: CustomerDetails | None = None

    @property
    def payment_intent_id(self) -> str | None:
        return _expandable_id(self.payment_intent)

    @property
    def subscription_id(self) -> str | None:
        return _expandable_id(self.subscription)

    @property
    def customer_id(self) -> str | None:
        return _expandable_id(self.customer)


class LastPaymentError(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: str | None = None
    message: str | None = None


class PaymentIntentObject(_StripeObject):
    amount: int | None = None
    amount_received: int | None = None
    currency: str | None = None
    status: str | None = None
    receipt_email: str | None = None
    created: int | None = None
    last_payment_error: LastPaymentError | None = None

    @property
    def checkout_session_id(self) -> str | None:
        return self.metadata.get("checkout_session_id") or None

    @property
    def created_at(self) -> datetime | None:
        return _timestamp(self.created)


class SubscriptionPrice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None


class SubscriptionItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    price: SubscriptionPrice | None = None


class SubscriptionItems(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: list[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(_StripeObject):
    status: str | None = None
    customer: str | dict[str, Any] | None = None
    cancel_at_period_end: bool = False
    current_period_end: int | None = None
    items: SubscriptionItems | None = None

    @property
    def customer_id(self) -> str | None:
        return _expandable_id(self.customer)

    @property
    def period_end(self) -> datetime | None:
        return _timestamp(self.current_period_end)

    @property
    def price_id(self) -> str | None:
        if self.items and self.items.data and self.items.data[0].price:
            return self.items.data[0].price.id
        return None


class InvoiceObject(_StripeObject):
    subscription: str | dict[str, Any] | None = None
    customer: str | dict[str, Any] | None = None
    amount_paid: int | None = None
    currency: str | None = None

    @property
    def subscription_id(self) -> str | None:
        return _expandable_id(self.subscription)

    @property
    def customer_id(self) -> str | None:
        return _expandable_id(self.customer)


class _EventBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., description="Stripe event ID (evt_xxx)")
    type: str
    account: str | None = Field(
        default=None,
        description="Connected account the event happened on (Connect events only)",
    )
    livemode: bool = False
    created: int | None = None


class CheckoutSessionData(BaseModel):
    object: CheckoutSessionObject


class PaymentIntentData(BaseModel):
    object: PaymentIntentObject


class SubscriptionData(BaseModel):
    object: SubscriptionObject


class InvoiceData(BaseModel):
    object: InvoiceObject


class CheckoutSessionCompletedEvent(_EventBase):
    type: Literal["checkout.session.completed"]
    data: CheckoutSessionData


class PaymentIntentEvent(_EventBase):
    type: Literal["payment_intent.succeeded", "payment_intent.payment_failed"]
    data: PaymentIntentData


class SubscriptionEvent(_EventBase):
    type: Literal[
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    ]
    data: SubscriptionData


class InvoiceEvent(_EventBase):
    type: Literal["invoice.paid", "invoice.payment_failed"]
    data: InvoiceData


class UnknownEvent(_EventBase):
    """Any event type without a dedicated variant."""

    data: dict[str, Any] = Field(default_factory=dict)


EVENT_VARIANT_TAGS: dict[str, str] = {
    "checkout.session.completed": "checkout_session",
    "payment_intent.succeeded": "payment_intent",
    "payment_intent.payment_failed": "payment_intent",
    "customer.subscription.created": "subscription",
    "customer.subscription.updated": "subscription",
    "customer.subscription.deleted": "subscription",
    "invoice.paid": "invoice",
    "invoice.payment_failed": "invoice",
}

HANDLED_EVENT_TYPES = frozenset(EVENT_VARIANT_TAGS)


def _event_variant(value: Any) -> str:
    event_type = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    return EVENT_VARIANT_TAGS.get(event_type or "", "unknown")


StripeEvent = Annotated[
    Union[
        Annotated[CheckoutSessionCompletedEvent, Tag("checkout_session")],
        Annotated[PaymentIntentEvent, Tag("payment_intent")],
        Annotated[SubscriptionEvent, Tag("subscription")],
        Annotated[InvoiceEvent, Tag("invoice")],
        Annotated[UnknownEvent, Tag("unknown")],
    ],
    Discriminator(_event_variant),
]

_stripe_event_adapter: TypeAdapter[Any] = TypeAdapter(StripeEvent)


def parse_stripe_event(payload: dict[str, Any]) -> StripeEvent:
    """Validate a decoded Stripe event payload into its typed variant.

    Raises:
        pydantic.ValidationError: If a known event type is malformed.
    """
    return _stripe_event_adapter.validate_python(payload)


def event_snapshot(event: _EventBase) -> dict[str, str]:
    """Minimal, non-PII snapshot of an event for the processed-event ledger."""
    snapshot = {"livemode": str(event.livemode).lower()}
    if event.account:
        snapshot["connected_account"] = event.account
    data = getattr(event, "data", None)
    obj = getattr(data, "object", None)
    if obj is not None and getattr(obj, "id", None):
        snapshot["object_id"] = obj.id
    return snapshot
