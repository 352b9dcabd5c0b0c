"""API models for Stripe webhook endpoints."""

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    """Acknowledgement returned to Stripe."""

    received: bool
    event_id: str | None = None
    event_type: str | None = None
    processing_result: str  # "success", "duplicate", "skipped", "rejected"
    message: str | None = None


class WebhookErrorResponse(BaseModel):
    """Body of a 500 response; Stripe retries the delivery."""

    success: bool = False
    message: str
    recovery: str | None = None
