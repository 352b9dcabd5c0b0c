"""Processed webhook event model for deduplication and auditing."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from .enums import ProcessingResult


class ProcessedEvent(BaseModel):
    """Ledger row for an externally delivered webhook event.

    Used for:
    - Idempotency: `event_id` is the sole deduplication key
    - Auditing: track every delivery and its outcome
    - Crash recovery: rows with no `processed_at` are retried in full
    """

    model_config = ConfigDict(strict=True)

    event_id: str = Field(
        ...,
        description="Stripe event ID (evt_xxx)",
        examples=["evt_1ABC123DEF456"],
    )
    event_type: str = Field(
        ...,
        description="Stripe event type",
        examples=["checkout.session.completed", "payment_intent.succeeded"],
    )
    payload_snapshot: dict[str, str] = Field(
        default_factory=dict,
        description="Minimal non-PII snapshot of the event",
    )
    received_at: datetime
    processed_at: datetime | None = Field(
        default=None,
        description="Set once all downstream effects have committed",
    )
    processing_result: ProcessingResult | None = None
    delivery_count: int = Field(default=1, ge=1)

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None


class EventRegistration(BaseModel):
    """Result of register_event()."""

    model_config = ConfigDict(strict=True)

    event: ProcessedEvent
    already_processed: bool
