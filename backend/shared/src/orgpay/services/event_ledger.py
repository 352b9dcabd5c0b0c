"""Webhook event ledger for at-least-once delivery deduplication.

An event is "processed" only once `processed_at` is set, which happens after
every downstream effect has committed. A row without `processed_at` means a
previous delivery crashed or failed mid-handler; the next delivery re-runs
the full handler, whose effects are idempotent upserts.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from ..models.enums import ProcessingResult
from ..models.processed_event import EventRegistration, ProcessedEvent
from ..utils.logging import get_logger
from .tables import PROCESSED_EVENTS_TABLE

if TYPE_CHECKING:
    from .dynamodb import DynamoDBService

logger = get_logger(__name__)


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


class EventLedger:
    """Insert-if-absent ledger of Stripe webhook events keyed by event ID."""

    TABLE = PROCESSED_EVENTS_TABLE

    def __init__(self, db: "DynamoDBService") -> None:
        self.db = db

    def register_event(
        self,
        event_id: str,
        event_type: str,
        payload_snapshot: Optional[dict[str, str]] = None,
    ) -> EventRegistration:
        """Record a delivery of an event.

        Args:
            event_id: Stripe event ID
            event_type: Stripe event type
            payload_snapshot: Minimal non-PII snapshot of the event

        Returns:
            EventRegistration; `already_processed` is True only when a
            previous delivery finished all of its effects.
        """
        now = datetime.now(timezone.utc)
        event = ProcessedEvent(
            event_id=event_id,
            event_type=event_type,
            payload_snapshot=dict(payload_snapshot or {}),
            received_at=now,
        )
        created = self.db.put_item(
            self.TABLE,
            self._event_to_item(event),
            condition_expression="attribute_not_exists(event_id)",
        )
        if created:
            return EventRegistration(event=event, already_processed=False)

        attrs = self.db.update_item(
            table=self.TABLE,
            key={"event_id": event_id},
            update_expression="ADD delivery_count :one SET last_received_at = :now",
            expression_attribute_values={":one": 1, ":now": _iso(now)},
            condition_expression="attribute_exists(event_id)",
        )
        if attrs is None:
            raise RuntimeError(f"Processed event {event_id} vanished during registration")

        existing = self._item_to_event(attrs)
        logger.info(
            "Event %s seen before (deliveries=%d, processed=%s)",
            event_id,
            existing.delivery_count,
            existing.is_processed,
        )
        return EventRegistration(event=existing, already_processed=existing.is_processed)

    def mark_processed(
        self,
        event_id: str,
        processing_result: ProcessingResult = ProcessingResult.SUCCESS,
    ) -> ProcessedEvent:
        """Set `processed_at`. Call only after all effects have committed."""
        attrs = self.db.update_item(
            table=self.TABLE,
            key={"event_id": event_id},
            update_expression=(
                "SET processed_at = if_not_exists(processed_at, :now), "
                "processing_result = :result REMOVE last_error"
            ),
            expression_attribute_values={
                ":now": _iso(datetime.now(timezone.utc)),
                ":result": processing_result.value,
            },
            condition_expression="attribute_exists(event_id)",
        )
        if attrs is None:
            raise KeyError(f"Processed event not registered: {event_id}")
        return self._item_to_event(attrs)

    def record_failure(self, event_id: str, error: str) -> None:
        """Note a failed delivery for auditing. Leaves the event unprocessed."""
        self.db.update_item(
            table=self.TABLE,
            key={"event_id": event_id},
            update_expression="SET processing_result = :result, last_error = :error",
            expression_attribute_values={
                ":result": ProcessingResult.ERROR.value,
                ":error": error[:1000],
            },
            condition_expression=(
                "attribute_exists(event_id) AND attribute_not_exists(processed_at)"
            ),
        )

    def get_event(self, event_id: str) -> ProcessedEvent | None:
        item = self.db.get_item(self.TABLE, {"event_id": event_id}, consistent_read=True)
        return self._item_to_event(item) if item else None

    @staticmethod
    def _event_to_item(event: ProcessedEvent) -> dict[str, Any]:
        return {
            "event_id": event.event_id,
            "event_type": event.event_type,
            "payload_snapshot": dict(event.payload_snapshot),
            "received_at": _iso(event.received_at),
            "delivery_count": event.delivery_count,
        }

    @staticmethod
    def _item_to_event(item: dict[str, Any]) -> ProcessedEvent:
        result = item.get("processing_result")
        return ProcessedEvent(
            event_id=item["event_id"],
            event_type=item["event_type"],
            payload_snapshot={
                k: str(v) for k, v in (item.get("payload_snapshot") or {}).items()
            },
            received_at=datetime.fromisoformat(item["received_at"]),
            processed_at=(
                datetime.fromisoformat(item["processed_at"])
                if item.get("processed_at")
                else None
            ),
            processing_result=ProcessingResult(result) if result else None,
            delivery_count=int(item.get("delivery_count", 1)),
        )
