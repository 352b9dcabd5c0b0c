"""Payment attempt store.

One PaymentAttempt row per logical payment request. Uniqueness of the
idempotency key is enforced by a guard row in the `payment-attempt-keys`
table written in the same transaction as the attempt; the claim is a single
conditional UpdateItem. No read-then-write sequence guards a side effect.
"""

import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

from boto3.dynamodb.conditions import Key

from ..models.enums import ATTEMPT_STATUS_PREDECESSORS, AttemptStatus, FlowType
from ..models.errors import (
    IdempotencyConflictError,
    PaymentAttemptNotFoundError,
    TransientConflictError,
)
from ..models.payment_attempt import AttemptRequest, ClaimResult, PaymentAttempt
from ..utils.logging import get_logger, log_payment_operation
from .tables import PAYMENT_ATTEMPT_KEYS_TABLE, PAYMENT_ATTEMPTS_TABLE

if TYPE_CHECKING:
    from .dynamodb import DynamoDBService

logger = get_logger(__name__)

# Resource fields are write-once: set with if_not_exists, never removed.
RESOURCE_FIELDS = (
    "provider_payment_intent_id",
    "provider_checkout_session_id",
    "provider_subscription_id",
    "checkout_url",
    "client_secret",
)

_INSERT_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _parse_dt(value: Any) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class PaymentAttemptStore:
    """Persistence and claim protocol for PaymentAttempt rows."""

    ATTEMPTS_TABLE = PAYMENT_ATTEMPTS_TABLE
    KEYS_TABLE = PAYMENT_ATTEMPT_KEYS_TABLE

    def __init__(
        self,
        db: "DynamoDBService",
        *,
        claim_lease_seconds: float = 30.0,
        wait_timeout_seconds: float = 2.0,
        initial_poll_interval: float = 0.1,
        max_poll_interval: float = 0.5,
    ) -> None:
        """Initialize the store.

        Args:
            db: DynamoDB service instance
            claim_lease_seconds: Age after which a claimed attempt with no
                gateway resource may be claimed again
            wait_timeout_seconds: Default budget for wait_for_existing_resource
            initial_poll_interval: First pause between polls
            max_poll_interval: Upper bound for the doubling pause
        """
        self.db = db
        self.claim_lease_seconds = claim_lease_seconds
        self.wait_timeout_seconds = wait_timeout_seconds
        self.initial_poll_interval = initial_poll_interval
        self.max_poll_interval = max_poll_interval

    @staticmethod
    def _generate_attempt_id() -> str:
        return f"pa_{uuid.uuid4().hex}"

    # =========================================================================
    # Reads
    # =========================================================================

    def get_attempt(
        self, attempt_id: str, *, consistent_read: bool = False
    ) -> PaymentAttempt | None:
        item = self.db.get_item(
            self.ATTEMPTS_TABLE,
            {"attempt_id": attempt_id},
            consistent_read=consistent_read,
        )
        return self._item_to_attempt(item) if item else None

    def get_attempt_by_key(self, idempotency_key: str) -> PaymentAttempt | None:
        """Resolve an idempotency key to its attempt through the guard row."""
        guard = self.db.get_item(
            self.KEYS_TABLE,
            {"idempotency_key": idempotency_key},
            consistent_read=True,
        )
        if not guard:
            return None
        return self.get_attempt(guard["attempt_id"], consistent_read=True)

    def find_by_payment_intent(self, payment_intent_id: str) -> PaymentAttempt | None:
        items = self.db.query_by_gsi(
            table=self.ATTEMPTS_TABLE,
            index_name="payment_intent-index",
            partition_key_name="provider_payment_intent_id",
            partition_key_value=payment_intent_id,
        )
        return self._item_to_attempt(items[0]) if items else None

    def find_by_checkout_session(self, checkout_session_id: str) -> PaymentAttempt | None:
        items = self.db.query_by_gsi(
            table=self.ATTEMPTS_TABLE,
            index_name="checkout_session-index",
            partition_key_name="provider_checkout_session_id",
            partition_key_value=checkout_session_id,
        )
        return self._item_to_attempt(items[0]) if items else None

    def find_latest_subscription_attempt(self, organization_id: str) -> PaymentAttempt | None:
        """The organization's newest platform attempt that reached the gateway.

        Platform attempts carry no connected account; only those with a
        subscription or checkout session ID can lead back to a subscription.
        """
        items = self.db.query(
            self.ATTEMPTS_TABLE,
            Key("organization_id").eq(organization_id),
            index_name="organization-index",
            scan_index_forward=False,
        )
        for item in items:
            if item.get("connected_account_id"):
                continue
            if item.get("provider_subscription_id") or item.get("provider_checkout_session_id"):
                return self._item_to_attempt(item)
        return None

    # =========================================================================
    # ensure_attempt
    # =========================================================================

    def ensure_attempt(
        self,
        request: AttemptRequest,
        *,
        idempotency_key: Optional[str] = None,
        attempt_id: Optional[str] = None,
    ) -> tuple[PaymentAttempt, bool]:
        """Fetch or create the attempt for a request.

        Lookup order: by `attempt_id` if given, else by `idempotency_key`,
        else a fresh row.

        Args:
            request: Logically significant request fields
            idempotency_key: Client idempotency key
            attempt_id: Existing attempt to resume

        Returns:
            Tuple of (attempt, created)

        Raises:
            PaymentAttemptNotFoundError: `attempt_id` does not exist.
            IdempotencyConflictError: Existing attempt belongs to a different
                request or key.
        """
        if attempt_id:
            attempt = self.get_attempt(attempt_id, consistent_read=True)
            if attempt is None:
                raise PaymentAttemptNotFoundError(
                    details={"payment_attempt_id": attempt_id}
                )
            if idempotency_key and attempt.idempotency_key != idempotency_key:
                raise IdempotencyConflictError(
                    "Payment attempt was created with a different idempotency key",
                    details={"payment_attempt_id": attempt_id},
                )
            self._check_same_request(attempt, request)
            return attempt, False

        if not idempotency_key:
            attempt = self._new_attempt(request, None)
            self.db.put_item(
                self.ATTEMPTS_TABLE,
                self._attempt_to_item(attempt),
                condition_expression="attribute_not_exists(attempt_id)",
            )
            log_payment_operation(
                logger,
                "create_attempt",
                attempt_id=attempt.attempt_id,
                organization_id=attempt.organization_id,
                amount_cents=attempt.amount_cents,
            )
            return attempt, True

        for _ in range(_INSERT_ATTEMPTS):
            existing = self.get_attempt_by_key(idempotency_key)
            if existing is not None:
                self._check_same_request(existing, request)
                return existing, False

            attempt = self._new_attempt(request, idempotency_key)
            inserted = self.db.transact_write(
                [
                    self.db.put_operation(
                        self.ATTEMPTS_TABLE,
                        self._attempt_to_item(attempt),
                        condition_expression="attribute_not_exists(attempt_id)",
                    ),
                    self.db.put_operation(
                        self.KEYS_TABLE,
                        {
                            "idempotency_key": idempotency_key,
                            "attempt_id": attempt.attempt_id,
                            "created_at": _iso(attempt.created_at),
                        },
                        condition_expression="attribute_not_exists(idempotency_key)",
                    ),
                ]
            )
            if inserted:
                log_payment_operation(
                    logger,
                    "create_attempt",
                    attempt_id=attempt.attempt_id,
                    organization_id=attempt.organization_id,
                    idempotency_key=idempotency_key,
                    amount_cents=attempt.amount_cents,
                )
                return attempt, True

            logger.info(
                "Lost insert race for idempotency key %s; fetching winner",
                idempotency_key,
            )

        # Guard row still invisible after repeated cancellations: the racing
        # transaction has not committed yet.
        raise TransientConflictError(idempotency_key)

    def _new_attempt(
        self, request: AttemptRequest, idempotency_key: Optional[str]
    ) -> PaymentAttempt:
        now = _utcnow()
        return PaymentAttempt(
            attempt_id=self._generate_attempt_id(),
            idempotency_key=idempotency_key,
            flow_type=request.flow_type,
            amount_cents=request.amount_cents,
            currency=request.currency,
            organization_id=request.organization_id,
            connected_account_id=request.connected_account_id,
            platform_fee_cents=request.platform_fee_cents,
            request_fingerprint=request.request_fingerprint,
            status=AttemptStatus.INITIATED,
            metadata=dict(request.metadata),
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _check_same_request(attempt: PaymentAttempt, request: AttemptRequest) -> None:
        if (
            attempt.request_fingerprint != request.request_fingerprint
            or attempt.organization_id != request.organization_id
            or attempt.flow_type != request.flow_type
        ):
            raise IdempotencyConflictError(
                details={
                    "payment_attempt_id": attempt.attempt_id,
                    "idempotency_key": attempt.idempotency_key or "",
                }
            )

    # =========================================================================
    # claim_attempt
    # =========================================================================

    def claim_attempt(
        self,
        attempt: PaymentAttempt,
        *,
        amount_cents: int,
        currency: str,
        connected_account_id: Optional[str],
        fingerprint: str,
    ) -> ClaimResult:
        """Atomically move an attempt to `claimed`.

        Succeeds when the stored request matches the caller's exactly and the
        attempt is `initiated`, or is a stale claim: `claimed` with no gateway
        resource and either a recorded error or a claim older than the lease.

        Returns:
            ClaimResult with `claimed=False` and the current row when another
            caller holds or finished the claim.

        Raises:
            IdempotencyConflictError: The stored request differs from the caller's.
            PaymentAttemptNotFoundError: The attempt row does not exist.
        """
        if attempt.request_fingerprint != fingerprint:
            raise IdempotencyConflictError(
                details={"payment_attempt_id": attempt.attempt_id}
            )

        now = _utcnow()
        stale_before = now - timedelta(seconds=self.claim_lease_seconds)
        values: dict[str, Any] = {
            ":claimed": AttemptStatus.CLAIMED.value,
            ":initiated": AttemptStatus.INITIATED.value,
            ":fp": fingerprint,
            ":amount": amount_cents,
            ":currency": currency,
            ":now": _iso(now),
            ":stale_before": _iso(stale_before),
        }
        if connected_account_id:
            account_condition = "connected_account_id = :account"
            values[":account"] = connected_account_id
        else:
            account_condition = "attribute_not_exists(connected_account_id)"

        no_resource = " AND ".join(
            f"attribute_not_exists({field})"
            for field in (
                "provider_payment_intent_id",
                "provider_checkout_session_id",
                "provider_subscription_id",
            )
        )
        condition = (
            "request_fingerprint = :fp AND amount_cents = :amount "
            f"AND currency = :currency AND {account_condition} "
            "AND (#status = :initiated OR (#status = :claimed "
            f"AND {no_resource} "
            "AND (attribute_exists(last_error) OR claimed_at < :stale_before)))"
        )

        attrs = self.db.update_item(
            table=self.ATTEMPTS_TABLE,
            key={"attempt_id": attempt.attempt_id},
            update_expression=(
                "SET #status = :claimed, claimed_at = :now, updated_at = :now "
                "REMOVE last_error"
            ),
            expression_attribute_values=values,
            expression_attribute_names={"#status": "status"},
            condition_expression=condition,
        )

        if attrs is not None:
            claimed = self._item_to_attempt(attrs)
            log_payment_operation(
                logger,
                "claim_attempt",
                attempt_id=claimed.attempt_id,
                idempotency_key=claimed.idempotency_key,
                status=claimed.status.value,
                reclaimed=attempt.status == AttemptStatus.CLAIMED,
            )
            return ClaimResult(attempt=claimed, claimed=True)

        current = self.get_attempt(attempt.attempt_id, consistent_read=True)
        if current is None:
            raise PaymentAttemptNotFoundError(
                details={"payment_attempt_id": attempt.attempt_id}
            )
        if (
            current.request_fingerprint != fingerprint
            or current.amount_cents != amount_cents
            or current.currency != currency
            or current.connected_account_id != connected_account_id
        ):
            raise IdempotencyConflictError(
                details={"payment_attempt_id": current.attempt_id}
            )

        logger.info(
            "Claim not acquired for attempt %s (status=%s)",
            current.attempt_id,
            current.status.value,
        )
        return ClaimResult(attempt=current, claimed=False)

    # =========================================================================
    # update_attempt
    # =========================================================================

    def update_attempt(
        self,
        attempt_id: str,
        *,
        status: Optional[AttemptStatus] = None,
        provider_payment_intent_id: Optional[str] = None,
        provider_checkout_session_id: Optional[str] = None,
        provider_subscription_id: Optional[str] = None,
        checkout_url: Optional[str] = None,
        client_secret: Optional[str] = None,
        last_error: Optional[str] = None,
    ) -> PaymentAttempt:
        """Record gateway resources, status or an error on an attempt.

        Resource fields are only written when absent, so a known resource ID
        is never cleared nor replaced. Status only moves forward (see
        ATTEMPT_STATUS_PREDECESSORS); a backwards transition is dropped while
        the remaining fields are still applied.

        Raises:
            PaymentAttemptNotFoundError: The attempt does not exist.
            ValueError: `status` is not a valid update target.
        """
        if status is not None and status not in ATTEMPT_STATUS_PREDECESSORS:
            raise ValueError(f"Cannot move an attempt to {status.value} via update")

        resources = {
            "provider_payment_intent_id": provider_payment_intent_id,
            "provider_checkout_session_id": provider_checkout_session_id,
            "provider_subscription_id": provider_subscription_id,
            "checkout_url": checkout_url,
            "client_secret": client_secret,
        }
        set_clauses = ["updated_at = :now"]
        values: dict[str, Any] = {":now": _iso(_utcnow())}
        for field, value in resources.items():
            if value:
                set_clauses.append(f"{field} = if_not_exists({field}, :{field})")
                values[f":{field}"] = value
        if last_error is not None:
            set_clauses.append("last_error = :last_error")
            values[":last_error"] = last_error[:1000]

        attrs = None
        if status is not None:
            allowed = ATTEMPT_STATUS_PREDECESSORS[status]
            status_values = {f":from{i}": s.value for i, s in enumerate(allowed)}
            attrs = self.db.update_item(
                table=self.ATTEMPTS_TABLE,
                key={"attempt_id": attempt_id},
                update_expression="SET "
                + ", ".join(set_clauses + ["#status = :status"]),
                expression_attribute_values={
                    **values,
                    **status_values,
                    ":status": status.value,
                },
                expression_attribute_names={"#status": "status"},
                condition_expression=(
                    "attribute_exists(attempt_id) AND #status IN ("
                    + ", ".join(status_values)
                    + ")"
                ),
            )
            if attrs is None and self.get_attempt(attempt_id, consistent_read=True):
                logger.info(
                    "Skipping status transition to %s for attempt %s",
                    status.value,
                    attempt_id,
                )

        if attrs is None:
            attrs = self.db.update_item(
                table=self.ATTEMPTS_TABLE,
                key={"attempt_id": attempt_id},
                update_expression="SET " + ", ".join(set_clauses),
                expression_attribute_values=values,
                condition_expression="attribute_exists(attempt_id)",
            )
        if attrs is None:
            raise PaymentAttemptNotFoundError(details={"payment_attempt_id": attempt_id})

        attempt = self._item_to_attempt(attrs)
        log_payment_operation(
            logger,
            "update_attempt",
            attempt_id=attempt_id,
            status=attempt.status.value,
            error=last_error,
        )
        return attempt

    # =========================================================================
    # wait_for_existing_resource
    # =========================================================================

    def wait_for_existing_resource(
        self, attempt_id: str, timeout: Optional[float] = None
    ) -> PaymentAttempt | None:
        """Poll until another caller's gateway resource appears on the attempt.

        Uses strongly consistent reads with exponential backoff (first pause
        `initial_poll_interval`, doubling up to `max_poll_interval`) and
        returns None once `timeout` seconds have elapsed, or as soon as the
        claim holder records a failure.
        """
        budget = self.wait_timeout_seconds if timeout is None else timeout
        deadline = time.monotonic() + budget
        delay = self.initial_poll_interval

        while True:
            attempt = self.get_attempt(attempt_id, consistent_read=True)
            if attempt is not None and attempt.has_provider_resource:
                return attempt
            if attempt is not None and (
                attempt.last_error or attempt.status == AttemptStatus.FAILED
            ):
                return None

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Timed out after %.2fs waiting for resource on attempt %s",
                    budget,
                    attempt_id,
                )
                return None
            time.sleep(min(delay, remaining))
            delay = min(delay * 2, self.max_poll_interval)

    # =========================================================================
    # Item conversion
    # =========================================================================

    @staticmethod
    def _attempt_to_item(attempt: PaymentAttempt) -> dict[str, Any]:
        item: dict[str, Any] = {
            "attempt_id": attempt.attempt_id,
            "flow_type": attempt.flow_type.value,
            "amount_cents": attempt.amount_cents,
            "currency": attempt.currency,
            "organization_id": attempt.organization_id,
            "platform_fee_cents": attempt.platform_fee_cents,
            "request_fingerprint": attempt.request_fingerprint,
            "status": attempt.status.value,
            "metadata": dict(attempt.metadata),
            "created_at": _iso(attempt.created_at),
            "updated_at": _iso(attempt.updated_at),
        }
        optional = {
            "idempotency_key": attempt.idempotency_key,
            "connected_account_id": attempt.connected_account_id,
            "last_error": attempt.last_error,
            "claimed_at": _iso(attempt.claimed_at) if attempt.claimed_at else None,
        }
        optional.update({field: getattr(attempt, field) for field in RESOURCE_FIELDS})
        # Absent rather than NULL: GSI key attributes must be strings.
        item.update({k: v for k, v in optional.items() if v is not None})
        return item

    @staticmethod
    def _item_to_attempt(item: dict[str, Any]) -> PaymentAttempt:
        return PaymentAttempt(
            attempt_id=item["attempt_id"],
            idempotency_key=item.get("idempotency_key"),
            flow_type=FlowType(item["flow_type"]),
            amount_cents=int(item["amount_cents"]),
            currency=item["currency"],
            organization_id=item["organization_id"],
            connected_account_id=item.get("connected_account_id"),
            platform_fee_cents=int(item.get("platform_fee_cents", 0)),
            request_fingerprint=item["request_fingerprint"],
            status=AttemptStatus(item["status"]),
            provider_payment_intent_id=item.get("provider_payment_intent_id"),
            provider_checkout_session_id=item.get("provider_checkout_session_id"),
            provider_subscription_id=item.get("provider_subscription_id"),
            checkout_url=item.get("checkout_url"),
            client_secret=item.get("client_secret"),
            last_error=item.get("last_error"),
            metadata={k: str(v) for k, v in (item.get("metadata") or {}).items()},
            created_at=datetime.fromisoformat(item["created_at"]),
            updated_at=datetime.fromisoformat(item["updated_at"]),
            claimed_at=_parse_dt(item.get("claimed_at")),
        )
