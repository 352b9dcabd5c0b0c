"""Donation, donation-stats and subscription records.

Every write is an upsert keyed on the provider resource ID so a webhook
handler can be re-run in full without duplicating rows. Donation stats are
incremented in the same transaction that flips the donation's
`counted_in_stats` flag, so each donation is counted exactly once.
"""

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

from boto3.dynamodb.conditions import Key

from ..models.enums import DonationStatus, SubscriptionStatus
from ..models.financial import DonationRecord, DonationStats, SubscriptionRecord
from ..utils.logging import get_logger
from .tables import DONATION_STATS_TABLE, DONATIONS_TABLE, SUBSCRIPTIONS_TABLE

if TYPE_CHECKING:
    from .dynamodb import DynamoDBService

logger = get_logger(__name__)

# Subscription statuses whose provider IDs may be replaced by a new subscription
REPLACEABLE_SUBSCRIPTION_STATUSES = frozenset(
    {SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED}
)
# Troubled subscriptions: an event must carry the stored customer ID
MATCH_REQUIRED_SUBSCRIPTION_STATUSES = frozenset(
    {SubscriptionStatus.UNPAID, SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELING}
)

GRACE_PERIOD_DAYS = 30

_UNSET = object()


def normalize_subscription_status(
    status: Optional[str],
    *,
    cancel_at_period_end: bool = False,
    deleted: bool = False,
) -> SubscriptionStatus:
    """Map a gateway subscription status to the local status.

    A deleted subscription is canceled; one set to cancel at period end is
    `canceling` until it actually ends. Unknown statuses grant no access.
    """
    if deleted or not status:
        return SubscriptionStatus.CANCELED
    if cancel_at_period_end and status != SubscriptionStatus.CANCELED.value:
        return SubscriptionStatus.CANCELING
    try:
        return SubscriptionStatus(status)
    except ValueError:
        logger.warning("Unknown subscription status %r treated as incomplete", status)
        return SubscriptionStatus.INCOMPLETE


def grace_period_end(now: Optional[datetime] = None) -> datetime:
    """End of the read-only grace period after a subscription is canceled."""
    return (now or datetime.now(timezone.utc)) + timedelta(days=GRACE_PERIOD_DAYS)


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _parse_dt(value: Any) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class FinancialRecordStore:
    """Upserts for donations, donation stats and subscriptions."""

    DONATIONS_TABLE = DONATIONS_TABLE
    STATS_TABLE = DONATION_STATS_TABLE
    SUBSCRIPTIONS_TABLE = SUBSCRIPTIONS_TABLE

    def __init__(self, db: "DynamoDBService") -> None:
        self.db = db

    # =========================================================================
    # Donations
    # =========================================================================

    def get_donation(self, organization_id: str, donation_key: str) -> DonationRecord | None:
        item = self.db.get_item(
            self.DONATIONS_TABLE,
            {"organization_id": organization_id, "donation_key": donation_key},
            consistent_read=True,
        )
        return self._item_to_donation(item) if item else None

    def list_donations(self, organization_id: str) -> list[DonationRecord]:
        items = self.db.query(
            self.DONATIONS_TABLE, Key("organization_id").eq(organization_id)
        )
        return [self._item_to_donation(item) for item in items]

    def upsert_donation(
        self,
        organization_id: str,
        donation_key: str,
        *,
        amount_cents: int,
        currency: str,
        status: DonationStatus,
        provider_payment_intent_id: Optional[str] = None,
        provider_checkout_session_id: Optional[str] = None,
        donor_name: Optional[str] = None,
        donor_email: Optional[str] = None,
        purpose: Optional[str] = None,
        target_entity_id: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> DonationRecord:
        """Create or update the donation keyed on a provider resource ID.

        Provider IDs and donor details are kept once known. A succeeded
        donation never moves back to processing or failed.
        """
        now = _iso(datetime.now(timezone.utc))
        set_clauses = [
            "amount_cents = :amount",
            "currency = :currency",
            "updated_at = :now",
            "created_at = if_not_exists(created_at, :now)",
            "counted_in_stats = if_not_exists(counted_in_stats, :false)",
        ]
        values: dict[str, Any] = {
            ":amount": amount_cents,
            ":currency": currency,
            ":now": now,
            ":false": False,
        }
        write_once = {
            "provider_payment_intent_id": provider_payment_intent_id,
            "provider_checkout_session_id": provider_checkout_session_id,
            "donor_name": donor_name,
            "donor_email": donor_email,
            "purpose": purpose,
            "target_entity_id": target_entity_id,
        }
        for field, value in write_once.items():
            if value:
                set_clauses.append(f"{field} = if_not_exists({field}, :{field})")
                values[f":{field}"] = value
        if metadata:
            set_clauses.append("metadata = :metadata")
            values[":metadata"] = dict(metadata)

        key = {"organization_id": organization_id, "donation_key": donation_key}
        names = {"#status": "status"}

        if status == DonationStatus.SUCCEEDED:
            set_clauses.append("#status = :status")
            values[":status"] = status.value
            attrs = self.db.update_item(
                table=self.DONATIONS_TABLE,
                key=key,
                update_expression="SET " + ", ".join(set_clauses),
                expression_attribute_values=values,
                expression_attribute_names=names,
            )
        else:
            attrs = self.db.update_item(
                table=self.DONATIONS_TABLE,
                key=key,
                update_expression="SET " + ", ".join(set_clauses + ["#status = :status"]),
                expression_attribute_values={
                    **values,
                    ":status": status.value,
                    ":succeeded": DonationStatus.SUCCEEDED.value,
                },
                expression_attribute_names=names,
                condition_expression="attribute_not_exists(#status) OR #status <> :succeeded",
            )
            if attrs is None:
                # Already succeeded: keep the status, still merge new details.
                attrs = self.db.update_item(
                    table=self.DONATIONS_TABLE,
                    key=key,
                    update_expression="SET " + ", ".join(set_clauses),
                    expression_attribute_values=values,
                )
        if attrs is None:
            raise RuntimeError(f"Donation upsert returned no attributes for {donation_key}")

        donation = self._item_to_donation(attrs)
        logger.info(
            "Upserted donation %s for organization %s (status=%s, amount=%d)",
            donation_key,
            organization_id,
            donation.status.value,
            donation.amount_cents,
        )
        return donation

    def count_donation_in_stats(self, donation: DonationRecord) -> bool:
        """Add a succeeded donation to its organization's aggregate, once.

        Returns:
            True if the stats were incremented, False if the donation was
            already counted.
        """
        now = _iso(datetime.now(timezone.utc))
        counted = self.db.transact_write(
            [
                self.db.update_operation(
                    self.DONATIONS_TABLE,
                    key={
                        "organization_id": donation.organization_id,
                        "donation_key": donation.donation_key,
                    },
                    update_expression="SET counted_in_stats = :true",
                    expression_attribute_values={":true": True, ":false": False},
                    condition_expression=(
                        "attribute_exists(donation_key) AND "
                        "(attribute_not_exists(counted_in_stats) OR counted_in_stats = :false)"
                    ),
                ),
                self.db.update_operation(
                    self.STATS_TABLE,
                    key={"organization_id": donation.organization_id},
                    update_expression=(
                        "ADD total_amount_cents :amount, donation_count :one "
                        "SET last_donation_at = :now"
                    ),
                    expression_attribute_values={
                        ":amount": donation.amount_cents,
                        ":one": 1,
                        ":now": now,
                    },
                ),
            ]
        )
        if not counted:
            logger.info(
                "Donation %s already counted in stats for organization %s",
                donation.donation_key,
                donation.organization_id,
            )
        return counted

    def get_stats(self, organization_id: str) -> DonationStats:
        item = self.db.get_item(
            self.STATS_TABLE, {"organization_id": organization_id}, consistent_read=True
        )
        if not item:
            return DonationStats(organization_id=organization_id)
        return DonationStats(
            organization_id=organization_id,
            total_amount_cents=int(item.get("total_amount_cents", 0)),
            donation_count=int(item.get("donation_count", 0)),
            last_donation_at=_parse_dt(item.get("last_donation_at")),
        )

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def get_subscription(
        self, organization_id: str, subscription_id: str
    ) -> SubscriptionRecord | None:
        item = self.db.get_item(
            self.SUBSCRIPTIONS_TABLE,
            {"organization_id": organization_id, "subscription_id": subscription_id},
            consistent_read=True,
        )
        return self._item_to_subscription(item) if item else None

    def find_subscription(self, subscription_id: str) -> SubscriptionRecord | None:
        """Look up a subscription by ID alone (no tenant in the event)."""
        items = self.db.query_by_gsi(
            table=self.SUBSCRIPTIONS_TABLE,
            index_name="subscription_id-index",
            partition_key_name="subscription_id",
            partition_key_value=subscription_id,
        )
        return self._item_to_subscription(items[0]) if items else None

    def get_current_subscription(self, organization_id: str) -> SubscriptionRecord | None:
        """The organization's most recently updated subscription."""
        items = self.db.query(
            self.SUBSCRIPTIONS_TABLE, Key("organization_id").eq(organization_id)
        )
        if not items:
            return None
        latest = max(items, key=lambda item: item["updated_at"])
        return self._item_to_subscription(latest)

    def org_owns_subscription(
        self,
        organization_id: str,
        customer_id: Optional[str],
        subscription_id: Optional[str],
    ) -> bool:
        """Check an event's customer/subscription against the tenant's records.

        A canceled or expired subscription may be replaced by a new one. A
        troubled subscription (past_due, unpaid, canceling) requires the event
        to carry the stored customer ID; an active one only rejects IDs that
        differ from what is stored.
        """
        current = self.get_current_subscription(organization_id)
        if current is None or current.status in REPLACEABLE_SUBSCRIPTION_STATUSES:
            return True

        if current.customer_id:
            if current.status in MATCH_REQUIRED_SUBSCRIPTION_STATUSES and not customer_id:
                return False
            if customer_id and customer_id != current.customer_id:
                return False

        if subscription_id and subscription_id != current.subscription_id:
            return False
        return True

    def upsert_subscription(
        self,
        organization_id: str,
        subscription_id: str,
        *,
        status: SubscriptionStatus,
        customer_id: Optional[str] = None,
        price_id: Optional[str] = None,
        current_period_end: Optional[datetime] = None,
        grace_period_ends_at: Any = _UNSET,
    ) -> SubscriptionRecord:
        """Create or update a subscription keyed on its provider ID.

        Args:
            grace_period_ends_at: A datetime sets the grace period, None clears
                it, and leaving it unset keeps the stored value.
        """
        set_clauses = ["#status = :status", "updated_at = :now"]
        remove_clauses = []
        values: dict[str, Any] = {
            ":status": status.value,
            ":now": _iso(datetime.now(timezone.utc)),
        }
        if customer_id:
            set_clauses.append("customer_id = :customer_id")
            values[":customer_id"] = customer_id
        if price_id:
            set_clauses.append("price_id = :price_id")
            values[":price_id"] = price_id
        if current_period_end:
            set_clauses.append("current_period_end = :period_end")
            values[":period_end"] = _iso(current_period_end)
        if grace_period_ends_at is None:
            remove_clauses.append("grace_period_ends_at")
        elif grace_period_ends_at is not _UNSET:
            set_clauses.append("grace_period_ends_at = :grace")
            values[":grace"] = _iso(grace_period_ends_at)

        update_expression = "SET " + ", ".join(set_clauses)
        if remove_clauses:
            update_expression += " REMOVE " + ", ".join(remove_clauses)

        attrs = self.db.update_item(
            table=self.SUBSCRIPTIONS_TABLE,
            key={"organization_id": organization_id, "subscription_id": subscription_id},
            update_expression=update_expression,
            expression_attribute_values=values,
            expression_attribute_names={"#status": "status"},
        )
        if attrs is None:
            raise RuntimeError(f"Subscription upsert returned no attributes for {subscription_id}")

        record = self._item_to_subscription(attrs)
        logger.info(
            "Upserted subscription %s for organization %s (status=%s)",
            subscription_id,
            organization_id,
            record.status.value,
        )
        return record

    # =========================================================================
    # Item conversion
    # =========================================================================

    @staticmethod
    def _item_to_donation(item: dict[str, Any]) -> DonationRecord:
        return DonationRecord(
            organization_id=item["organization_id"],
            donation_key=item["donation_key"],
            provider_payment_intent_id=item.get("provider_payment_intent_id"),
            provider_checkout_session_id=item.get("provider_checkout_session_id"),
            amount_cents=int(item["amount_cents"]),
            currency=item["currency"],
            donor_name=item.get("donor_name"),
            donor_email=item.get("donor_email"),
            purpose=item.get("purpose"),
            target_entity_id=item.get("target_entity_id"),
            status=DonationStatus(item["status"]),
            metadata={k: str(v) for k, v in (item.get("metadata") or {}).items()},
            counted_in_stats=bool(item.get("counted_in_stats", False)),
            created_at=datetime.fromisoformat(item["created_at"]),
            updated_at=datetime.fromisoformat(item["updated_at"]),
        )

    @staticmethod
    def _item_to_subscription(item: dict[str, Any]) -> SubscriptionRecord:
        try:
            status = SubscriptionStatus(item.get("status"))
        except ValueError:
            logger.warning(
                "Subscription %s has unreadable status %r; treating as incomplete",
                item["subscription_id"],
                item.get("status"),
            )
            status = SubscriptionStatus.INCOMPLETE
        return SubscriptionRecord(
            organization_id=item["organization_id"],
            subscription_id=item["subscription_id"],
            customer_id=item.get("customer_id"),
            status=status,
            price_id=item.get("price_id"),
            current_period_end=_parse_dt(item.get("current_period_end")),
            grace_period_ends_at=_parse_dt(item.get("grace_period_ends_at")),
            updated_at=datetime.fromisoformat(item["updated_at"]),
        )
