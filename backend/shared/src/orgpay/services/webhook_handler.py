"""Webhook reconciler: applies verified Stripe events to local state.

Each event runs as one synchronous pipeline:

    register in the ledger -> resolve and verify the tenant -> apply effects
    -> mark processed

Effects are upserts keyed on provider resource IDs, so a delivery that
failed midway is simply re-run in full by Stripe's redelivery. Tenant
mismatches are logged as security events, applied nowhere, and acknowledged.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from ..models.enums import (
    AttemptStatus,
    DonationStatus,
    ProcessingResult,
    SubscriptionStatus,
    WebhookSource,
)
from ..models.errors import SecurityMismatchError
from ..models.financial import Organization
from ..models.payment_attempt import PaymentAttempt
from ..models.stripe_events import (
    CheckoutSessionCompletedEvent,
    InvoiceEvent,
    PaymentIntentEvent,
    StripeEvent,
    SubscriptionEvent,
    event_snapshot,
    parse_stripe_event,
)
from ..utils.logging import get_logger, log_security_event, log_webhook_event
from .event_ledger import EventLedger
from .financial_records import (
    FinancialRecordStore,
    grace_period_end,
    normalize_subscription_status,
)
from .organizations import OrganizationDirectory
from .payment_attempts import PaymentAttemptStore
from .stripe_service import StripeService

logger = get_logger(__name__)

_ACTIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
_UNPROVISIONED_STATUSES = (SubscriptionStatus.INCOMPLETE, SubscriptionStatus.INCOMPLETE_EXPIRED)


class MisroutedEventError(Exception):
    """A Connect event reached the platform endpoint.

    Surfaced as a 5xx so Stripe keeps redelivering while the endpoint
    configuration is fixed.
    """


class WebhookResult(BaseModel):
    """Outcome of one webhook delivery."""

    model_config = ConfigDict(strict=True)

    event_id: str
    event_type: str
    processing_result: ProcessingResult
    organization_id: Optional[str] = None
    message: Optional[str] = None


class WebhookReconciler:
    """Applies Stripe events to attempts, donations and subscriptions."""

    def __init__(
        self,
        *,
        ledger: EventLedger,
        attempts: PaymentAttemptStore,
        organizations: OrganizationDirectory,
        records: FinancialRecordStore,
        gateway: StripeService,
    ) -> None:
        self.ledger = ledger
        self.attempts = attempts
        self.organizations = organizations
        self.records = records
        self.gateway = gateway

    def handle_event(
        self, payload: dict[str, Any], source: WebhookSource
    ) -> WebhookResult:
        """Process one verified event payload.

        Args:
            payload: Decoded, signature-verified event
            source: Endpoint that received it

        Returns:
            WebhookResult (success, duplicate, skipped or rejected)

        Raises:
            MisroutedEventError: Connect event on the platform endpoint.
            Exception: Any failure applying effects; the event stays
                unprocessed so the next delivery retries it.
        """
        event = parse_stripe_event(payload)

        if source == WebhookSource.PLATFORM and event.account:
            logger.error(
                "Connect event %s (%s) received on platform endpoint",
                event.id,
                event.type,
            )
            raise MisroutedEventError(
                f"Event {event.id} belongs to connected account {event.account}"
            )
        if source == WebhookSource.CONNECT and not event.account:
            log_webhook_event(logger, event.type, event.id, result="skipped")
            return WebhookResult(
                event_id=event.id,
                event_type=event.type,
                processing_result=ProcessingResult.SKIPPED,
                message="Event has no connected account",
            )

        registration = self.ledger.register_event(event.id, event.type, event_snapshot(event))
        if registration.already_processed:
            log_webhook_event(logger, event.type, event.id, result="duplicate")
            return WebhookResult(
                event_id=event.id,
                event_type=event.type,
                processing_result=ProcessingResult.DUPLICATE,
                message="Event already processed",
            )

        try:
            result = self._dispatch(event)
        except SecurityMismatchError as e:
            details = e.details or {}
            log_security_event(
                logger,
                details.get("reason", "tenant_mismatch"),
                event_id=event.id,
                organization_id=details.get("organization_id"),
                expected_account=details.get("expected"),
                actual_account=details.get("actual"),
                event_type=event.type,
            )
            self.ledger.mark_processed(event.id, ProcessingResult.REJECTED)
            return WebhookResult(
                event_id=event.id,
                event_type=event.type,
                processing_result=ProcessingResult.REJECTED,
                message="Event rejected",
            )
        except Exception as e:
            log_webhook_event(logger, event.type, event.id, result="error", error=str(e))
            self.ledger.record_failure(event.id, f"{type(e).__name__}: {e}")
            raise

        self.ledger.mark_processed(event.id, result.processing_result)
        log_webhook_event(
            logger,
            event.type,
            event.id,
            organization_id=result.organization_id,
            result=result.processing_result.value,
        )
        return result

    def _dispatch(self, event: StripeEvent) -> WebhookResult:
        if isinstance(event, CheckoutSessionCompletedEvent):
            return self._handle_checkout_completed(event)
        if isinstance(event, PaymentIntentEvent):
            return self._handle_payment_intent(event)
        if isinstance(event, SubscriptionEvent):
            return self._handle_subscription(event)
        if isinstance(event, InvoiceEvent):
            return self._handle_invoice(event)
        return self._skipped(event, f"Event type '{event.type}' not handled")

    @staticmethod
    def _skipped(
        event: StripeEvent, message: str, organization_id: Optional[str] = None
    ) -> WebhookResult:
        logger.info("Skipping event %s (%s): %s", event.id, event.type, message)
        return WebhookResult(
            event_id=event.id,
            event_type=event.type,
            processing_result=ProcessingResult.SKIPPED,
            organization_id=organization_id,
            message=message,
        )

    @staticmethod
    def _success(event: StripeEvent, organization_id: str) -> WebhookResult:
        return WebhookResult(
            event_id=event.id,
            event_type=event.type,
            processing_result=ProcessingResult.SUCCESS,
            organization_id=organization_id,
        )

    # =========================================================================
    # Tenant resolution
    # =========================================================================

    def _find_attempt(
        self,
        attempt_id: Optional[str],
        *,
        payment_intent_id: Optional[str] = None,
        checkout_session_id: Optional[str] = None,
    ) -> PaymentAttempt | None:
        attempt = None
        if attempt_id:
            attempt = self.attempts.get_attempt(attempt_id)
        if attempt is None and payment_intent_id:
            attempt = self.attempts.find_by_payment_intent(payment_intent_id)
        if attempt is None and checkout_session_id:
            attempt = self.attempts.find_by_checkout_session(checkout_session_id)
        return attempt

    def _resolve_connect_tenant(
        self,
        event: StripeEvent,
        organization_id: Optional[str],
        attempt: PaymentAttempt | None,
    ) -> Organization | None:
        """Resolve the organization for a Connect event and verify its account.

        Raises:
            SecurityMismatchError: The event's connected account or the attempt
                does not belong to the organization.
        """
        organization_id = organization_id or (attempt.organization_id if attempt else None)
        if not organization_id:
            return None
        organization = self.organizations.get_by_id(organization_id)
        if organization is None:
            return None

        if event.account != organization.connected_account_id:
            raise SecurityMismatchError(
                details={
                    "reason": "connected_account_mismatch",
                    "organization_id": organization_id,
                    "expected": organization.connected_account_id or "none",
                    "actual": event.account or "none",
                }
            )
        if attempt is not None and (
            attempt.organization_id != organization_id
            or attempt.connected_account_id != event.account
        ):
            raise SecurityMismatchError(
                details={
                    "reason": "payment_attempt_tenant_mismatch",
                    "organization_id": organization_id,
                    "expected": attempt.connected_account_id or "none",
                    "actual": event.account or "none",
                }
            )
        return organization

    def _check_subscription_owner(
        self,
        organization_id: str,
        customer_id: Optional[str],
        subscription_id: Optional[str],
    ) -> None:
        if not self.records.org_owns_subscription(organization_id, customer_id, subscription_id):
            current = self.records.get_current_subscription(organization_id)
            raise SecurityMismatchError(
                details={
                    "reason": "subscription_owner_mismatch",
                    "organization_id": organization_id,
                    "expected": (current.customer_id if current else None) or "none",
                    "actual": customer_id or "none",
                }
            )

    # =========================================================================
    # Donations
    # =========================================================================

    def _handle_checkout_completed(self, event: CheckoutSessionCompletedEvent) -> WebhookResult:
        session = event.data.object
        if session.mode == "subscription" or session.subscription_id:
            return self._handle_subscription_checkout(event)
        if not event.account:
            return self._skipped(event, "Payment checkout outside a connected account")

        attempt = self._find_attempt(
            session.payment_attempt_id,
            payment_intent_id=session.payment_intent_id,
            checkout_session_id=session.id,
        )
        organization = self._resolve_connect_tenant(event, session.organization_id, attempt)
        if organization is None:
            return self._skipped(event, "No organization for checkout session")

        paid = session.payment_status in ("paid", "no_payment_required")
        donation_status = DonationStatus.SUCCEEDED if paid else DonationStatus.PROCESSING
        donor_name, donor_email = self._donor_from_attempt(attempt)
        if session.customer_details:
            donor_name = donor_name or session.customer_details.name
            donor_email = donor_email or session.customer_details.email

        self._apply_donation(
            organization,
            session.payment_intent_id or session.id,
            status=donation_status,
            amount_cents=session.amount_total,
            currency=session.currency,
            attempt=attempt,
            provider_payment_intent_id=session.payment_intent_id,
            provider_checkout_session_id=session.id,
            donor_name=donor_name,
            donor_email=donor_email,
            metadata=session.metadata,
        )

        if attempt is not None:
            self.attempts.update_attempt(
                attempt.attempt_id,
                status=AttemptStatus.SUCCEEDED if paid else AttemptStatus.PROCESSING,
                provider_checkout_session_id=session.id,
                provider_payment_intent_id=session.payment_intent_id,
            )
        return self._success(event, organization.organization_id)

    def _handle_payment_intent(self, event: PaymentIntentEvent) -> WebhookResult:
        intent = event.data.object
        if not event.account:
            return self._skipped(event, "Payment intent outside a connected account")

        attempt = self._find_attempt(
            intent.payment_attempt_id, payment_intent_id=intent.id
        )
        organization = self._resolve_connect_tenant(event, intent.organization_id, attempt)
        if organization is None:
            return self._skipped(event, "No organization for payment intent")

        succeeded = event.type == "payment_intent.succeeded"
        donor_name, donor_email = self._donor_from_attempt(attempt)

        # Checkout sessions completed before their intent was known are keyed
        # on the session; keep updating that row.
        donation_key = intent.id
        checkout_session_id = attempt.provider_checkout_session_id if attempt else None
        if checkout_session_id and self.records.get_donation(
            organization.organization_id, checkout_session_id
        ):
            donation_key = checkout_session_id

        self._apply_donation(
            organization,
            donation_key,
            status=DonationStatus.SUCCEEDED if succeeded else DonationStatus.FAILED,
            amount_cents=(intent.amount_received if succeeded else None) or intent.amount,
            currency=intent.currency,
            attempt=attempt,
            provider_payment_intent_id=intent.id,
            provider_checkout_session_id=checkout_session_id,
            donor_name=donor_name,
            donor_email=donor_email or intent.receipt_email,
            metadata=intent.metadata,
        )

        if attempt is not None:
            error = None
            if not succeeded:
                failure = intent.last_payment_error
                error = (failure.message if failure else None) or "payment_failed"
            self.attempts.update_attempt(
                attempt.attempt_id,
                status=AttemptStatus.SUCCEEDED if succeeded else AttemptStatus.FAILED,
                provider_payment_intent_id=intent.id,
                last_error=error,
            )
        return self._success(event, organization.organization_id)

    @staticmethod
    def _donor_from_attempt(
        attempt: PaymentAttempt | None,
    ) -> tuple[Optional[str], Optional[str]]:
        if attempt is None:
            return None, None
        return attempt.metadata.get("donor_name"), attempt.metadata.get("donor_email")

    def _apply_donation(
        self,
        organization: Organization,
        donation_key: str,
        *,
        status: DonationStatus,
        amount_cents: Optional[int],
        currency: Optional[str],
        attempt: PaymentAttempt | None,
        provider_payment_intent_id: Optional[str],
        provider_checkout_session_id: Optional[str],
        donor_name: Optional[str],
        donor_email: Optional[str],
        metadata: dict[str, str],
    ) -> None:
        if amount_cents is None:
            amount_cents = attempt.amount_cents if attempt else 0
        if not currency:
            currency = attempt.currency if attempt else "usd"
        attempt_metadata = attempt.metadata if attempt else {}

        donation = self.records.upsert_donation(
            organization.organization_id,
            donation_key,
            amount_cents=amount_cents,
            currency=currency.lower(),
            status=status,
            provider_payment_intent_id=provider_payment_intent_id,
            provider_checkout_session_id=provider_checkout_session_id,
            donor_name=donor_name,
            donor_email=donor_email,
            purpose=metadata.get("purpose") or attempt_metadata.get("purpose"),
            target_entity_id=(
                metadata.get("target_entity_id") or attempt_metadata.get("target_entity_id")
            ),
            metadata=metadata,
        )
        if donation.status == DonationStatus.SUCCEEDED and not donation.counted_in_stats:
            self.records.count_donation_in_stats(donation)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def _handle_subscription_checkout(self, event: CheckoutSessionCompletedEvent) -> WebhookResult:
        session = event.data.object
        if event.account:
            return self._skipped(event, "Subscription checkout on a connected account")
        if session.payment_status != "paid":
            return self._skipped(event, "Checkout completed without payment")

        organization_id = session.organization_id
        if not organization_id or self.organizations.get_by_id(organization_id) is None:
            return self._skipped(event, "No organization for subscription checkout")
        subscription_id = session.subscription_id
        if not subscription_id:
            return self._skipped(
                event, "Subscription checkout without subscription", organization_id
            )

        self._check_subscription_owner(organization_id, session.customer_id, subscription_id)

        subscription = self.gateway.retrieve_subscription(subscription_id)
        status = normalize_subscription_status(
            subscription.status, cancel_at_period_end=subscription.cancel_at_period_end
        )
        update: dict[str, Any] = {}
        if status in _ACTIVE_STATUSES:
            update["grace_period_ends_at"] = None
        self.records.upsert_subscription(
            organization_id,
            subscription_id,
            status=status,
            customer_id=session.customer_id or subscription.customer_id,
            price_id=subscription.price_id,
            current_period_end=subscription.period_end,
            **update,
        )

        attempt = self._find_attempt(session.payment_attempt_id, checkout_session_id=session.id)
        if attempt is not None and attempt.organization_id == organization_id:
            self.attempts.update_attempt(
                attempt.attempt_id,
                status=AttemptStatus.SUCCEEDED,
                provider_checkout_session_id=session.id,
                provider_subscription_id=subscription_id,
            )
        return self._success(event, organization_id)

    def _handle_subscription(self, event: SubscriptionEvent) -> WebhookResult:
        subscription = event.data.object
        if event.account:
            return self._skipped(event, "Subscription event on a connected account")

        deleted = event.type == "customer.subscription.deleted"
        status = normalize_subscription_status(
            subscription.status,
            cancel_at_period_end=subscription.cancel_at_period_end,
            deleted=deleted,
        )
        update: dict[str, Any] = {}
        if deleted:
            update["grace_period_ends_at"] = grace_period_end()
        elif status in _ACTIVE_STATUSES:
            update["grace_period_ends_at"] = None

        existing = self.records.find_subscription(subscription.id)
        organization_id = subscription.organization_id
        if organization_id and status in _UNPROVISIONED_STATUSES and existing is None:
            return self._skipped(event, "Subscription not provisioned yet", organization_id)

        if organization_id:
            if existing is not None and existing.organization_id != organization_id:
                raise SecurityMismatchError(
                    details={
                        "reason": "subscription_organization_mismatch",
                        "organization_id": organization_id,
                        "expected": existing.organization_id,
                        "actual": organization_id,
                    }
                )
            if self.organizations.get_by_id(organization_id) is None:
                return self._skipped(event, "Unknown organization", organization_id)
            self._check_subscription_owner(
                organization_id, subscription.customer_id, subscription.id
            )
        elif existing is not None:
            organization_id = existing.organization_id
        else:
            return self._skipped(event, "No organization for subscription")

        self.records.upsert_subscription(
            organization_id,
            subscription.id,
            status=status,
            customer_id=subscription.customer_id,
            price_id=subscription.price_id,
            current_period_end=subscription.period_end,
            **update,
        )

        if subscription.payment_attempt_id:
            attempt = self.attempts.get_attempt(subscription.payment_attempt_id)
            if attempt is not None and attempt.organization_id == organization_id:
                self.attempts.update_attempt(
                    attempt.attempt_id, provider_subscription_id=subscription.id
                )
        return self._success(event, organization_id)

    def _handle_invoice(self, event: InvoiceEvent) -> WebhookResult:
        invoice = event.data.object
        if event.account:
            return self._skipped(event, "Invoice on a connected account")
        subscription_id = invoice.subscription_id
        if not subscription_id:
            return self._skipped(event, "Invoice without subscription")

        existing = self.records.find_subscription(subscription_id)
        if existing is None:
            return self._skipped(event, "Unknown subscription")
        if (
            invoice.customer_id
            and existing.customer_id
            and invoice.customer_id != existing.customer_id
        ):
            raise SecurityMismatchError(
                details={
                    "reason": "invoice_customer_mismatch",
                    "organization_id": existing.organization_id,
                    "expected": existing.customer_id,
                    "actual": invoice.customer_id,
                }
            )

        if event.type == "invoice.paid":
            subscription = self.gateway.retrieve_subscription(subscription_id)
            status = normalize_subscription_status(
                subscription.status, cancel_at_period_end=subscription.cancel_at_period_end
            )
            update: dict[str, Any] = {}
            if status in _ACTIVE_STATUSES:
                update["grace_period_ends_at"] = None
            self.records.upsert_subscription(
                existing.organization_id,
                subscription_id,
                status=status,
                customer_id=invoice.customer_id,
                price_id=subscription.price_id,
                current_period_end=subscription.period_end,
                **update,
            )
        else:
            self.records.upsert_subscription(
                existing.organization_id,
                subscription_id,
                status=SubscriptionStatus.PAST_DUE,
            )
        return self._success(event, existing.organization_id)
