"""Idempotent checkout orchestration.

Per request: validate, fingerprint, ensure the attempt, claim it, and only
the claim holder calls the gateway, exactly once, with the attempt's
idempotency key as the gateway's own idempotency token. Callers that lose
the claim replay the winner's resource or, after a bounded wait, get a
TransientConflictError telling them to retry with the same key.
"""

import uuid
from typing import Optional

from ..config import PaymentSettings
from ..models.checkout import (
    ConnectAccountResult,
    DonationRequest,
    StartPaymentResult,
    SubscriptionReconcileResult,
    SubscriptionUpdateRequest,
    SubscriptionUpdateResult,
)
from ..models.enums import AttemptStatus, CheckoutMode, FlowType, SubscriptionStatus
from ..models.errors import (
    ErrorCode,
    GatewayError,
    PaymentError,
    PaymentValidationError,
    TransientConflictError,
)
from ..models.financial import Organization
from ..models.payment_attempt import AttemptRequest, PaymentAttempt
from ..utils.logging import get_logger, log_payment_operation, log_security_event, mask_email
from .financial_records import FinancialRecordStore, normalize_subscription_status
from .fingerprint import (
    FingerprintFields,
    calculate_platform_fee,
    hash_fingerprint,
    normalize_currency,
    normalize_idempotency_key,
    validate_amount_cents,
)
from .organizations import OrganizationDirectory
from .payment_attempts import PaymentAttemptStore
from .stripe_service import StripeService

logger = get_logger(__name__)

# Attempt metadata keys holding donor details (kept locally, never sent to Stripe)
DONOR_METADATA_KEYS = ("donor_name", "donor_email")


def _generate_idempotency_key() -> str:
    return f"srv-{uuid.uuid4().hex}"


class CheckoutOrchestrator:
    """Starts donations and subscription changes at most once per logical request."""

    def __init__(
        self,
        *,
        attempts: PaymentAttemptStore,
        organizations: OrganizationDirectory,
        records: FinancialRecordStore,
        gateway: StripeService,
        settings: PaymentSettings,
    ) -> None:
        self.attempts = attempts
        self.organizations = organizations
        self.records = records
        self.gateway = gateway
        self.settings = settings

    # =========================================================================
    # Donations
    # =========================================================================

    def start_donation(self, request: DonationRequest) -> StartPaymentResult:
        """Create (or replay) the gateway resource for a donation.

        Raises:
            PaymentValidationError: Bad amount/currency/key, or the organization
                cannot accept donations.
            OrganizationNotFoundError: Unknown organization.
            GatewayUnavailableError: Account readiness could not be verified.
            IdempotencyConflictError: Key reused for a different request.
            TransientConflictError: Another request holds the claim.
            GatewayError: Resource creation failed; retry with the same key.
        """
        amount_cents = validate_amount_cents(request.amount_cents)
        currency = normalize_currency(request.currency)
        idempotency_key = normalize_idempotency_key(request.idempotency_key)

        organization = self.organizations.resolve(
            request.organization_id, request.organization_slug
        )
        connected_account_id = self._require_ready_account(organization)

        flow_type = request.mode.flow_type
        platform_fee_cents = calculate_platform_fee(amount_cents)
        fingerprint = hash_fingerprint(
            FingerprintFields(
                organization_id=organization.organization_id,
                amount_cents=amount_cents,
                currency=currency,
                flow_type=flow_type,
                donor_email=request.donor_email,
                donor_name=request.donor_name,
                target_entity_id=request.target_entity_id,
                purpose=request.purpose,
                platform_fee_cents=platform_fee_cents,
            )
        )
        metadata = {
            key: value.strip()
            for key, value in {
                "donor_name": request.donor_name,
                "donor_email": request.donor_email,
                "purpose": request.purpose,
                "target_entity_id": request.target_entity_id,
            }.items()
            if value and value.strip()
        }
        attempt_request = AttemptRequest(
            flow_type=flow_type,
            amount_cents=amount_cents,
            currency=currency,
            organization_id=organization.organization_id,
            connected_account_id=connected_account_id,
            platform_fee_cents=platform_fee_cents,
            request_fingerprint=fingerprint,
            metadata=metadata,
        )
        if not idempotency_key and not request.payment_attempt_id:
            idempotency_key = _generate_idempotency_key()

        attempt, _ = self.attempts.ensure_attempt(
            attempt_request,
            idempotency_key=idempotency_key,
            attempt_id=request.payment_attempt_id,
        )
        gateway_key = attempt.idempotency_key or attempt.attempt_id

        attempt, claimed = self._claim_or_replay(
            attempt,
            gateway_key,
            amount_cents=amount_cents,
            currency=currency,
            connected_account_id=connected_account_id,
            fingerprint=fingerprint,
        )
        if not claimed:
            return self._donation_result(attempt, gateway_key, replayed=True)

        gateway_metadata = {
            "organization_id": organization.organization_id,
            "flow_type": flow_type.value,
        }
        if request.purpose:
            gateway_metadata["purpose"] = request.purpose.strip()
        if request.target_entity_id:
            gateway_metadata["target_entity_id"] = request.target_entity_id.strip()
        description = f"Donation to {organization.name or organization.slug}"

        try:
            if flow_type == FlowType.DONATION_CHECKOUT:
                session = self.gateway.create_checkout_session(
                    attempt_id=attempt.attempt_id,
                    idempotency_key=gateway_key,
                    amount_cents=amount_cents,
                    currency=currency,
                    connected_account_id=connected_account_id,
                    application_fee_cents=platform_fee_cents,
                    description=description,
                    success_url=self.settings.checkout_success_url,
                    cancel_url=self.settings.checkout_cancel_url,
                    metadata=gateway_metadata,
                )
                attempt = self.attempts.update_attempt(
                    attempt.attempt_id,
                    status=AttemptStatus.PROCESSING,
                    provider_checkout_session_id=session["session_id"],
                    checkout_url=session["checkout_url"],
                    provider_payment_intent_id=session["payment_intent_id"],
                )
            else:
                intent = self.gateway.create_payment_intent(
                    attempt_id=attempt.attempt_id,
                    idempotency_key=gateway_key,
                    amount_cents=amount_cents,
                    currency=currency,
                    connected_account_id=connected_account_id,
                    application_fee_cents=platform_fee_cents,
                    description=description,
                    metadata=gateway_metadata,
                )
                attempt = self.attempts.update_attempt(
                    attempt.attempt_id,
                    status=AttemptStatus.PROCESSING,
                    provider_payment_intent_id=intent["payment_intent_id"],
                    client_secret=intent["client_secret"],
                )
        except Exception as e:
            self._record_gateway_failure(attempt, e)
            raise

        log_payment_operation(
            logger,
            "start_donation",
            attempt_id=attempt.attempt_id,
            organization_id=organization.organization_id,
            idempotency_key=gateway_key,
            amount_cents=amount_cents,
            status=attempt.status.value,
            mode=request.mode.value,
            donor_email=mask_email(request.donor_email),
        )
        return self._donation_result(attempt, gateway_key, replayed=False)

    def _require_ready_account(self, organization: Organization) -> str:
        if not organization.connected_account_id:
            raise PaymentValidationError(code=ErrorCode.CONNECT_ACCOUNT_MISSING)
        readiness = self.gateway.get_account_readiness(organization.connected_account_id)
        if not readiness["ready"]:
            raise PaymentValidationError(
                code=ErrorCode.CONNECT_ACCOUNT_NOT_READY,
                details={
                    "charges_enabled": str(readiness["charges_enabled"]).lower(),
                    "details_submitted": str(readiness["details_submitted"]).lower(),
                },
            )
        return organization.connected_account_id

    @staticmethod
    def _donation_result(
        attempt: PaymentAttempt, idempotency_key: str, *, replayed: bool
    ) -> StartPaymentResult:
        if attempt.flow_type == FlowType.DONATION_CHECKOUT:
            return StartPaymentResult(
                mode=CheckoutMode.CHECKOUT,
                session_id=attempt.provider_checkout_session_id,
                url=attempt.checkout_url,
                idempotency_key=idempotency_key,
                payment_attempt_id=attempt.attempt_id,
                replayed=replayed,
            )
        return StartPaymentResult(
            mode=CheckoutMode.PAYMENT_INTENT,
            payment_intent_id=attempt.provider_payment_intent_id,
            client_secret=attempt.client_secret,
            idempotency_key=idempotency_key,
            payment_attempt_id=attempt.attempt_id,
            replayed=replayed,
        )

    # =========================================================================
    # Claim protocol
    # =========================================================================

    def _claim_or_replay(
        self,
        attempt: PaymentAttempt,
        idempotency_key: str,
        *,
        amount_cents: int,
        currency: str,
        connected_account_id: Optional[str],
        fingerprint: str,
    ) -> tuple[PaymentAttempt, bool]:
        """Claim the attempt, or return the resource another caller created.

        Returns:
            Tuple of (attempt, claimed). When not claimed, the attempt carries
            its gateway resource.

        Raises:
            TransientConflictError: No resource appeared within the wait budget.
        """
        if attempt.has_provider_resource:
            return attempt, False

        result = self.attempts.claim_attempt(
            attempt,
            amount_cents=amount_cents,
            currency=currency,
            connected_account_id=connected_account_id,
            fingerprint=fingerprint,
        )
        if result.claimed:
            return result.attempt, True
        if result.attempt.has_provider_resource:
            return result.attempt, False

        existing = self.attempts.wait_for_existing_resource(
            result.attempt.attempt_id, self.settings.claim_wait_timeout_seconds
        )
        if existing is not None:
            return existing, False

        log_payment_operation(
            logger,
            "claim_conflict",
            attempt_id=result.attempt.attempt_id,
            idempotency_key=idempotency_key,
            status=result.attempt.status.value,
        )
        raise TransientConflictError(idempotency_key, result.attempt.attempt_id)

    def _record_gateway_failure(self, attempt: PaymentAttempt, error: Exception) -> None:
        """Record the error and leave the attempt claimed so a retry can converge."""
        if isinstance(error, PaymentError):
            code = getattr(error, "stripe_error_code", None) or error.code.value
            last_error = f"{code}: {error.message}"
        else:
            last_error = f"{type(error).__name__}: {error}"
        self.attempts.update_attempt(attempt.attempt_id, last_error=last_error)

    # =========================================================================
    # Subscription updates
    # =========================================================================

    def start_subscription_update(
        self, request: SubscriptionUpdateRequest
    ) -> SubscriptionUpdateResult:
        """Move the organization's subscription to a new price, at most once per key.

        Raises:
            PaymentError: SUBSCRIPTION_NOT_FOUND when there is nothing to update.
            PaymentValidationError: The price cannot be used.
            IdempotencyConflictError / TransientConflictError / GatewayError:
                As for start_donation.
        """
        idempotency_key = normalize_idempotency_key(request.idempotency_key)
        organization = self.organizations.resolve(request.organization_id)
        current = self.records.get_current_subscription(organization.organization_id)
        if current is None or current.status in (
            SubscriptionStatus.CANCELED,
            SubscriptionStatus.INCOMPLETE_EXPIRED,
        ):
            raise PaymentError(code=ErrorCode.SUBSCRIPTION_NOT_FOUND)

        price = self.gateway.retrieve_price(request.price_id)
        if not price["unit_amount"]:
            raise PaymentValidationError(
                "Price has no fixed amount", details={"price_id": request.price_id}
            )
        amount_cents = validate_amount_cents(int(price["unit_amount"]))
        currency = normalize_currency(price["currency"])
        fingerprint = hash_fingerprint(
            FingerprintFields(
                organization_id=organization.organization_id,
                amount_cents=amount_cents,
                currency=currency,
                flow_type=FlowType.SUBSCRIPTION_UPDATE,
                target_entity_id=current.subscription_id,
                purpose=request.price_id,
            )
        )
        attempt_request = AttemptRequest(
            flow_type=FlowType.SUBSCRIPTION_UPDATE,
            amount_cents=amount_cents,
            currency=currency,
            organization_id=organization.organization_id,
            request_fingerprint=fingerprint,
            metadata={"price_id": request.price_id},
        )
        if not idempotency_key and not request.payment_attempt_id:
            idempotency_key = _generate_idempotency_key()

        attempt, _ = self.attempts.ensure_attempt(
            attempt_request,
            idempotency_key=idempotency_key,
            attempt_id=request.payment_attempt_id,
        )
        gateway_key = attempt.idempotency_key or attempt.attempt_id

        attempt, claimed = self._claim_or_replay(
            attempt,
            gateway_key,
            amount_cents=amount_cents,
            currency=currency,
            connected_account_id=None,
            fingerprint=fingerprint,
        )
        if not claimed:
            return SubscriptionUpdateResult(
                subscription_id=attempt.provider_subscription_id or current.subscription_id,
                price_id=request.price_id,
                status=current.status.value,
                idempotency_key=gateway_key,
                payment_attempt_id=attempt.attempt_id,
                replayed=True,
            )

        try:
            subscription = self.gateway.retrieve_subscription(current.subscription_id)
            if not subscription.items or not subscription.items.data:
                raise PaymentValidationError(
                    "Unable to locate base subscription item",
                    details={"subscription_id": current.subscription_id},
                )
            updated = self.gateway.update_subscription_price(
                subscription_id=current.subscription_id,
                item_id=subscription.items.data[0].id,
                price_id=request.price_id,
                idempotency_key=gateway_key,
                metadata={
                    "organization_id": organization.organization_id,
                    "payment_attempt_id": attempt.attempt_id,
                },
            )
        except Exception as e:
            self._record_gateway_failure(attempt, e)
            raise

        status = normalize_subscription_status(
            updated.status, cancel_at_period_end=updated.cancel_at_period_end
        )
        self.records.upsert_subscription(
            organization.organization_id,
            updated.id,
            status=status,
            customer_id=updated.customer_id,
            price_id=updated.price_id or request.price_id,
            current_period_end=updated.period_end,
        )
        attempt = self.attempts.update_attempt(
            attempt.attempt_id,
            status=AttemptStatus.SUCCEEDED,
            provider_subscription_id=updated.id,
        )
        log_payment_operation(
            logger,
            "update_subscription",
            attempt_id=attempt.attempt_id,
            organization_id=organization.organization_id,
            idempotency_key=gateway_key,
            amount_cents=amount_cents,
            status=attempt.status.value,
        )
        return SubscriptionUpdateResult(
            subscription_id=updated.id,
            price_id=request.price_id,
            status=status.value,
            idempotency_key=gateway_key,
            payment_attempt_id=attempt.attempt_id,
        )

    # =========================================================================
    # Subscription reconciliation
    # =========================================================================

    def reconcile_subscription(self, organization_id: str) -> SubscriptionReconcileResult:
        """Repair the organization's subscription row from the gateway.

        A stored row with a customer, a period end and a settled status is
        returned as is. Otherwise the stored subscription is re-read; when
        there is no row, or the gateway no longer knows its ID, the
        subscription is recovered from the organization's latest platform
        checkout attempt.

        Raises:
            PaymentError: SUBSCRIPTION_NOT_FOUND when nothing leads to a
                subscription for this organization.
            PaymentValidationError: The latest checkout carries no subscription.
            GatewayError: A gateway lookup on the recovery path failed.
        """
        organization = self.organizations.resolve(organization_id)
        org_id = organization.organization_id
        current = self.records.get_current_subscription(org_id)

        if (
            current is not None
            and current.customer_id
            and current.current_period_end is not None
            and current.status != SubscriptionStatus.INCOMPLETE
        ):
            return SubscriptionReconcileResult(
                organization_id=org_id,
                subscription_id=current.subscription_id,
                customer_id=current.customer_id,
                status=current.status.value,
                price_id=current.price_id,
                current_period_end=current.current_period_end,
                reconciled=False,
                source="stored",
            )

        subscription = None
        customer_id = current.customer_id if current else None
        source = "subscription"
        if current is not None:
            try:
                subscription = self.gateway.retrieve_subscription(current.subscription_id)
            except GatewayError as e:
                logger.warning(
                    "Stored subscription %s for organization %s could not be read (%s); "
                    "falling back to checkout attempts",
                    current.subscription_id,
                    org_id,
                    e.message,
                )

        if subscription is None:
            source = "checkout"
            attempt = self.attempts.find_latest_subscription_attempt(org_id)
            if attempt is None:
                raise PaymentError(
                    "No subscription or completed checkout found for this organization",
                    code=ErrorCode.SUBSCRIPTION_NOT_FOUND,
                    details={"organization_id": org_id},
                )
            subscription_id = attempt.provider_subscription_id
            if not subscription_id and attempt.provider_checkout_session_id:
                session = self.gateway.retrieve_checkout_session(
                    attempt.provider_checkout_session_id
                )
                subscription_id = session["subscription_id"]
                customer_id = session["customer_id"] or customer_id
            if not subscription_id:
                raise PaymentValidationError(
                    "Checkout session has no subscription",
                    details={"payment_attempt_id": attempt.attempt_id},
                )
            subscription = self.gateway.retrieve_subscription(subscription_id)

        owner = subscription.organization_id
        if owner and owner != org_id:
            log_security_event(
                logger,
                "subscription_owner_mismatch",
                organization_id=org_id,
                subscription_id=subscription.id,
                claimed_organization_id=owner,
            )
            raise PaymentError(
                code=ErrorCode.SUBSCRIPTION_NOT_FOUND, details={"organization_id": org_id}
            )

        status = normalize_subscription_status(
            subscription.status, cancel_at_period_end=subscription.cancel_at_period_end
        )
        record = self.records.upsert_subscription(
            org_id,
            subscription.id,
            status=status,
            customer_id=subscription.customer_id or customer_id,
            price_id=subscription.price_id,
            current_period_end=subscription.period_end,
        )
        logger.info(
            "Reconciled subscription %s for organization %s from %s (status=%s)",
            record.subscription_id,
            org_id,
            source,
            record.status.value,
        )
        return SubscriptionReconcileResult(
            organization_id=org_id,
            subscription_id=record.subscription_id,
            customer_id=record.customer_id,
            status=record.status.value,
            price_id=record.price_id,
            current_period_end=record.current_period_end,
            reconciled=True,
            source=source,
        )

    # =========================================================================
    # Connected accounts
    # =========================================================================

    def ensure_connected_account(self, organization_id: str) -> ConnectAccountResult:
        """Create the organization's connected account once and report readiness.

        The creation call uses a per-organization idempotency key, so racing
        admins converge on one gateway account; the conditional write keeps
        whichever account was recorded first.
        """
        organization = self.organizations.resolve(organization_id)
        account_id = organization.connected_account_id
        if not account_id:
            created = self.gateway.create_connected_account(
                organization_id=organization.organization_id,
                idempotency_key=f"connect-account-{organization.organization_id}",
            )
            organization = self.organizations.set_connected_account(
                organization.organization_id, created
            )
            account_id = organization.connected_account_id or created
            if account_id != created:
                logger.warning(
                    "Organization %s already had connected account %s; ignoring %s",
                    organization.organization_id,
                    account_id,
                    created,
                )

        readiness = self.gateway.get_account_readiness(account_id)
        onboarding_url = None
        if not readiness["ready"]:
            onboarding_url = self.gateway.create_account_link(
                connected_account_id=account_id,
                refresh_url=self.settings.connect_refresh_url,
                return_url=self.settings.connect_return_url,
            )
        return ConnectAccountResult(
            organization_id=organization.organization_id,
            connected_account_id=account_id,
            charges_enabled=readiness["charges_enabled"],
            details_submitted=readiness["details_submitted"],
            ready=readiness["ready"],
            onboarding_url=onboarding_url,
        )
