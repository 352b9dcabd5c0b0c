"""Stripe gateway client wrapper.

Uses the v8+ StripeClient pattern. The client is constructed explicitly and
injected into the orchestrator and the reconciler; `from_ssm` builds one from
the API key and webhook secrets in SSM Parameter Store.

Every call that creates a gateway resource takes the caller's idempotency
key. Donations are direct charges on the organization's connected account.
"""

import json
from typing import Any, Optional

import stripe
from stripe import StripeClient

from ..config import PaymentSettings
from ..models.enums import WebhookSource
from ..models.errors import (
    GatewayError,
    GatewayUnavailableError,
    InvalidWebhookSignatureError,
    get_user_friendly_stripe_message,
)
from ..models.stripe_events import SubscriptionObject
from ..utils.logging import get_logger
from .ssm_service import SSMService, SSMServiceError, get_ssm_service

logger = get_logger(__name__)

# Request errors the gateway refused outright; retrying the same call cannot succeed.
_REJECTED_ERRORS = (stripe.CardError, stripe.InvalidRequestError, stripe.PermissionError)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a key from a StripeObject (or plain dict).

    Item access avoids collisions with dict methods such as `items`.
    """
    if obj is None:
        return default
    try:
        value = obj[name]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def _plain_metadata(obj: Any) -> dict[str, str]:
    """Copy a metadata StripeObject (or plain dict) into a str-to-str dict.

    StripeObject is not a Mapping in current SDK releases; `to_dict()` is the
    supported way to get its contents.
    """
    if obj is None:
        return {}
    values = obj.to_dict() if hasattr(obj, "to_dict") else obj
    return {str(k): str(v) for k, v in values.items()}


def _gateway_error(action: str, error: stripe.StripeError) -> GatewayError:
    error_code = getattr(error, "code", None)
    rejected = isinstance(error, _REJECTED_ERRORS)
    logger.error(
        "Stripe %s failed: %s (code: %s, rejected: %s)",
        action,
        str(error),
        error_code,
        rejected,
    )
    return GatewayError(
        get_user_friendly_stripe_message(error_code),
        stripe_error_code=error_code,
        rejected=rejected,
        details={"action": action, "stripe_error_code": error_code or "unknown"},
    )


class StripeService:
    """Payment gateway operations used by checkout and webhook reconciliation.

    Usage:
        stripe_svc = StripeService.from_ssm(PaymentSettings.from_env())
        session = stripe_svc.create_checkout_session(
            attempt_id="pa_123",
            idempotency_key="k1",
            amount_cents=5000,
            currency="usd",
            connected_account_id="acct_123",
            application_fee_cents=150,
            description="Donation to Example Org",
            success_url="https://example.org/success",
            cancel_url="https://example.org/cancel",
            metadata={"organization_id": "org_1"},
        )
    """

    def __init__(
        self,
        client: StripeClient,
        *,
        webhook_secret: Optional[str] = None,
        connect_webhook_secret: Optional[str] = None,
    ) -> None:
        """Initialize with an already configured client.

        Args:
            client: Stripe client (timeouts and network retries configured)
            webhook_secret: Signing secret of the platform webhook endpoint
            connect_webhook_secret: Signing secret of the Connect webhook endpoint
        """
        self._client = client
        self._webhook_secrets = {
            WebhookSource.PLATFORM: webhook_secret,
            WebhookSource.CONNECT: connect_webhook_secret,
        }

    @classmethod
    def from_ssm(
        cls,
        settings: PaymentSettings,
        ssm: Optional[SSMService] = None,
    ) -> "StripeService":
        """Build a service from secrets in SSM Parameter Store.

        Raises:
            GatewayUnavailableError: The API key cannot be retrieved.
        """
        ssm = ssm or get_ssm_service()
        path = f"{settings.ssm_prefix}/stripe"
        try:
            secrets = ssm.get_parameters_by_path(path)
        except SSMServiceError as e:
            raise GatewayUnavailableError(
                f"Failed to initialize Stripe client: {e}"
            ) from e
        secret_key = secrets.get("secret_key")
        if not secret_key:
            raise GatewayUnavailableError(
                f"Failed to initialize Stripe client: no secret_key under {path}"
            )

        client = StripeClient(
            secret_key,
            http_client=stripe.RequestsClient(timeout=settings.stripe_timeout_seconds),
            max_network_retries=settings.stripe_max_network_retries,
        )
        logger.info("Stripe client initialized for environment: %s", settings.environment)

        for name in ("webhook_secret", "connect_webhook_secret"):
            if name not in secrets:
                logger.warning("Stripe %s not found under %s", name, path)
        return cls(
            client,
            webhook_secret=secrets.get("webhook_secret"),
            connect_webhook_secret=secrets.get("connect_webhook_secret"),
        )

    # =========================================================================
    # Resource creation
    # =========================================================================

    def create_checkout_session(
        self,
        *,
        attempt_id: str,
        idempotency_key: str,
        amount_cents: int,
        currency: str,
        connected_account_id: str,
        application_fee_cents: int,
        description: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
    ) -> dict[str, Optional[str]]:
        """Create a hosted Checkout session for a donation.

        Returns:
            Dict with session_id, checkout_url and payment_intent_id (may be None)

        Raises:
            GatewayError: If session creation fails.
        """
        session_metadata = {**metadata, "payment_attempt_id": attempt_id}
        try:
            logger.info(
                "Creating Stripe checkout session for attempt %s, amount %d %s",
                attempt_id,
                amount_cents,
                currency,
            )
            session = self._client.checkout.sessions.create(
                params={
                    "mode": "payment",
                    "line_items": [
                        {
                            "price_data": {
                                "currency": currency,
                                "unit_amount": amount_cents,
                                "product_data": {"name": description},
                            },
                            "quantity": 1,
                        }
                    ],
                    "payment_intent_data": {
                        "application_fee_amount": application_fee_cents,
                        "metadata": session_metadata,
                    },
                    "success_url": success_url,
                    "cancel_url": cancel_url,
                    "metadata": session_metadata,
                },
                options={
                    "idempotency_key": idempotency_key,
                    "stripe_account": connected_account_id,
                },
            )
        except stripe.StripeError as e:
            raise _gateway_error("create_checkout_session", e) from e

        logger.info("Checkout session created: %s for attempt %s", session.id, attempt_id)
        payment_intent = getattr(session, "payment_intent", None)
        return {
            "session_id": session.id,
            "checkout_url": session.url,
            "payment_intent_id": payment_intent if isinstance(payment_intent, str) else None,
        }

    def create_payment_intent(
        self,
        *,
        attempt_id: str,
        idempotency_key: str,
        amount_cents: int,
        currency: str,
        connected_account_id: str,
        application_fee_cents: int,
        description: str,
        metadata: dict[str, str],
    ) -> dict[str, str]:
        """Create a PaymentIntent for an embedded payment form.

        Returns:
            Dict with payment_intent_id and client_secret

        Raises:
            GatewayError: If creation fails.
        """
        try:
            logger.info(
                "Creating Stripe payment intent for attempt %s, amount %d %s",
                attempt_id,
                amount_cents,
                currency,
            )
            intent = self._client.payment_intents.create(
                params={
                    "amount": amount_cents,
                    "currency": currency,
                    "application_fee_amount": application_fee_cents,
                    "automatic_payment_methods": {"enabled": True},
                    "description": description,
                    "metadata": {**metadata, "payment_attempt_id": attempt_id},
                },
                options={
                    "idempotency_key": idempotency_key,
                    "stripe_account": connected_account_id,
                },
            )
        except stripe.StripeError as e:
            raise _gateway_error("create_payment_intent", e) from e

        logger.info("Payment intent created: %s for attempt %s", intent.id, attempt_id)
        return {"payment_intent_id": intent.id, "client_secret": intent.client_secret}

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionObject:
        """Fetch a platform subscription as a typed object.

        Raises:
            GatewayError: If the lookup fails.
        """
        try:
            subscription = self._client.subscriptions.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise _gateway_error("retrieve_subscription", e) from e
        return self._to_subscription_object(subscription)

    def retrieve_price(self, price_id: str) -> dict[str, Any]:
        """Fetch a price's amount and currency.

        Raises:
            GatewayError: If the lookup fails.
        """
        try:
            price = self._client.prices.retrieve(price_id)
        except stripe.StripeError as e:
            raise _gateway_error("retrieve_price", e) from e
        return {
            "price_id": price.id,
            "unit_amount": price.unit_amount,
            "currency": price.currency,
        }

    def retrieve_checkout_session(self, session_id: str) -> dict[str, Optional[str]]:
        """Fetch a platform Checkout session's subscription and customer IDs.

        Raises:
            GatewayError: If the lookup fails.
        """
        try:
            session = self._client.checkout.sessions.retrieve(session_id)
        except stripe.StripeError as e:
            raise _gateway_error("retrieve_checkout_session", e) from e

        def expandable_id(value: Any) -> Optional[str]:
            if isinstance(value, str):
                return value
            return _field(value, "id")

        return {
            "session_id": session.id,
            "mode": _field(session, "mode"),
            "subscription_id": expandable_id(_field(session, "subscription")),
            "customer_id": expandable_id(_field(session, "customer")),
        }

    def update_subscription_price(
        self,
        *,
        subscription_id: str,
        item_id: str,
        price_id: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> SubscriptionObject:
        """Switch a subscription item to a new price.

        Raises:
            GatewayError: If the update fails.
        """
        try:
            logger.info(
                "Updating subscription %s item %s to price %s",
                subscription_id,
                item_id,
                price_id,
            )
            subscription = self._client.subscriptions.update(
                subscription_id,
                params={
                    "items": [{"id": item_id, "price": price_id, "quantity": 1}],
                    "metadata": metadata,
                    "proration_behavior": "create_prorations",
                },
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            raise _gateway_error("update_subscription", e) from e
        return self._to_subscription_object(subscription)

    @staticmethod
    def _to_subscription_object(subscription: Any) -> SubscriptionObject:
        item_data = []
        period_end = _field(subscription, "current_period_end")
        items = _field(subscription, "items")
        for item in _field(items, "data", []):
            price = _field(item, "price")
            item_data.append({"id": _field(item, "id"), "price": {"id": _field(price, "id")}})
            # Newer API versions report the billing period per item.
            period_end = period_end or _field(item, "current_period_end")
        customer = _field(subscription, "customer")
        return SubscriptionObject.model_validate(
            {
                "id": _field(subscription, "id"),
                "status": _field(subscription, "status"),
                "customer": customer if isinstance(customer, str) else _field(customer, "id"),
                "cancel_at_period_end": bool(_field(subscription, "cancel_at_period_end", False)),
                "current_period_end": period_end,
                "items": {"data": item_data},
                "metadata": _plain_metadata(_field(subscription, "metadata")),
            }
        )

    # =========================================================================
    # Connected accounts
    # =========================================================================

    def create_connected_account(
        self, *, organization_id: str, idempotency_key: str
    ) -> str:
        """Create an Express connected account for an organization.

        Returns:
            The new account ID (acct_xxx)

        Raises:
            GatewayError: If creation fails.
        """
        try:
            account = self._client.accounts.create(
                params={
                    "type": "express",
                    "metadata": {"organization_id": organization_id},
                },
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as e:
            raise _gateway_error("create_connected_account", e) from e
        logger.info("Connected account %s created for organization %s", account.id, organization_id)
        return account.id

    def create_account_link(
        self, *, connected_account_id: str, refresh_url: str, return_url: str
    ) -> str:
        """Create a single-use onboarding link.

        Links are short-lived and carry no idempotency key; each call must
        return a fresh URL.
        """
        try:
            link = self._client.account_links.create(
                params={
                    "account": connected_account_id,
                    "refresh_url": refresh_url,
                    "return_url": return_url,
                    "type": "account_onboarding",
                }
            )
        except stripe.StripeError as e:
            raise _gateway_error("create_account_link", e) from e
        return link.url

    def get_account_readiness(self, connected_account_id: str) -> dict[str, bool]:
        """Check whether a connected account can accept charges.

        Returns:
            Dict with charges_enabled, details_submitted and ready

        Raises:
            GatewayUnavailableError: The lookup itself failed (fail closed).
        """
        try:
            account = self._client.accounts.retrieve(connected_account_id)
        except stripe.StripeError as e:
            logger.error(
                "Stripe account lookup failed for %s: %s",
                connected_account_id,
                str(e),
            )
            raise GatewayUnavailableError(
                details={"connected_account_id": connected_account_id}
            ) from e
        charges_enabled = bool(getattr(account, "charges_enabled", False))
        details_submitted = bool(getattr(account, "details_submitted", False))
        return {
            "charges_enabled": charges_enabled,
            "details_submitted": details_submitted,
            "ready": charges_enabled and details_submitted,
        }

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str,
        source: WebhookSource = WebhookSource.PLATFORM,
    ) -> dict[str, Any]:
        """Verify a webhook signature and decode the event payload.

        Args:
            payload: Raw request body bytes.
            signature: Stripe-Signature header value.
            source: Endpoint that received the delivery (selects the secret).

        Returns:
            Decoded event dictionary.

        Raises:
            InvalidWebhookSignatureError: Signature, secret or payload invalid.
        """
        secret = self._webhook_secrets.get(source)
        if not secret:
            logger.error("No webhook secret configured for %s endpoint", source.value)
            raise InvalidWebhookSignatureError(
                "Webhook secret not configured", details={"source": source.value}
            )
        if not signature:
            raise InvalidWebhookSignatureError("Missing Stripe-Signature header")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
            event: dict[str, Any] = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            logger.warning("Invalid webhook signature: %s", str(e))
            raise InvalidWebhookSignatureError() from e
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning("Undecodable webhook payload: %s", str(e))
            raise InvalidWebhookSignatureError("Invalid webhook payload") from e

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise InvalidWebhookSignatureError("Invalid webhook payload")
        logger.info("Webhook signature verified for event: %s", event["id"])
        return event
