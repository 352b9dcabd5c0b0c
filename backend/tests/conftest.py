"""Pytest configuration and fixtures for the payments backend tests.

This module provides reusable fixtures for testing:
- DynamoDB mocking with moto (all tables from orgpay.services.tables)
- Seeded organizations with connected accounts and admins
- FakeGateway: an in-memory stand-in for StripeService that honors
  idempotency keys the way Stripe does
- Wired orchestrator and reconciler instances
"""

import os
from datetime import datetime, timezone
from typing import Any, Callable, Generator, Optional
from unittest.mock import MagicMock

import boto3
import pytest
from fastapi.testclient import TestClient
from moto import mock_aws

# === Environment Setup ===

os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DYNAMODB_TABLE_PREFIX", "test-orgpay")
if not os.environ.get("AWS_PROFILE") and not os.environ.get("AWS_ACCESS_KEY_ID"):
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")

from orgpay.config import PaymentSettings  # noqa: E402
from orgpay.models.errors import GatewayError  # noqa: E402
from orgpay.models.stripe_events import (  # noqa: E402
    SubscriptionItem,
    SubscriptionItems,
    SubscriptionObject,
    SubscriptionPrice,
)
from orgpay.services.checkout import CheckoutOrchestrator  # noqa: E402
from orgpay.services.dynamodb import DynamoDBService  # noqa: E402
from orgpay.services.event_ledger import EventLedger  # noqa: E402
from orgpay.services.financial_records import FinancialRecordStore  # noqa: E402
from orgpay.services.organizations import OrganizationDirectory  # noqa: E402
from orgpay.services.payment_attempts import PaymentAttemptStore  # noqa: E402
from orgpay.services.stripe_service import StripeService  # noqa: E402
from orgpay.services.tables import ORGANIZATIONS_TABLE, create_tables  # noqa: E402
from orgpay.services.webhook_handler import WebhookReconciler  # noqa: E402

# === Test Configuration ===

AWS_REGION = "us-east-1"
TEST_TABLE_PREFIX = "test-orgpay"

TEST_ORG_ID = "org-river"
TEST_ORG_SLUG = "river-cleanup"
TEST_ACCOUNT_ID = "acct_test_river"
TEST_CUSTOMER_ID = "cus_river"
TEST_ADMIN_SUB = "user-admin-river"

OTHER_ORG_ID = "org-forest"
OTHER_ORG_SLUG = "forest-friends"
OTHER_ACCOUNT_ID = "acct_test_forest"

UNREADY_ORG_ID = "org-meadow"
UNREADY_ACCOUNT_ID = "acct_test_meadow"

TEST_PRICE_ID = "price_pro"
TEST_SUBSCRIPTION_ID = "sub_river_1"


# === Fake gateway ===


class FakeGateway:
    """In-memory StripeService double.

    Resource creation is keyed by idempotency key, so repeating a call with
    the same key returns the same resource, as Stripe does. `before_create`
    runs once inside the next create call (to simulate a concurrent request
    arriving while the gateway call is in flight); `fail_next` makes the next
    create call raise.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.sessions: dict[str, dict[str, Optional[str]]] = {}
        self.intents: dict[str, dict[str, str]] = {}
        self.accounts: dict[str, dict[str, bool]] = {
            TEST_ACCOUNT_ID: {"charges_enabled": True, "details_submitted": True},
            OTHER_ACCOUNT_ID: {"charges_enabled": True, "details_submitted": True},
            UNREADY_ACCOUNT_ID: {"charges_enabled": False, "details_submitted": True},
        }
        self.prices: dict[str, dict[str, Any]] = {
            TEST_PRICE_ID: {"price_id": TEST_PRICE_ID, "unit_amount": 4900, "currency": "usd"},
            "price_basic": {"price_id": "price_basic", "unit_amount": 1900, "currency": "usd"},
        }
        self.subscriptions: dict[str, SubscriptionObject] = {}
        self.checkout_sessions: dict[str, dict[str, Optional[str]]] = {}
        self.before_create: Optional[Callable[[], None]] = None
        self.fail_next: Optional[Exception] = None
        self.readiness_error: Optional[Exception] = None

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def _enter_create(self, method: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((method, kwargs))
        if self.before_create is not None:
            hook, self.before_create = self.before_create, None
            hook()
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error

    def create_checkout_session(self, **kwargs: Any) -> dict[str, Optional[str]]:
        self._enter_create("create_checkout_session", kwargs)
        key = kwargs["idempotency_key"]
        if key not in self.sessions:
            n = len(self.sessions) + 1
            self.sessions[key] = {
                "session_id": f"cs_test_{n}",
                "checkout_url": f"https://checkout.stripe.com/c/pay/cs_test_{n}",
                "payment_intent_id": None,
            }
        return dict(self.sessions[key])

    def create_payment_intent(self, **kwargs: Any) -> dict[str, str]:
        self._enter_create("create_payment_intent", kwargs)
        key = kwargs["idempotency_key"]
        if key not in self.intents:
            n = len(self.intents) + 1
            self.intents[key] = {
                "payment_intent_id": f"pi_test_{n}",
                "client_secret": f"pi_test_{n}_secret_abc",
            }
        return dict(self.intents[key])

    def get_account_readiness(self, connected_account_id: str) -> dict[str, bool]:
        self.calls.append(("get_account_readiness", {"account": connected_account_id}))
        if self.readiness_error is not None:
            raise self.readiness_error
        state = self.accounts.get(
            connected_account_id, {"charges_enabled": False, "details_submitted": False}
        )
        return {**state, "ready": state["charges_enabled"] and state["details_submitted"]}

    def retrieve_price(self, price_id: str) -> dict[str, Any]:
        self.calls.append(("retrieve_price", {"price_id": price_id}))
        return dict(self.prices[price_id])

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionObject:
        self.calls.append(("retrieve_subscription", {"subscription_id": subscription_id}))
        if subscription_id not in self.subscriptions:
            raise GatewayError(
                "No such subscription", stripe_error_code="resource_missing", rejected=True
            )
        return self.subscriptions[subscription_id]

    def retrieve_checkout_session(self, session_id: str) -> dict[str, Optional[str]]:
        self.calls.append(("retrieve_checkout_session", {"session_id": session_id}))
        return dict(self.checkout_sessions[session_id])

    def update_subscription_price(self, **kwargs: Any) -> SubscriptionObject:
        self._enter_create("update_subscription_price", kwargs)
        current = self.subscriptions[kwargs["subscription_id"]]
        updated = current.model_copy(
            update={
                "items": SubscriptionItems(
                    data=[
                        SubscriptionItem(
                            id=kwargs["item_id"],
                            price=SubscriptionPrice(id=kwargs["price_id"]),
                        )
                    ]
                ),
                "metadata": dict(kwargs["metadata"]),
            }
        )
        self.subscriptions[updated.id] = updated
        return updated

    def create_connected_account(self, *, organization_id: str, idempotency_key: str) -> str:
        self._enter_create(
            "create_connected_account",
            {"organization_id": organization_id, "idempotency_key": idempotency_key},
        )
        account_id = f"acct_new_{organization_id}"
        self.accounts.setdefault(
            account_id, {"charges_enabled": False, "details_submitted": False}
        )
        return account_id

    def create_account_link(
        self, *, connected_account_id: str, refresh_url: str, return_url: str
    ) -> str:
        self.calls.append(("create_account_link", {"account": connected_account_id}))
        return f"https://connect.stripe.com/setup/e/{connected_account_id}/onboard"


def make_subscription(
    subscription_id: str = TEST_SUBSCRIPTION_ID,
    *,
    status: str = "active",
    customer: str = TEST_CUSTOMER_ID,
    price_id: str = "price_basic",
    cancel_at_period_end: bool = False,
    metadata: Optional[dict[str, str]] = None,
) -> SubscriptionObject:
    return SubscriptionObject(
        id=subscription_id,
        status=status,
        customer=customer,
        cancel_at_period_end=cancel_at_period_end,
        current_period_end=int(datetime(2026, 12, 1, tzinfo=timezone.utc).timestamp()),
        items=SubscriptionItems(
            data=[SubscriptionItem(id="si_base", price=SubscriptionPrice(id=price_id))]
        ),
        metadata=metadata or {},
    )


# === AWS Fixtures ===


@pytest.fixture(autouse=True)
def reset_service_singletons() -> Generator[None, None, None]:
    """Reset cached services so each test builds clients inside its mock_aws context."""
    from orgpay_api.dependencies import reset_services

    reset_services()
    yield
    reset_services()


@pytest.fixture
def aws_credentials() -> None:
    """Mocked AWS credentials for moto."""
    if not os.environ.get("AWS_PROFILE"):
        os.environ["AWS_ACCESS_KEY_ID"] = "testing"
        os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
        os.environ["AWS_SECURITY_TOKEN"] = "testing"
        os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = AWS_REGION


@pytest.fixture
def dynamodb(aws_credentials: None) -> Generator[DynamoDBService, None, None]:
    """DynamoDBService over freshly created moto tables."""
    with mock_aws():
        client = boto3.client("dynamodb", region_name=AWS_REGION)
        create_tables(client, TEST_TABLE_PREFIX)
        yield DynamoDBService(environment="test", name_prefix=TEST_TABLE_PREFIX)


@pytest.fixture
def organizations_in_db(dynamodb: DynamoDBService) -> dict[str, dict[str, Any]]:
    """Seed a ready organization, a second tenant and one with unfinished onboarding."""
    items = {
        TEST_ORG_ID: {
            "organization_id": TEST_ORG_ID,
            "slug": TEST_ORG_SLUG,
            "name": "River Cleanup",
            "connected_account_id": TEST_ACCOUNT_ID,
            "admin_user_ids": [TEST_ADMIN_SUB],
            "stripe_customer_id": TEST_CUSTOMER_ID,
        },
        OTHER_ORG_ID: {
            "organization_id": OTHER_ORG_ID,
            "slug": OTHER_ORG_SLUG,
            "name": "Forest Friends",
            "connected_account_id": OTHER_ACCOUNT_ID,
            "admin_user_ids": ["user-admin-forest"],
        },
        UNREADY_ORG_ID: {
            "organization_id": UNREADY_ORG_ID,
            "slug": "meadow",
            "connected_account_id": UNREADY_ACCOUNT_ID,
            "admin_user_ids": [],
        },
        "org-new": {
            "organization_id": "org-new",
            "slug": "new-org",
            "admin_user_ids": [TEST_ADMIN_SUB],
        },
    }
    for item in items.values():
        dynamodb.put_item(ORGANIZATIONS_TABLE, item)
    return items


# === Service Fixtures ===


@pytest.fixture
def settings() -> PaymentSettings:
    return PaymentSettings(
        environment="test",
        table_prefix=TEST_TABLE_PREFIX,
        claim_wait_timeout_seconds=0.2,
        claim_lease_seconds=30.0,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def attempt_store(dynamodb: DynamoDBService, settings: PaymentSettings) -> PaymentAttemptStore:
    return PaymentAttemptStore(
        dynamodb,
        claim_lease_seconds=settings.claim_lease_seconds,
        wait_timeout_seconds=settings.claim_wait_timeout_seconds,
        initial_poll_interval=0.01,
        max_poll_interval=0.05,
    )


@pytest.fixture
def organization_directory(dynamodb: DynamoDBService) -> OrganizationDirectory:
    return OrganizationDirectory(dynamodb)


@pytest.fixture
def records(dynamodb: DynamoDBService) -> FinancialRecordStore:
    return FinancialRecordStore(dynamodb)


@pytest.fixture
def ledger(dynamodb: DynamoDBService) -> EventLedger:
    return EventLedger(dynamodb)


@pytest.fixture
def orchestrator(
    attempt_store: PaymentAttemptStore,
    organization_directory: OrganizationDirectory,
    records: FinancialRecordStore,
    gateway: FakeGateway,
    settings: PaymentSettings,
    organizations_in_db: dict[str, dict[str, Any]],
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        attempts=attempt_store,
        organizations=organization_directory,
        records=records,
        gateway=gateway,  # type: ignore[arg-type]
        settings=settings,
    )


@pytest.fixture
def reconciler(
    ledger: EventLedger,
    attempt_store: PaymentAttemptStore,
    organization_directory: OrganizationDirectory,
    records: FinancialRecordStore,
    gateway: FakeGateway,
    organizations_in_db: dict[str, dict[str, Any]],
) -> WebhookReconciler:
    return WebhookReconciler(
        ledger=ledger,
        attempts=attempt_store,
        organizations=organization_directory,
        records=records,
        gateway=gateway,  # type: ignore[arg-type]
    )


# === API Fixtures ===

TEST_WEBHOOK_SECRET = "whsec_test_platform"
TEST_CONNECT_WEBHOOK_SECRET = "whsec_test_connect"


@pytest.fixture
def stripe_service() -> StripeService:
    """StripeService with a mocked client and known webhook secrets."""
    return StripeService(
        MagicMock(),
        webhook_secret=TEST_WEBHOOK_SECRET,
        connect_webhook_secret=TEST_CONNECT_WEBHOOK_SECRET,
    )


@pytest.fixture
def api_client(
    orchestrator: CheckoutOrchestrator,
    reconciler: WebhookReconciler,
    attempt_store: PaymentAttemptStore,
    organization_directory: OrganizationDirectory,
    stripe_service: StripeService,
) -> Generator[TestClient, None, None]:
    """TestClient with services wired to moto DynamoDB and FakeGateway."""
    from orgpay_api import dependencies
    from orgpay_api.main import app

    app.dependency_overrides.update(
        {
            dependencies.get_orchestrator: lambda: orchestrator,
            dependencies.get_reconciler: lambda: reconciler,
            dependencies.get_attempt_store: lambda: attempt_store,
            dependencies.get_organization_directory: lambda: organization_directory,
            dependencies.get_stripe_service: lambda: stripe_service,
        }
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def admin_headers(user_sub: str = TEST_ADMIN_SUB) -> dict[str, str]:
    return {"x-user-sub": user_sub}
