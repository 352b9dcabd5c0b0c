"""FastAPI dependency providers for the payment services.

Services are built lazily and cached with @lru_cache so a warm Lambda
container reuses its boto3 and Stripe clients across requests.

Usage in routes:
    from orgpay_api.dependencies import get_orchestrator

    @router.post("/payments/donations")
    def start_donation(
        orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
    ):
        ...

Service Dependency Graph:
    PaymentSettings (from environment)
    DynamoDBService (singleton via get_dynamodb_service)
        ├── PaymentAttemptStore ──┐
        ├── OrganizationDirectory ├── CheckoutOrchestrator
        ├── FinancialRecordStore ─┤
        │   StripeService (SSM) ──┘
        └── EventLedger ───────────── WebhookReconciler (+ the stores above)

Testing:
    Override these providers with app.dependency_overrides, and call
    reset_services() between tests.
"""

from functools import lru_cache

from orgpay.config import PaymentSettings
from orgpay.services.checkout import CheckoutOrchestrator
from orgpay.services.dynamodb import DynamoDBService, get_dynamodb_service
from orgpay.services.event_ledger import EventLedger
from orgpay.services.financial_records import FinancialRecordStore
from orgpay.services.organizations import OrganizationDirectory
from orgpay.services.payment_attempts import PaymentAttemptStore
from orgpay.services.stripe_service import StripeService
from orgpay.services.webhook_handler import WebhookReconciler


@lru_cache
def get_settings() -> PaymentSettings:
    return PaymentSettings.from_env()


def get_db() -> DynamoDBService:
    settings = get_settings()
    return get_dynamodb_service(settings.environment, settings.table_prefix)


@lru_cache
def get_stripe_service() -> StripeService:
    """Get cached StripeService built from SSM secrets.

    Raises:
        GatewayUnavailableError: The Stripe secret key cannot be read.
    """
    return StripeService.from_ssm(get_settings())


@lru_cache
def get_attempt_store() -> PaymentAttemptStore:
    settings = get_settings()
    return PaymentAttemptStore(
        get_db(),
        claim_lease_seconds=settings.claim_lease_seconds,
        wait_timeout_seconds=settings.claim_wait_timeout_seconds,
    )


@lru_cache
def get_organization_directory() -> OrganizationDirectory:
    return OrganizationDirectory(get_db())


@lru_cache
def get_financial_records() -> FinancialRecordStore:
    return FinancialRecordStore(get_db())


@lru_cache
def get_orchestrator() -> CheckoutOrchestrator:
    """Get cached CheckoutOrchestrator wired to DynamoDB and Stripe."""
    return CheckoutOrchestrator(
        attempts=get_attempt_store(),
        organizations=get_organization_directory(),
        records=get_financial_records(),
        gateway=get_stripe_service(),
        settings=get_settings(),
    )


@lru_cache
def get_reconciler() -> WebhookReconciler:
    """Get cached WebhookReconciler wired to DynamoDB and Stripe."""
    return WebhookReconciler(
        ledger=EventLedger(get_db()),
        attempts=get_attempt_store(),
        organizations=get_organization_directory(),
        records=get_financial_records(),
        gateway=get_stripe_service(),
    )


def reset_services() -> None:
    """Clear all cached service instances, including the DynamoDB singleton.

    Example:
        @pytest.fixture(autouse=True)
        def reset_state():
            yield
            reset_services()
    """
    from orgpay.services.dynamodb import reset_dynamodb_service

    get_settings.cache_clear()
    get_stripe_service.cache_clear()
    get_attempt_store.cache_clear()
    get_organization_directory.cache_clear()
    get_financial_records.cache_clear()
    get_orchestrator.cache_clear()
    get_reconciler.cache_clear()

    reset_dynamodb_service()
