"""Payment services: attempt store, orchestrator, ledger and reconciler."""

from .checkout import CheckoutOrchestrator
from .dynamodb import DynamoDBService, get_dynamodb_service, reset_dynamodb_service
from .event_ledger import EventLedger
from .financial_records import FinancialRecordStore
from .organizations import OrganizationDirectory
from .payment_attempts import PaymentAttemptStore
from .ssm_service import SSMService, SSMServiceError, get_ssm_service
from .stripe_service import StripeService
from .webhook_handler import MisroutedEventError, WebhookReconciler, WebhookResult

__all__ = [
    "CheckoutOrchestrator",
    "DynamoDBService",
    "get_dynamodb_service",
    "reset_dynamodb_service",
    "EventLedger",
    "FinancialRecordStore",
    "OrganizationDirectory",
    "PaymentAttemptStore",
    "SSMService",
    "SSMServiceError",
    "get_ssm_service",
    "StripeService",
    "MisroutedEventError",
    "WebhookReconciler",
    "WebhookResult",
]
