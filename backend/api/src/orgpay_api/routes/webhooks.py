"""Stripe webhook endpoints.

Provides endpoints for:
- Platform events (subscriptions, invoices): /webhooks/stripe
- Connect events from organizations' accounts (donations): /webhooks/stripe-connect

These endpoints do NOT require JWT authentication; each verifies the
Stripe-Signature header with its own signing secret before anything else.

Response contract with Stripe:
- 400: bad signature, nothing recorded
- 200: processed, duplicate, skipped or rejected (no retry)
- 500: processing failed or event misrouted (Stripe retries)
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.status import HTTP_500_INTERNAL_SERVER_ERROR

from orgpay.models.enums import WebhookSource
from orgpay.services.stripe_service import StripeService
from orgpay.services.webhook_handler import (
    MisroutedEventError,
    WebhookReconciler,
)
from orgpay.utils.logging import get_logger
from orgpay_api.dependencies import get_reconciler, get_stripe_service
from orgpay_api.models.common import ERROR_RESPONSES
from orgpay_api.models.webhooks import WebhookErrorResponse, WebhookResponse

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])

_WEBHOOK_RESPONSES = {
    400: ERROR_RESPONSES[400],
    500: {"model": WebhookErrorResponse, "description": "Processing failed; Stripe retries"},
}


async def _receive_webhook(
    request: Request,
    source: WebhookSource,
    stripe_service: StripeService,
    reconciler: WebhookReconciler,
) -> WebhookResponse | JSONResponse:
    signature = request.headers.get("Stripe-Signature") or ""
    payload = await request.body()

    # Raises InvalidWebhookSignatureError (400) before the ledger is touched
    event = stripe_service.verify_webhook_signature(payload, signature, source)

    try:
        result = await run_in_threadpool(reconciler.handle_event, event, source)
    except MisroutedEventError as e:
        return JSONResponse(
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            content=WebhookErrorResponse(
                message=str(e),
                recovery="Send Connect events to the /webhooks/stripe-connect endpoint",
            ).model_dump(),
        )
    except Exception:
        logger.exception("Webhook %s (%s) processing failed", event.get("id"), event.get("type"))
        return JSONResponse(
            status_code=HTTP_500_INTERNAL_SERVER_ERROR,
            content=WebhookErrorResponse(
                message="Webhook processing failed",
                recovery="Stripe will retry the delivery",
            ).model_dump(),
        )

    return WebhookResponse(
        received=True,
        event_id=result.event_id,
        event_type=result.event_type,
        processing_result=result.processing_result.value,
        message=result.message,
    )


@router.post(
    "/webhooks/stripe",
    summary="Stripe platform webhook",
    description="""
Receive events for the platform account: subscription lifecycle and invoices.

**Idempotent**: a redelivered event that was already processed returns 200
with `duplicate`.
""",
    response_model=WebhookResponse,
    responses=_WEBHOOK_RESPONSES,
)
async def handle_stripe_webhook(
    request: Request,
    stripe_service: StripeService = Depends(get_stripe_service),
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> WebhookResponse | JSONResponse:
    return await _receive_webhook(request, WebhookSource.PLATFORM, stripe_service, reconciler)


@router.post(
    "/webhooks/stripe-connect",
    summary="Stripe Connect webhook",
    description="""
Receive events from organizations' connected accounts: donation checkout
sessions and payment intents.

Events whose connected account does not belong to the organization they
reference are logged as security events and acknowledged with `rejected`.
""",
    response_model=WebhookResponse,
    responses=_WEBHOOK_RESPONSES,
)
async def handle_stripe_connect_webhook(
    request: Request,
    stripe_service: StripeService = Depends(get_stripe_service),
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> WebhookResponse | JSONResponse:
    return await _receive_webhook(request, WebhookSource.CONNECT, stripe_service, reconciler)
