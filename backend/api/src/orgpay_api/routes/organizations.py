"""Organization admin endpoints.

Provides REST endpoints for:
- Changing the organization's subscription price (idempotent)
- Creating or resuming the organization's Stripe Connect onboarding
- Repairing the stored subscription from Stripe

All require the caller (x-user-sub) to be an admin of the organization.
"""

from fastapi import APIRouter, Depends

from orgpay.models.checkout import SubscriptionUpdateRequest
from orgpay.models.financial import Organization
from orgpay.services.checkout import CheckoutOrchestrator
from orgpay_api.dependencies import get_orchestrator
from orgpay_api.models.common import ERROR_RESPONSES
from orgpay_api.models.organizations import (
    ConnectAccountResponse,
    SubscriptionReconcileResponse,
    SubscriptionUpdateBody,
    SubscriptionUpdateResponse,
)
from orgpay_api.security import require_org_admin

router = APIRouter(tags=["organizations"])


@router.post(
    "/organizations/{organization_id}/subscription",
    summary="Change subscription price",
    description="""
Move the organization's platform subscription to another price.

**Requires an organization admin.**

Retries with the same `idempotencyKey` return the original result without
calling Stripe again.
""",
    response_model=SubscriptionUpdateResponse,
    responses=ERROR_RESPONSES,
)
def update_subscription(
    body: SubscriptionUpdateBody,
    organization: Organization = Depends(require_org_admin),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
) -> SubscriptionUpdateResponse:
    result = orchestrator.start_subscription_update(
        SubscriptionUpdateRequest(
            organization_id=organization.organization_id,
            price_id=body.price_id,
            idempotency_key=body.idempotency_key,
            payment_attempt_id=body.payment_attempt_id,
        )
    )
    return SubscriptionUpdateResponse.from_result(result)


@router.post(
    "/organizations/{organization_id}/connect-account",
    summary="Set up donations",
    description="""
Create the organization's Stripe Connect account if it has none, and return
an onboarding link until Stripe reports the account ready for charges.

**Requires an organization admin.**
""",
    response_model=ConnectAccountResponse,
    responses={code: ERROR_RESPONSES[code] for code in (401, 403, 404, 502, 503)},
)
def ensure_connect_account(
    organization: Organization = Depends(require_org_admin),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
) -> ConnectAccountResponse:
    result = orchestrator.ensure_connected_account(organization.organization_id)
    return ConnectAccountResponse.from_result(result)


@router.post(
    "/organizations/{organization_id}/reconcile-subscription",
    summary="Reconcile subscription",
    description="""
Re-read the organization's subscription from Stripe and repair the stored
status, customer and period end. When no subscription is stored, it is
recovered from the organization's latest subscription checkout.

**Requires an organization admin.**
""",
    response_model=SubscriptionReconcileResponse,
    responses=ERROR_RESPONSES,
)
def reconcile_subscription(
    organization: Organization = Depends(require_org_admin),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
) -> SubscriptionReconcileResponse:
    result = orchestrator.reconcile_subscription(organization.organization_id)
    return SubscriptionReconcileResponse.from_result(result)
