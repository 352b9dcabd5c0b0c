"""Donation endpoints.

Provides REST endpoints for:
- Starting a donation (public): hosted Checkout or an embedded PaymentIntent
- Reading a payment attempt's status (public, no donor details)

Both are idempotent from the client's point of view: retrying a start with
the same idempotencyKey returns the same Stripe resource.
"""

from fastapi import APIRouter, Depends

from orgpay.models.errors import PaymentAttemptNotFoundError
from orgpay.services.checkout import CheckoutOrchestrator
from orgpay.services.payment_attempts import PaymentAttemptStore
from orgpay_api.dependencies import get_attempt_store, get_orchestrator
from orgpay_api.models.common import ERROR_RESPONSES
from orgpay_api.models.payments import (
    PaymentAttemptStatusResponse,
    StartDonationRequest,
    StartDonationResponse,
)

router = APIRouter(tags=["payments"])


@router.post(
    "/payments/donations",
    summary="Start a donation",
    description="""
Start a donation to an organization through its connected Stripe account.

**Public endpoint** - donors do not need an account.

`mode=checkout` returns a hosted Checkout `url`; `mode=payment_intent`
returns a `clientSecret` for Stripe Elements.

**Notes:**
- Send an `idempotencyKey` and reuse it for retries: the same key always
  returns the same Stripe resource, and a different payload with the same
  key is rejected with 409
- 409 with `ERR_IDEM_002` means the first request is still in flight;
  retry shortly with the same key
- The platform fee is computed server-side
""",
    response_description="Stripe resource for the donation",
    response_model=StartDonationResponse,
    responses={
        code: ERROR_RESPONSES[code] for code in (400, 404, 409, 502, 503)
    },
)
def start_donation(
    body: StartDonationRequest,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
) -> StartDonationResponse:
    result = orchestrator.start_donation(body.to_donation_request())
    return StartDonationResponse.from_result(result)


@router.get(
    "/payments/attempts/{attempt_id}",
    summary="Get payment attempt status",
    description="""
Get the status of a payment attempt.

**Public endpoint**. Donor details, client secrets and checkout URLs are
never returned.
""",
    response_model=PaymentAttemptStatusResponse,
    responses={404: ERROR_RESPONSES[404]},
)
def get_payment_attempt(
    attempt_id: str,
    attempts: PaymentAttemptStore = Depends(get_attempt_store),
) -> PaymentAttemptStatusResponse:
    attempt = attempts.get_attempt(attempt_id)
    if attempt is None:
        raise PaymentAttemptNotFoundError(details={"payment_attempt_id": attempt_id})
    return PaymentAttemptStatusResponse.from_attempt(attempt)
