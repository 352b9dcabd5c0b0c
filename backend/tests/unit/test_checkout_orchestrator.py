"""Unit tests for CheckoutOrchestrator.

Uses moto DynamoDB for the stores and FakeGateway (see conftest) in place of
Stripe, so every gateway call is counted.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import pytest

from orgpay.config import PaymentSettings
from orgpay.models.checkout import DonationRequest, SubscriptionUpdateRequest
from orgpay.models.enums import AttemptStatus, CheckoutMode, FlowType, SubscriptionStatus
from orgpay.models.errors import (
    ErrorCode,
    GatewayError,
    GatewayUnavailableError,
    IdempotencyConflictError,
    OrganizationNotFoundError,
    PaymentError,
    PaymentValidationError,
    TransientConflictError,
)
from orgpay.models.payment_attempt import AttemptRequest
from orgpay.services.checkout import CheckoutOrchestrator
from orgpay.services.dynamodb import DynamoDBService
from orgpay.services.financial_records import FinancialRecordStore
from orgpay.services.payment_attempts import PaymentAttemptStore
from orgpay.services.tables import SUBSCRIPTIONS_TABLE

from tests.conftest import (
    OTHER_ORG_ID,
    TEST_ACCOUNT_ID,
    TEST_CUSTOMER_ID,
    TEST_ORG_ID,
    TEST_ORG_SLUG,
    TEST_PRICE_ID,
    TEST_SUBSCRIPTION_ID,
    UNREADY_ORG_ID,
    FakeGateway,
    make_subscription,
)


def _donation(
    amount_cents: int = 5000,
    key: Optional[str] = "k1",
    **overrides,
) -> DonationRequest:
    values = {
        "organization_id": TEST_ORG_ID,
        "amount_cents": amount_cents,
        "currency": "usd",
        "donor_name": "Jane Donor",
        "donor_email": "jane@example.org",
        "idempotency_key": key,
    }
    values.update(overrides)
    return DonationRequest(**values)


class TestStartDonation:
    def test_creates_checkout_session(
        self, orchestrator: CheckoutOrchestrator, gateway: FakeGateway
    ):
        result = orchestrator.start_donation(_donation())

        assert result.mode == CheckoutMode.CHECKOUT
        assert result.url == "https://checkout.stripe.com/c/pay/cs_test_1"
        assert result.session_id == "cs_test_1"
        assert result.idempotency_key == "k1"
        assert result.replayed is False

        _, kwargs = gateway.calls[-1]
        assert kwargs["idempotency_key"] == "k1"
        assert kwargs["connected_account_id"] == TEST_ACCOUNT_ID
        assert kwargs["application_fee_cents"] == 150
        assert "donor_email" not in kwargs["metadata"]

    def test_attempt_moves_to_processing(
        self, orchestrator: CheckoutOrchestrator, attempt_store: PaymentAttemptStore
    ):
        result = orchestrator.start_donation(_donation())

        attempt = attempt_store.get_attempt(result.payment_attempt_id, consistent_read=True)
        assert attempt.status == AttemptStatus.PROCESSING
        assert attempt.provider_checkout_session_id == "cs_test_1"
        assert attempt.metadata["donor_email"] == "jane@example.org"

    def test_resolves_organization_by_slug(self, orchestrator: CheckoutOrchestrator):
        result = orchestrator.start_donation(
            _donation(organization_id=None, organization_slug=TEST_ORG_SLUG)
        )

        assert result.session_id == "cs_test_1"

    def test_same_key_replays_without_gateway_call(
        self, orchestrator: CheckoutOrchestrator, gateway: FakeGateway
    ):
        first = orchestrator.start_donation(_donation())
        second = orchestrator.start_donation(_donation())

        assert second.url == first.url
        assert second.payment_attempt_id == first.payment_attempt_id
        assert second.replayed is True
        assert gateway.count("create_checkout_session") == 1

    def test_same_key_different_amount_conflicts(
        self, orchestrator: CheckoutOrchestrator, gateway: FakeGateway
    ):
        orchestrator.start_donation(_donation())

        with pytest.raises(IdempotencyConflictError):
            orchestrator.start_donation(_donation(amount_cents=7500))
        assert gateway.count("create_checkout_session") == 1

    def test_resume_by_payment_attempt_id(self, orchestrator: CheckoutOrchestrator):
        first = orchestrator.start_donation(_donation(key=None))

        resumed = orchestrator.start_donation(
            _donation(key=None, payment_attempt_id=first.payment_attempt_id)
        )

        assert resumed.url == first.url
        assert resumed.replayed is True

    def test_without_key_each_request_is_new(
        self, orchestrator: CheckoutOrchestrator, gateway: FakeGateway
    ):
        first = orchestrator.start_donation(_donation(key=None))
        second = orchestrator.start_donation(_donation(key=None))

        assert first.payment_attempt_id != second.payment_attempt_id
        assert first.idempotency_key.startswith("srv-")
        assert gateway.count("create_checkout_session") == 2

    def test_concurrent_request_waits_then_reports_conflict(
        self, orchestrator: CheckoutOrchestrator, gateway: FakeGateway
    ):
        errors: list[Exception] = []

        def concurrent_request() -> None:
            try:
                orchestrator.start_donation(_donation())
            except TransientConflictError as e:
                errors.append(e)

        gateway.before_create = concurrent_request

        result = orchestrator.start_donation(_donation())

        assert result.session_id == "cs_test_1"
        assert len(errors) == 1
        assert errors[0].code == ErrorCode.TRANSIENT_CONFLICT
        assert errors[0].attempt_id == result.payment_attempt_id
        assert gateway.count("create_checkout_session") == 1

    def test_concurrent_requests_share_one_session(
        self,
        dynamodb: DynamoDBService,
        orchestrator: CheckoutOrchestrator,
        gateway: FakeGateway,
        settings: PaymentSettings,
        monkeypatch: pytest.MonkeyPatch,
    ):
        # moto conditional writes are not atomic across threads; DynamoDB's are,
        # so store calls are serialized to stand in for it.
        store = PaymentAttemptStore(
            dynamodb,
            initial_poll_interval=0.01,
            max_poll_interval=0.05,
        )
        store_lock = threading.RLock()
        for name in (
            "ensure_attempt",
            "claim_attempt",
            "update_attempt",
            "get_attempt",
            "get_attempt_by_key",
        ):
            method = getattr(store, name)

            def serialized(*args, _method=method, **kwargs):
                with store_lock:
                    return _method(*args, **kwargs)

            monkeypatch.setattr(store, name, serialized)
        monkeypatch.setattr(orchestrator, "attempts", store)
        monkeypatch.setattr(
            orchestrator,
            "settings",
            settings.model_copy(update={"claim_wait_timeout_seconds": 2.0}),
        )

        create_session = gateway.create_checkout_session

        def slow_create_session(**kwargs):
            time.sleep(0.05)
            return create_session(**kwargs)

        monkeypatch.setattr(gateway, "create_checkout_session", slow_create_session)

        callers = 6
        barrier = threading.Barrier(callers)

        def start():
            barrier.wait()
            return orchestrator.start_donation(_donation(key="kc"))

        with ThreadPoolExecutor(max_workers=callers) as pool:
            results = list(pool.map(lambda _: start(), range(callers)))

        assert gateway.count("create_checkout_session") == 1
        assert {(r.session_id, r.payment_attempt_id) for r in results} == {
            ("cs_test_1", results[0].payment_attempt_id)
        }
        assert sum(1 for r in results if not r.replayed) == 1

    def test_gateway_failure_then_retry_converges(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: FakeGateway,
        attempt_store: PaymentAttemptStore,
    ):
        gateway.fail_next = GatewayError("connection reset")

        with pytest.raises(GatewayError):
            orchestrator.start_donation(_donation())

        failed = attempt_store.get_attempt_by_key("k1")
        assert failed.status == AttemptStatus.CLAIMED
        assert "connection reset" in failed.last_error

        result = orchestrator.start_donation(_donation())

        assert result.session_id == "cs_test_1"
        assert result.replayed is False
        assert gateway.count("create_checkout_session") == 2
        assert len(gateway.sessions) == 1
        keys = {
            kwargs["idempotency_key"]
            for name, kwargs in gateway.calls
            if name == "create_checkout_session"
        }
        assert keys == {"k1"}

    def test_payment_intent_mode(self, orchestrator: CheckoutOrchestrator, gateway: FakeGateway):
        result = orchestrator.start_donation(_donation(mode=CheckoutMode.PAYMENT_INTENT))

        assert result.mode == CheckoutMode.PAYMENT_INTENT
        assert result.payment_intent_id == "pi_test_1"
        assert result.client_secret == "pi_test_1_secret_abc"
        assert result.url is None
        assert gateway.count("create_checkout_session") == 0

    def test_mode_is_part_of_the_request(self, orchestrator: CheckoutOrchestrator):
        orchestrator.start_donation(_donation())

        with pytest.raises(IdempotencyConflictError):
            orchestrator.start_donation(_donation(mode=CheckoutMode.PAYMENT_INTENT))

    def test_amount_below_minimum_rejected(
        self, orchestrator: CheckoutOrchestrator, gateway: FakeGateway
    ):
        with pytest.raises(PaymentValidationError):
            orchestrator.start_donation(_donation(amount_cents=99))
        assert gateway.calls == []

    def test_unknown_organization(self, orchestrator: CheckoutOrchestrator):
        with pytest.raises(OrganizationNotFoundError):
            orchestrator.start_donation(_donation(organization_id="org-missing"))

    def test_organization_without_account(self, orchestrator: CheckoutOrchestrator):
        with pytest.raises(PaymentValidationError) as exc_info:
            orchestrator.start_donation(_donation(organization_id="org-new"))

        assert exc_info.value.code == ErrorCode.CONNECT_ACCOUNT_MISSING

    def test_account_not_ready(self, orchestrator: CheckoutOrchestrator, gateway: FakeGateway):
        with pytest.raises(PaymentValidationError) as exc_info:
            orchestrator.start_donation(_donation(organization_id=UNREADY_ORG_ID))

        assert exc_info.value.code == ErrorCode.CONNECT_ACCOUNT_NOT_READY
        assert exc_info.value.details["charges_enabled"] == "false"
        assert gateway.count("create_checkout_session") == 0

    def test_readiness_lookup_failure_fails_closed(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: FakeGateway,
        attempt_store: PaymentAttemptStore,
    ):
        gateway.readiness_error = GatewayUnavailableError()

        with pytest.raises(GatewayUnavailableError):
            orchestrator.start_donation(_donation())

        assert attempt_store.get_attempt_by_key("k1") is None
        assert gateway.count("create_checkout_session") == 0


class TestStartSubscriptionUpdate:
    @pytest.fixture
    def subscribed(self, records: FinancialRecordStore, gateway: FakeGateway) -> None:
        records.upsert_subscription(
            TEST_ORG_ID,
            TEST_SUBSCRIPTION_ID,
            status=SubscriptionStatus.ACTIVE,
            customer_id=TEST_CUSTOMER_ID,
            price_id="price_basic",
        )
        gateway.subscriptions[TEST_SUBSCRIPTION_ID] = make_subscription()

    def _request(self, key: Optional[str] = "sub-k1") -> SubscriptionUpdateRequest:
        return SubscriptionUpdateRequest(
            organization_id=TEST_ORG_ID, price_id=TEST_PRICE_ID, idempotency_key=key
        )

    @pytest.mark.usefixtures("subscribed")
    def test_updates_price(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: FakeGateway,
        records: FinancialRecordStore,
    ):
        result = orchestrator.start_subscription_update(self._request())

        assert result.subscription_id == TEST_SUBSCRIPTION_ID
        assert result.price_id == TEST_PRICE_ID
        assert result.status == "active"
        assert result.replayed is False
        _, kwargs = [c for c in gateway.calls if c[0] == "update_subscription_price"][0]
        assert kwargs["item_id"] == "si_base"
        assert kwargs["idempotency_key"] == "sub-k1"
        stored = records.get_subscription(TEST_ORG_ID, TEST_SUBSCRIPTION_ID)
        assert stored.price_id == TEST_PRICE_ID

    @pytest.mark.usefixtures("subscribed")
    def test_same_key_replays(self, orchestrator: CheckoutOrchestrator, gateway: FakeGateway):
        first = orchestrator.start_subscription_update(self._request())
        second = orchestrator.start_subscription_update(self._request())

        assert second.replayed is True
        assert second.payment_attempt_id == first.payment_attempt_id
        assert gateway.count("update_subscription_price") == 1

    @pytest.mark.usefixtures("subscribed")
    def test_same_key_other_price_conflicts(self, orchestrator: CheckoutOrchestrator):
        orchestrator.start_subscription_update(self._request())

        with pytest.raises(IdempotencyConflictError):
            orchestrator.start_subscription_update(
                SubscriptionUpdateRequest(
                    organization_id=TEST_ORG_ID,
                    price_id="price_basic",
                    idempotency_key="sub-k1",
                )
            )

    @pytest.mark.usefixtures("subscribed")
    def test_unexpected_error_is_recorded_then_retry_converges(
        self,
        orchestrator: CheckoutOrchestrator,
        gateway: FakeGateway,
        attempt_store: PaymentAttemptStore,
    ):
        gateway.fail_next = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            orchestrator.start_subscription_update(self._request())

        failed = attempt_store.get_attempt_by_key("sub-k1")
        assert failed.status == AttemptStatus.CLAIMED
        assert failed.last_error == "RuntimeError: boom"

        result = orchestrator.start_subscription_update(self._request())

        assert result.replayed is False
        assert result.payment_attempt_id == failed.attempt_id
        assert result.price_id == TEST_PRICE_ID
        assert gateway.count("update_subscription_price") == 2

    def test_without_subscription(self, orchestrator: CheckoutOrchestrator):
        with pytest.raises(PaymentError) as exc_info:
            orchestrator.start_subscription_update(self._request())

        assert exc_info.value.code == ErrorCode.SUBSCRIPTION_NOT_FOUND

    def test_canceled_subscription_cannot_be_updated(
        self, orchestrator: CheckoutOrchestrator, records: FinancialRecordStore
    ):
        records.upsert_subscription(
            TEST_ORG_ID, TEST_SUBSCRIPTION_ID, status=SubscriptionStatus.CANCELED
        )

        with pytest.raises(PaymentError) as exc_info:
            orchestrator.start_subscription_update(self._request())

        assert exc_info.value.code == ErrorCode.SUBSCRIPTION_NOT_FOUND


def _subscription_checkout(
    attempt_store: PaymentAttemptStore,
    key: str = "plan-k1",
    *,
    session_id: Optional[str] = "cs_plan_1",
    subscription_id: Optional[str] = None,
):
    attempt, _ = attempt_store.ensure_attempt(
        AttemptRequest(
            flow_type=FlowType.SUBSCRIPTION_UPDATE,
            amount_cents=4900,
            currency="usd",
            organization_id=TEST_ORG_ID,
            request_fingerprint=f"fp-{key}",
        ),
        idempotency_key=key,
    )
    return attempt_store.update_attempt(
        attempt.attempt_id,
        provider_checkout_session_id=session_id,
        provider_subscription_id=subscription_id,
    )


class TestReconcileSubscription:
    def test_complete_row_is_left_alone(
        self,
        orchestrator: CheckoutOrchestrator,
        records: FinancialRecordStore,
        gateway: FakeGateway,
    ):
        stored = records.upsert_subscription(
            TEST_ORG_ID,
            TEST_SUBSCRIPTION_ID,
            status=SubscriptionStatus.ACTIVE,
            customer_id=TEST_CUSTOMER_ID,
            price_id="price_basic",
            current_period_end=make_subscription().period_end,
        )

        result = orchestrator.reconcile_subscription(TEST_ORG_ID)

        assert result.reconciled is False
        assert result.source == "stored"
        assert result.status == "active"
        assert result.current_period_end == stored.current_period_end
        assert gateway.calls == []

    def test_missing_period_end_is_backfilled(
        self,
        orchestrator: CheckoutOrchestrator,
        records: FinancialRecordStore,
        gateway: FakeGateway,
    ):
        records.upsert_subscription(
            TEST_ORG_ID,
            TEST_SUBSCRIPTION_ID,
            status=SubscriptionStatus.ACTIVE,
            customer_id=TEST_CUSTOMER_ID,
        )
        gateway.subscriptions[TEST_SUBSCRIPTION_ID] = make_subscription(
            cancel_at_period_end=True
        )

        result = orchestrator.reconcile_subscription(TEST_ORG_ID)

        assert result.reconciled is True
        assert result.source == "subscription"
        assert result.status == "canceling"
        stored = records.get_subscription(TEST_ORG_ID, TEST_SUBSCRIPTION_ID)
        assert stored.status == SubscriptionStatus.CANCELING
        assert stored.current_period_end == make_subscription().period_end
        assert stored.price_id == "price_basic"

    def test_unreadable_status_is_repaired(
        self,
        orchestrator: CheckoutOrchestrator,
        dynamodb: DynamoDBService,
        records: FinancialRecordStore,
        gateway: FakeGateway,
    ):
        dynamodb.put_item(
            SUBSCRIPTIONS_TABLE,
            {
                "organization_id": TEST_ORG_ID,
                "subscription_id": TEST_SUBSCRIPTION_ID,
                "customer_id": TEST_CUSTOMER_ID,
                "status": "Active ",
                "current_period_end": "2026-12-01T00:00:00+00:00",
                "updated_at": "2026-01-01T00:00:00+00:00",
            },
        )
        gateway.subscriptions[TEST_SUBSCRIPTION_ID] = make_subscription()

        result = orchestrator.reconcile_subscription(TEST_ORG_ID)

        assert result.reconciled is True
        assert result.status == "active"
        stored = records.get_subscription(TEST_ORG_ID, TEST_SUBSCRIPTION_ID)
        assert stored.status == SubscriptionStatus.ACTIVE

    def test_recovered_from_latest_checkout(
        self,
        orchestrator: CheckoutOrchestrator,
        attempt_store: PaymentAttemptStore,
        records: FinancialRecordStore,
        gateway: FakeGateway,
    ):
        _subscription_checkout(attempt_store)
        gateway.checkout_sessions["cs_plan_1"] = {
            "session_id": "cs_plan_1",
            "mode": "subscription",
            "subscription_id": "sub_river_2",
            "customer_id": TEST_CUSTOMER_ID,
        }
        gateway.subscriptions["sub_river_2"] = make_subscription(
            "sub_river_2", price_id=TEST_PRICE_ID, metadata={"organization_id": TEST_ORG_ID}
        )

        result = orchestrator.reconcile_subscription(TEST_ORG_ID)

        assert result.source == "checkout"
        assert result.subscription_id == "sub_river_2"
        assert result.customer_id == TEST_CUSTOMER_ID
        stored = records.get_current_subscription(TEST_ORG_ID)
        assert stored.subscription_id == "sub_river_2"
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.price_id == TEST_PRICE_ID

    def test_attempt_with_subscription_skips_session_lookup(
        self,
        orchestrator: CheckoutOrchestrator,
        attempt_store: PaymentAttemptStore,
        gateway: FakeGateway,
    ):
        _subscription_checkout(attempt_store, session_id=None, subscription_id="sub_river_3")
        gateway.subscriptions["sub_river_3"] = make_subscription("sub_river_3")

        result = orchestrator.reconcile_subscription(TEST_ORG_ID)

        assert result.subscription_id == "sub_river_3"
        assert gateway.count("retrieve_checkout_session") == 0

    def test_unknown_stored_subscription_falls_back_to_checkout(
        self,
        orchestrator: CheckoutOrchestrator,
        attempt_store: PaymentAttemptStore,
        records: FinancialRecordStore,
        gateway: FakeGateway,
    ):
        records.upsert_subscription(
            TEST_ORG_ID, "sub_gone", status=SubscriptionStatus.INCOMPLETE
        )
        _subscription_checkout(attempt_store, session_id=None, subscription_id="sub_river_3")
        gateway.subscriptions["sub_river_3"] = make_subscription("sub_river_3")

        result = orchestrator.reconcile_subscription(TEST_ORG_ID)

        assert result.source == "checkout"
        assert result.subscription_id == "sub_river_3"
        assert gateway.count("retrieve_subscription") == 2

    def test_checkout_without_subscription_rejected(
        self,
        orchestrator: CheckoutOrchestrator,
        attempt_store: PaymentAttemptStore,
        gateway: FakeGateway,
    ):
        _subscription_checkout(attempt_store)
        gateway.checkout_sessions["cs_plan_1"] = {
            "session_id": "cs_plan_1",
            "mode": "payment",
            "subscription_id": None,
            "customer_id": None,
        }

        with pytest.raises(PaymentValidationError):
            orchestrator.reconcile_subscription(TEST_ORG_ID)

    def test_nothing_to_reconcile(self, orchestrator: CheckoutOrchestrator):
        orchestrator.start_donation(_donation())

        with pytest.raises(PaymentError) as exc_info:
            orchestrator.reconcile_subscription(TEST_ORG_ID)

        assert exc_info.value.code == ErrorCode.SUBSCRIPTION_NOT_FOUND

    def test_subscription_of_another_organization_is_not_stored(
        self,
        orchestrator: CheckoutOrchestrator,
        attempt_store: PaymentAttemptStore,
        records: FinancialRecordStore,
        gateway: FakeGateway,
    ):
        _subscription_checkout(attempt_store, session_id=None, subscription_id="sub_forest")
        gateway.subscriptions["sub_forest"] = make_subscription(
            "sub_forest", metadata={"organization_id": OTHER_ORG_ID}
        )

        with pytest.raises(PaymentError) as exc_info:
            orchestrator.reconcile_subscription(TEST_ORG_ID)

        assert exc_info.value.code == ErrorCode.SUBSCRIPTION_NOT_FOUND
        assert records.get_current_subscription(TEST_ORG_ID) is None


class TestEnsureConnectedAccount:
    def test_existing_ready_account(
        self, orchestrator: CheckoutOrchestrator, gateway: FakeGateway
    ):
        result = orchestrator.ensure_connected_account(TEST_ORG_ID)

        assert result.connected_account_id == TEST_ACCOUNT_ID
        assert result.ready is True
        assert result.onboarding_url is None
        assert gateway.count("create_connected_account") == 0

    def test_creates_account_once(self, orchestrator: CheckoutOrchestrator, gateway: FakeGateway):
        first = orchestrator.ensure_connected_account("org-new")
        second = orchestrator.ensure_connected_account("org-new")

        assert first.connected_account_id == "acct_new_org-new"
        assert second.connected_account_id == first.connected_account_id
        assert first.ready is False
        assert first.onboarding_url.startswith("https://connect.stripe.com/")
        assert gateway.count("create_connected_account") == 1
        _, kwargs = [c for c in gateway.calls if c[0] == "create_connected_account"][0]
        assert kwargs["idempotency_key"] == "connect-account-org-new"
