"""Contract tests for organization admin endpoints.

POST /api/organizations/{organizationId}/subscription
POST /api/organizations/{organizationId}/connect-account
POST /api/organizations/{organizationId}/reconcile-subscription

Test categories:
- Authentication (401) and admin authorization (403)
- Subscription price change (404 without subscription, idempotent replay)
- Connect onboarding
- Subscription reconciliation (backfill from Stripe, 404 with nothing to recover)
"""

import pytest
from fastapi.testclient import TestClient
from starlette.status import (
    HTTP_200_OK,
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
)

from orgpay.models.enums import SubscriptionStatus
from orgpay.services.financial_records import FinancialRecordStore

from tests.conftest import (
    TEST_ACCOUNT_ID,
    TEST_CUSTOMER_ID,
    TEST_ORG_ID,
    TEST_PRICE_ID,
    TEST_SUBSCRIPTION_ID,
    FakeGateway,
    admin_headers,
    make_subscription,
)

SUBSCRIPTION_URL = f"/api/organizations/{TEST_ORG_ID}/subscription"
CONNECT_URL = f"/api/organizations/{TEST_ORG_ID}/connect-account"
RECONCILE_URL = f"/api/organizations/{TEST_ORG_ID}/reconcile-subscription"


@pytest.fixture
def subscribed(records: FinancialRecordStore, gateway: FakeGateway) -> None:
    records.upsert_subscription(
        TEST_ORG_ID,
        TEST_SUBSCRIPTION_ID,
        status=SubscriptionStatus.ACTIVE,
        customer_id=TEST_CUSTOMER_ID,
        price_id="price_basic",
    )
    gateway.subscriptions[TEST_SUBSCRIPTION_ID] = make_subscription()


class TestAuthorization:
    @pytest.mark.parametrize("url", [SUBSCRIPTION_URL, CONNECT_URL, RECONCILE_URL])
    def test_requires_identity(self, api_client: TestClient, url: str):
        response = api_client.post(url, json={"priceId": TEST_PRICE_ID})

        assert response.status_code == HTTP_401_UNAUTHORIZED
        assert response.json()["error_code"] == "ERR_AUTH_001"

    @pytest.mark.parametrize("url", [SUBSCRIPTION_URL, CONNECT_URL, RECONCILE_URL])
    def test_requires_admin(self, api_client: TestClient, url: str):
        response = api_client.post(
            url, json={"priceId": TEST_PRICE_ID}, headers=admin_headers("user-admin-forest")
        )

        assert response.status_code == HTTP_403_FORBIDDEN
        assert response.json()["error_code"] == "ERR_AUTH_002"

    def test_unknown_organization(self, api_client: TestClient):
        response = api_client.post(
            "/api/organizations/org-missing/connect-account", headers=admin_headers()
        )

        assert response.status_code == HTTP_404_NOT_FOUND


class TestSubscriptionUpdate:
    def test_without_subscription(self, api_client: TestClient):
        response = api_client.post(
            SUBSCRIPTION_URL,
            json={"priceId": TEST_PRICE_ID, "idempotencyKey": "plan-1"},
            headers=admin_headers(),
        )

        assert response.status_code == HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "ERR_PAY_006"

    def test_missing_price(self, api_client: TestClient):
        response = api_client.post(SUBSCRIPTION_URL, json={}, headers=admin_headers())

        assert response.status_code == HTTP_400_BAD_REQUEST

    @pytest.mark.usefixtures("subscribed")
    def test_changes_price_once(self, api_client: TestClient, gateway: FakeGateway):
        body = {"priceId": TEST_PRICE_ID, "idempotencyKey": "plan-1"}

        first = api_client.post(SUBSCRIPTION_URL, json=body, headers=admin_headers())
        second = api_client.post(SUBSCRIPTION_URL, json=body, headers=admin_headers())

        assert first.status_code == HTTP_200_OK
        assert first.json()["subscriptionId"] == TEST_SUBSCRIPTION_ID
        assert first.json()["priceId"] == TEST_PRICE_ID
        assert second.json()["replayed"] is True
        assert gateway.count("update_subscription_price") == 1


class TestConnectAccount:
    def test_ready_account(self, api_client: TestClient):
        response = api_client.post(CONNECT_URL, headers=admin_headers())

        assert response.status_code == HTTP_200_OK
        data = response.json()
        assert data["connectedAccountId"] == TEST_ACCOUNT_ID
        assert data["ready"] is True
        assert data["onboardingUrl"] is None

    def test_new_account_gets_onboarding_link(self, api_client: TestClient):
        response = api_client.post(
            "/api/organizations/org-new/connect-account", headers=admin_headers()
        )

        assert response.status_code == HTTP_200_OK
        data = response.json()
        assert data["connectedAccountId"] == "acct_new_org-new"
        assert data["ready"] is False
        assert data["onboardingUrl"].startswith("https://connect.stripe.com/")


class TestReconcileSubscription:
    @pytest.mark.usefixtures("subscribed")
    def test_backfills_period_end(
        self, api_client: TestClient, records: FinancialRecordStore
    ):
        response = api_client.post(RECONCILE_URL, headers=admin_headers())

        assert response.status_code == HTTP_200_OK
        data = response.json()
        assert data["subscriptionId"] == TEST_SUBSCRIPTION_ID
        assert data["status"] == "active"
        assert data["reconciled"] is True
        assert data["source"] == "subscription"
        assert data["currentPeriodEnd"].startswith("2026-12-01")
        stored = records.get_subscription(TEST_ORG_ID, TEST_SUBSCRIPTION_ID)
        assert stored.current_period_end is not None

    @pytest.mark.usefixtures("subscribed")
    def test_second_call_reads_stored_row(self, api_client: TestClient, gateway: FakeGateway):
        api_client.post(RECONCILE_URL, headers=admin_headers())
        response = api_client.post(RECONCILE_URL, headers=admin_headers())

        assert response.json()["reconciled"] is False
        assert response.json()["source"] == "stored"
        assert gateway.count("retrieve_subscription") == 1

    def test_nothing_to_recover(self, api_client: TestClient):
        response = api_client.post(RECONCILE_URL, headers=admin_headers())

        assert response.status_code == HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "ERR_PAY_006"
