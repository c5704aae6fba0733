"""구독 라우터 테스트 (해지, 세션 확인, 체크아웃 생성, 조회)"""
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from core.factory import ServiceFactory
from core.middleware import setup_exception_handlers
from core.subscription_config import SubscriptionStatus
from routers import subscription_router
from services.auth_service import AuthService
from services.reconciliation_service import ReconciliationService
from services.stripe_billing_client import CheckoutSession, StripeAPIError

NOW = datetime(2025, 1, 2, tzinfo=timezone.utc)
TOKENS = {"token-u1": "U1", "token-u2": "U2"}


class StubSupabaseAuth:
    def get_user(self, token):
        user_id = TOKENS.get(token)
        if user_id is None:
            raise RuntimeError("invalid JWT")
        return SimpleNamespace(user=SimpleNamespace(id=user_id, email=f"{user_id.lower()}@example.com"))


class FakeBillingClient:
    def __init__(self, session=None, error=None):
        self.session = session
        self.error = error
        self.cancel_calls = []
        self.customers_created = []
        self.checkout_calls = []

    async def cancel_at_period_end(self, subscription_id):
        self.cancel_calls.append(subscription_id)
        if self.error:
            raise self.error
        return {"id": subscription_id, "status": "active", "cancel_at_period_end": True}

    async def retrieve_checkout_session(self, session_id):
        return self.session

    async def create_customer(self, email, user_id):
        self.customers_created.append((email, user_id))
        return {"id": "cus_new"}

    async def create_checkout_session(self, **kwargs):
        self.checkout_calls.append(kwargs)
        if self.error:
            raise self.error
        return {"id": "cs_new", "url": "https://checkout.example/cs_new"}


@pytest.fixture
def billing():
    return FakeBillingClient()


@pytest.fixture
def client(store, billing) -> TestClient:
    app = FastAPI()
    setup_exception_handlers(app)
    app.include_router(subscription_router.router)

    auth_service = AuthService(SimpleNamespace(auth=StubSupabaseAuth()))
    reconciliation = ReconciliationService(store, billing, clock=lambda: NOW)
    app.dependency_overrides[ServiceFactory.get_auth_service] = lambda: auth_service
    app.dependency_overrides[ServiceFactory.get_reconciliation_service] = lambda: reconciliation
    app.dependency_overrides[ServiceFactory.get_subscription_store] = lambda: store
    app.dependency_overrides[ServiceFactory.get_billing_client] = lambda: billing
    return TestClient(app)


def _auth(token="token-u1"):
    return {"Authorization": f"Bearer {token}"}


def test_cancel_then_repeat_cancel(client, store, billing, make_record):
    store.seed(make_record(sid="sub_456"))

    first = client.post("/api/v1/subscription/cancel", json={"subscriptionId": "sub_456"}, headers=_auth())
    second = client.post("/api/v1/subscription/cancel", json={"subscriptionId": "sub_456"}, headers=_auth())

    assert first.status_code == 200
    assert first.json()["success"] is True
    assert second.status_code == 200
    assert second.json()["success"] is True
    assert second.json()["data"]["outcome"] == "unchanged"
    assert billing.cancel_calls == ["sub_456"]
    assert store.by_sid("sub_456").status == SubscriptionStatus.CANCELED_AT_PERIOD_END


def test_cancel_requires_token(client, store, billing, make_record):
    store.seed(make_record(sid="sub_456"))

    missing = client.post("/api/v1/subscription/cancel", json={})
    invalid = client.post("/api/v1/subscription/cancel", json={}, headers=_auth("forged"))

    assert missing.status_code == 400
    assert invalid.status_code == 400
    assert invalid.json()["error"] == missing.json()["error"]
    assert invalid.json()["error_code"] == missing.json()["error_code"] == "AUTH_FAILED"
    assert billing.cancel_calls == []


def test_cancel_other_users_subscription_is_rejected(client, store, billing, make_record):
    store.seed(make_record(user_id="U1", sid="sub_456"))

    response = client.post("/api/v1/subscription/cancel", json={"subscriptionId": "sub_456"}, headers=_auth("token-u2"))

    assert response.status_code == 400
    payload = response.json()
    assert payload["success"] is False
    assert payload["error"]
    assert payload["error_code"] == "ACCESS_DENIED"
    assert billing.cancel_calls == []
    assert store.by_sid("sub_456").status == SubscriptionStatus.ACTIVE


def test_cancel_without_subscription(client):
    response = client.post("/api/v1/subscription/cancel", json={}, headers=_auth())

    assert response.status_code == 400
    assert response.json()["error"] == "No active subscription found"
    assert response.json()["error_code"] == "NOT_FOUND"


def test_cancel_upstream_failure_blocks_local_write(client, store, billing, make_record):
    store.seed(make_record(sid="sub_456"))
    billing.error = StripeAPIError("timeout", 0, code="network_error")

    response = client.post("/api/v1/subscription/cancel", json={}, headers=_auth())

    assert response.status_code == 400
    assert response.json()["error_code"] == "EXTERNAL_SERVICE_ERROR"
    assert store.by_sid("sub_456").status == SubscriptionStatus.ACTIVE


def test_verify_session_activates_and_links(client, store, billing):
    billing.session = CheckoutSession(
        session_id="cs_1",
        payment_status="paid",
        client_reference_id="U1",
        customer="cus_123",
        subscription="sub_1",
        created=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )

    response = client.post("/api/v1/subscription/verify-session", json={"sessionId": "cs_1"}, headers=_auth())

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert store.by_sid("sub_1").status == SubscriptionStatus.ACTIVE
    assert store.customers["U1"] == "cus_123"


def test_verify_session_user_mismatch(client, store, billing):
    billing.session = CheckoutSession(
        session_id="cs_1",
        payment_status="paid",
        client_reference_id="U2",
        customer="cus_123",
        subscription="sub_1",
    )

    response = client.post("/api/v1/subscription/verify-session", json={"sessionId": "cs_1"}, headers=_auth())

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid session - User mismatch"
    assert response.json()["error_code"] == "ACCESS_DENIED"
    assert store.rows == {}


def test_verify_session_requires_session_id(client):
    response = client.post("/api/v1/subscription/verify-session", json={}, headers=_auth())

    assert response.status_code == 400
    assert response.json()["error_code"] == "VALIDATION_ERROR"


def test_checkout_session_creates_customer_once(client, store, billing):
    body = {"priceId": "price_1", "successUrl": "https://app/ok", "cancelUrl": "https://app/cancel"}

    first = client.post("/api/v1/subscription/checkout-session", json=body, headers=_auth())
    second = client.post("/api/v1/subscription/checkout-session", json=body, headers=_auth())

    assert first.status_code == 200
    assert first.json()["data"]["sessionId"] == "cs_new"
    assert second.status_code == 200
    assert billing.customers_created == [("u1@example.com", "U1")]
    assert store.customers["U1"] == "cus_new"
    assert billing.checkout_calls[0]["customer_id"] == "cus_new"
    assert billing.checkout_calls[0]["price_id"] == "price_1"
    assert billing.checkout_calls[0]["user_id"] == "U1"


def test_checkout_session_rejected_price_is_400(client, store, billing):
    store.customers["U1"] = "cus_123"
    billing.error = StripeAPIError("No such price: 'price_x'", 400, code="resource_missing")
    body = {"priceId": "price_x", "successUrl": "https://app/ok", "cancelUrl": "https://app/cancel"}

    response = client.post("/api/v1/subscription/checkout-session", json=body, headers=_auth())

    assert response.status_code == 400


def test_get_subscription(client, store, make_record):
    store.seed(make_record(sid="sub_456", status=SubscriptionStatus.PAST_DUE))

    response = client.get("/api/v1/subscription", headers=_auth())

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["entitled"] is True
    assert data["subscription"]["external_subscription_id"] == "sub_456"
    assert data["subscription"]["status"] == "past_due"
