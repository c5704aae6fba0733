"""웹훅 릴레이 라우터 테스트"""
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from core.container import container
from core.middleware import setup_exception_handlers
from core.factory import ServiceFactory
from routers import relay_router
from services.relay_service import RelayResponse


class RecordingRelay:
    def __init__(self, response):
        self.response = response
        self.calls = []

    async def forward(self, method, headers, body):
        self.calls.append((method, headers.get("stripe-signature"), body))
        return self.response


@pytest.fixture(autouse=True)
def _clear_container():
    container.clear()
    yield
    container.clear()


def _build_app() -> FastAPI:
    app = FastAPI()
    setup_exception_handlers(app)
    app.include_router(relay_router.router)
    return app


def test_relay_returns_target_response_verbatim():
    relay = RecordingRelay(RelayResponse(status_code=401, content=b'{"status":"error"}', media_type="application/json"))
    app = _build_app()
    app.dependency_overrides[ServiceFactory.get_webhook_relay] = lambda: relay
    client = TestClient(app)
    body = b'{"id":"evt_1"}'

    response = client.post(
        "/api/v1/relay/stripe",
        content=body,
        headers={"Stripe-Signature": "t=1,v1=abc", "Content-Type": "application/json"},
    )

    assert response.status_code == 401
    assert response.content == b'{"status":"error"}'
    assert relay.calls == [("POST", "t=1,v1=abc", body)]


def test_relay_without_target_is_configuration_error():
    client = TestClient(_build_app())

    response = client.post("/api/v1/relay/stripe", content=b"{}")

    assert response.status_code == 500
    assert response.json()["error_code"] == "CONFIGURATION_ERROR"
