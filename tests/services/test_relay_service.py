"""WebhookRelay 테스트"""
import httpx
import pytest

from core.responses import ExternalServiceException
from services.relay_service import WebhookRelay


class _DummyAsyncClient:
    def __init__(self, response, calls):
        self._response = response
        self._calls = calls

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def request(self, method, url, headers=None, content=None):
        self._calls.append({"method": method, "url": url, "headers": headers, "content": content})
        if isinstance(self._response, Exception):
            raise self._response
        return self._response


def _patch(monkeypatch, response):
    calls = []
    monkeypatch.setattr(
        "services.relay_service.httpx.AsyncClient",
        lambda *args, **kwargs: _DummyAsyncClient(response, calls),
    )
    return calls


@pytest.mark.asyncio
async def test_forward_preserves_body_and_signature(monkeypatch):
    calls = _patch(monkeypatch, httpx.Response(400, content=b'{"status":"error"}', headers={"content-type": "application/json"}))
    relay = WebhookRelay("https://canonical.example/api/v1/webhooks/stripe")
    body = b'{"id": "evt_1",  "type": "x"}'

    result = await relay.forward(
        "POST",
        {"content-type": "application/json", "stripe-signature": "t=1,v1=abc", "host": "edge.example"},
        body,
    )

    assert calls[0]["url"] == "https://canonical.example/api/v1/webhooks/stripe"
    assert calls[0]["content"] is body
    assert calls[0]["headers"] == {"content-type": "application/json", "stripe-signature": "t=1,v1=abc"}
    assert result.status_code == 400
    assert result.content == b'{"status":"error"}'
    assert result.media_type == "application/json"


@pytest.mark.asyncio
async def test_transport_failure_is_502(monkeypatch):
    request = httpx.Request("POST", "https://canonical.example")
    _patch(monkeypatch, httpx.ConnectError("refused", request=request))

    with pytest.raises(ExternalServiceException) as exc_info:
        await WebhookRelay("https://canonical.example").forward("POST", {}, b"{}")

    assert exc_info.value.status_code == 502
    assert exc_info.value.message == "Failed to process webhook"


def test_target_url_required():
    with pytest.raises(ValueError):
        WebhookRelay("")
