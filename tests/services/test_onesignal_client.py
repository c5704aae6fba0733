"""OneSignalClient 단위 테스트"""
import base64

import httpx
import pytest

from services.onesignal_client import NotificationJob, OneSignalAPIError, OneSignalClient


class _DummyAsyncClient:
    def __init__(self, response, calls):
        self._response = response
        self._calls = calls

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url, headers=None, json=None):
        self._calls.append({"url": url, "headers": headers, "json": json})
        if isinstance(self._response, Exception):
            raise self._response
        return self._response


def _patch(monkeypatch, response):
    calls = []
    monkeypatch.setattr(
        "services.onesignal_client.httpx.AsyncClient",
        lambda *args, **kwargs: _DummyAsyncClient(response, calls),
    )
    return calls


JOB = NotificationJob(recipient_handle="player-1", title="Hello", body="World", metadata={"k": "v"})


def _client():
    return OneSignalClient("app-1", "rest-key", "https://onesignal.test/api/v1/notifications")


@pytest.mark.asyncio
async def test_send_posts_payload_with_basic_auth(monkeypatch):
    calls = _patch(monkeypatch, httpx.Response(200, json={"id": "n1", "recipients": 1}))

    result = await _client().send(JOB)

    assert result == {"id": "n1", "recipients": 1}
    call = calls[0]
    assert call["url"] == "https://onesignal.test/api/v1/notifications"
    expected_token = base64.b64encode(b"rest-key:").decode("ascii")
    assert call["headers"]["Authorization"] == f"Basic {expected_token}"
    body = call["json"]
    assert body["app_id"] == "app-1"
    assert body["include_player_ids"] == ["player-1"]
    assert body["headings"] == {"en": "Hello"}
    assert body["contents"] == {"en": "World"}
    assert body["data"] == {"k": "v"}
    assert body["priority"] == 10
    assert body["android_group"] == "mindful_family"


@pytest.mark.asyncio
async def test_send_error_status_raises(monkeypatch):
    _patch(monkeypatch, httpx.Response(400, json={"errors": ["All included players are not subscribed"]}))

    with pytest.raises(OneSignalAPIError) as exc_info:
        await _client().send(JOB)

    assert exc_info.value.status_code == 400
    assert "not subscribed" in str(exc_info.value)


@pytest.mark.asyncio
async def test_send_network_error_raises(monkeypatch):
    request = httpx.Request("POST", "https://onesignal.test/api/v1/notifications")
    _patch(monkeypatch, httpx.ConnectError("refused", request=request))

    with pytest.raises(OneSignalAPIError) as exc_info:
        await _client().send(JOB)

    assert exc_info.value.status_code == 0


def test_missing_credentials_rejected():
    with pytest.raises(ValueError):
        OneSignalClient("", "rest-key")
