"""NotificationDispatcher 테스트"""
import asyncio

import pytest

from core.responses import ConfigurationException
from core.subscription_config import SubscriptionStatus
from services.notification_service import NotificationDispatcher
from services.onesignal_client import NotificationJob, OneSignalAPIError


class StubClient:
    def __init__(self, error=None, delay=0.0):
        self.error = error
        self.delay = delay
        self.jobs = []

    async def send(self, job):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.jobs.append(job)
        if self.error:
            raise self.error
        return {"id": "n1"}


JOB = NotificationJob(recipient_handle="player-1", title="t", body="b")


@pytest.mark.asyncio
async def test_dispatch_runs_detached():
    client = StubClient(delay=0.01)
    dispatcher = NotificationDispatcher(client)

    task = dispatcher.dispatch(JOB)

    assert task is not None
    assert client.jobs == []
    assert dispatcher.pending == 1
    await dispatcher.drain()
    assert client.jobs == [JOB]
    assert dispatcher.pending == 0


@pytest.mark.asyncio
async def test_send_failure_is_logged_and_dropped(caplog):
    dispatcher = NotificationDispatcher(StubClient(error=OneSignalAPIError("bad", 400)))

    dispatcher.dispatch(JOB)
    await dispatcher.drain()

    assert dispatcher.pending == 0
    assert "notification dropped" in caplog.text


@pytest.mark.asyncio
async def test_disabled_dispatcher_drops_jobs():
    dispatcher = NotificationDispatcher(None)

    assert dispatcher.enabled is False
    assert dispatcher.dispatch(JOB) is None
    assert dispatcher.notify_status_change("U1", SubscriptionStatus.ACTIVE) is None


@pytest.mark.asyncio
async def test_status_change_resolves_push_handle():
    client = StubClient()
    handles = {"U1": "player-9"}

    async def lookup(user_id):
        return handles.get(user_id)

    dispatcher = NotificationDispatcher(client, handle_lookup=lookup)
    dispatcher.notify_status_change("U1", SubscriptionStatus.PAST_DUE, {"subscription_id": "sub_1"})
    dispatcher.notify_status_change("U2", SubscriptionStatus.ACTIVE)
    await dispatcher.drain()

    assert len(client.jobs) == 1
    job = client.jobs[0]
    assert job.recipient_handle == "player-9"
    assert job.title == "Payment failed"
    assert job.metadata == {"type": "subscription_status", "status": "past_due", "subscription_id": "sub_1"}


@pytest.mark.asyncio
async def test_handle_lookup_failure_is_dropped():
    client = StubClient()

    async def lookup(user_id):
        raise RuntimeError("db down")

    dispatcher = NotificationDispatcher(client, handle_lookup=lookup)
    dispatcher.notify_status_change("U1", SubscriptionStatus.ACTIVE)
    await dispatcher.drain()

    assert client.jobs == []


@pytest.mark.asyncio
async def test_send_now_propagates_errors():
    with pytest.raises(ConfigurationException):
        await NotificationDispatcher(None).send_now(JOB)

    with pytest.raises(OneSignalAPIError):
        await NotificationDispatcher(StubClient(error=OneSignalAPIError("bad", 400))).send_now(JOB)
