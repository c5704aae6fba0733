"""DatabaseHelper Supabase 쿼리 구성 테스트"""
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from core.subscription_config import SubscriptionRecord, SubscriptionStatus
from database_helper import DatabaseHelper


class FakeQuery:
    def __init__(self, table, calls, data=None, error=None):
        self.table = table
        self.calls = calls
        self.data = data
        self.error = error
        self.ops = []

    def __getattr__(self, name):
        def _op(*args, **kwargs):
            self.ops.append((name, args, kwargs))
            return self
        return _op

    def execute(self):
        self.calls.append((self.table, self.ops))
        if self.error:
            raise self.error
        return SimpleNamespace(data=self.data)


class FakeSupabase:
    def __init__(self, data=None, error=None):
        self.data = data if data is not None else []
        self.error = error
        self.calls = []

    def table(self, name):
        return FakeQuery(name, self.calls, self.data, self.error)


UPDATED = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

ROW = {
    "id": 7,
    "user_id": "U1",
    "status": "active",
    "external_subscription_id": "sub_456",
    "external_customer_id": "cus_123",
    "plan": "premium",
    "interval": "month",
    "current_period_end": "2025-02-01T00:00:00Z",
    "updated_at": "2025-01-01T12:00:00+00:00",
    "provider": "stripe",
}


def _ops(call):
    return [(name, args) for name, args, _ in call[1]]


@pytest.mark.asyncio
async def test_get_by_external_id_maps_row():
    client = FakeSupabase(data=[ROW])

    record = await DatabaseHelper(client).get_by_external_id("sub_456")

    assert record.record_id == "7"
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.current_period_end == datetime(2025, 2, 1, tzinfo=timezone.utc)
    assert record.updated_at == UPDATED
    assert ("eq", ("external_subscription_id", "sub_456")) in _ops(client.calls[0])


@pytest.mark.asyncio
async def test_compare_and_set_guards_status_and_timestamp():
    client = FakeSupabase(data=[ROW])
    record = SubscriptionRecord(
        user_id="U1",
        status=SubscriptionStatus.PAST_DUE,
        updated_at=UPDATED,
        external_subscription_id="sub_456",
        record_id="7",
    )

    assert await DatabaseHelper(client).compare_and_set(record, SubscriptionStatus.ACTIVE) is True

    ops = _ops(client.calls[0])
    update_row = ops[0][1][0]
    assert "user_id" not in update_row
    assert update_row["status"] == "past_due"
    assert ("eq", ("id", "7")) in ops
    assert ("eq", ("status", "active")) in ops
    assert ("lte", ("updated_at", UPDATED.isoformat())) in ops


@pytest.mark.asyncio
async def test_compare_and_set_reports_lost_race():
    record = SubscriptionRecord(user_id="U1", status=SubscriptionStatus.ACTIVE, updated_at=UPDATED, record_id="7")

    assert await DatabaseHelper(FakeSupabase(data=[])).compare_and_set(record, SubscriptionStatus.TRIALING) is False

    with pytest.raises(ValueError):
        await DatabaseHelper(FakeSupabase()).compare_and_set(
            record.with_changes(record_id=None), SubscriptionStatus.TRIALING
        )


@pytest.mark.asyncio
async def test_insert_unique_violation_returns_none():
    error = RuntimeError("duplicate key")
    error.code = "23505"
    record = SubscriptionRecord(user_id="U1", status=SubscriptionStatus.ACTIVE, updated_at=UPDATED)

    assert await DatabaseHelper(FakeSupabase(error=error)).insert(record) is None


@pytest.mark.asyncio
async def test_read_errors_propagate():
    with pytest.raises(RuntimeError):
        await DatabaseHelper(FakeSupabase(error=RuntimeError("db down"))).get_current_for_user("U1")


@pytest.mark.asyncio
async def test_current_for_user_prefers_open_record():
    canceled = dict(ROW, id=8, status="canceled", updated_at="2025-01-05T00:00:00+00:00")
    client = FakeSupabase(data=[canceled, ROW])

    record = await DatabaseHelper(client).get_current_for_user("U1")

    assert record.record_id == "7"


@pytest.mark.asyncio
async def test_webhook_event_log_roundtrip_queries():
    client = FakeSupabase(data=[{"id": 1}])
    helper = DatabaseHelper(client)

    assert await helper.record_webhook_event("stripe", "evt_1", "processed", {"outcome": "applied"}) is True
    assert await helper.has_processed_webhook_event("stripe", "evt_1") is True

    insert_ops = _ops(client.calls[0])
    assert insert_ops[0][0] == "insert"
    assert insert_ops[0][1][0]["event_type"] == "stripe_webhook"
    assert insert_ops[0][1][0]["event_data"]["event_id"] == "evt_1"
    assert ("contains", ("event_data", {"event_id": "evt_1", "status": "processed"})) in _ops(client.calls[1])
