"""테스트 공용 픽스처 및 인메모리 구독 저장소"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from core.interfaces import ISubscriptionStore
from core.subscription_config import SubscriptionRecord, SubscriptionStatus


BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def at(seconds: int) -> datetime:
    return BASE_TIME + timedelta(seconds=seconds)


class InMemorySubscriptionStore(ISubscriptionStore):
    """Supabase 저장소와 같은 compare-and-set 규칙을 따르는 테스트 더블"""

    def __init__(self) -> None:
        self.rows: Dict[str, SubscriptionRecord] = {}
        self.customers: Dict[str, str] = {}
        self.push_handles: Dict[str, str] = {}
        self.webhook_log: List[Tuple[str, str, str, Optional[Dict[str, Any]]]] = []
        self.writes = 0
        self._next_id = 1

    def seed(self, record: SubscriptionRecord) -> SubscriptionRecord:
        stored = record.with_changes(record_id=str(self._next_id))
        self._next_id += 1
        self.rows[stored.record_id] = stored
        return stored

    def by_sid(self, sid: str) -> Optional[SubscriptionRecord]:
        for record in self.rows.values():
            if record.external_subscription_id == sid:
                return record
        return None

    async def get_by_external_id(self, external_subscription_id):
        return self.by_sid(external_subscription_id)

    async def get_current_for_user(self, user_id):
        records = sorted(
            (r for r in self.rows.values() if r.user_id == user_id),
            key=lambda r: r.updated_at,
            reverse=True,
        )
        for record in records:
            if record.status != SubscriptionStatus.CANCELED:
                return record
        return records[0] if records else None

    async def list_open_for_user(self, user_id):
        return [
            r for r in self.rows.values()
            if r.user_id == user_id and r.status != SubscriptionStatus.CANCELED
        ]

    async def list_elapsed(self, now):
        return [
            r for r in self.rows.values()
            if r.status == SubscriptionStatus.CANCELED_AT_PERIOD_END
            and r.current_period_end is not None
            and r.current_period_end <= now
        ]

    async def insert(self, record):
        if record.external_subscription_id and self.by_sid(record.external_subscription_id):
            return None
        self.writes += 1
        return self.seed(record)

    async def compare_and_set(self, record, expected_status):
        stored = self.rows.get(record.record_id)
        if stored is None or stored.status != expected_status or stored.updated_at > record.updated_at:
            return False
        self.writes += 1
        self.rows[record.record_id] = record
        return True

    async def link_customer(self, user_id, external_customer_id):
        self.customers[user_id] = external_customer_id

    async def get_customer_id(self, user_id):
        return self.customers.get(user_id)

    async def get_push_handle(self, user_id):
        return self.push_handles.get(user_id)

    async def has_processed_webhook_event(self, provider, event_id):
        return any(p == provider and e == event_id and s == "processed" for p, e, s, _ in self.webhook_log)

    async def record_webhook_event(self, provider, event_id, status, payload=None):
        self.webhook_log.append((provider, event_id, status, payload))
        return True


@pytest.fixture
def store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore()


@pytest.fixture
def make_record():
    def _make(
        user_id: str = "U1",
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        sid: Optional[str] = "sub_456",
        updated_at: datetime = BASE_TIME,
        **extra: Any,
    ) -> SubscriptionRecord:
        return SubscriptionRecord(
            user_id=user_id,
            status=status,
            updated_at=updated_at,
            external_subscription_id=sid,
            **extra,
        )

    return _make
