"""
구독 상태 정의 및 전이 규칙
"""
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class SubscriptionStatus(str, Enum):
    """구독 상태"""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED_AT_PERIOD_END = "canceled_at_period_end"
    CANCELED = "canceled"


class BillingInterval(str, Enum):
    """결제 주기"""
    MONTH = "month"
    YEAR = "year"


# 레코드가 없는 상태에서는 어떤 상태로든 생성될 수 있다 (웹훅 도착 순서 보장 없음)
INITIAL_STATES: FrozenSet[SubscriptionStatus] = frozenset(SubscriptionStatus)

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.TRIALING: frozenset({
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED_AT_PERIOD_END,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.ACTIVE: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED_AT_PERIOD_END,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.PAST_DUE: frozenset({
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED_AT_PERIOD_END,
        SubscriptionStatus.CANCELED,
    }),
    SubscriptionStatus.CANCELED_AT_PERIOD_END: frozenset({
        SubscriptionStatus.CANCELED_AT_PERIOD_END,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    }),
    # 종료된 구독은 되살리지 않는다. 재구독은 새 레코드로 생성된다
    SubscriptionStatus.CANCELED: frozenset({SubscriptionStatus.CANCELED}),
}

ENTITLED_STATES: FrozenSet[SubscriptionStatus] = frozenset({
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
})


def is_transition_allowed(
    current: Optional[SubscriptionStatus],
    target: SubscriptionStatus,
) -> bool:
    """현재 상태에서 목표 상태로의 전이 허용 여부"""
    if current is None:
        return target in INITIAL_STATES
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class SubscriptionRecord:
    """사용자별 구독(권한) 레코드"""
    user_id: str
    status: SubscriptionStatus
    updated_at: datetime
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    plan: Optional[str] = None
    interval: Optional[BillingInterval] = None
    current_period_end: Optional[datetime] = None
    provider: str = "stripe"
    record_id: Optional[str] = None

    def with_changes(self, **changes: Any) -> "SubscriptionRecord":
        return replace(self, **changes)

    def is_entitled(self, now: Optional[datetime] = None) -> bool:
        """현재 시점에 유료 기능 사용 권한이 있는지 확인"""
        if self.status in ENTITLED_STATES:
            return True
        if self.status == SubscriptionStatus.CANCELED_AT_PERIOD_END:
            if self.current_period_end is None:
                return True
            return self.current_period_end > (now or utcnow())
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "status": self.status.value,
            "external_subscription_id": self.external_subscription_id,
            "external_customer_id": self.external_customer_id,
            "plan": self.plan,
            "interval": self.interval.value if self.interval else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "updated_at": self.updated_at.isoformat(),
            "provider": self.provider,
        }
