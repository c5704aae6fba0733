"""
구독 상태 조정(Reconciliation) 서비스

정규화된 결제 이벤트와 사용자 요청(해지, 체크아웃 세션 확인)을 구독 레코드에 반영한다.

- 멱등성: 목표 상태는 항상 이벤트에서 다시 계산한다 (카운터 증가 없음)
- 순서 보장: 이벤트 시각이 레코드의 updated_at 보다 이전이면 반영하지 않는다
- 동시성: 저장소의 레코드 단위 compare-and-set 으로만 쓴다. 충돌 시 재조회 후 규칙을 다시 평가
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from core.interfaces import ISubscriptionStore
from core.responses import (
    AuthorizationException,
    ConfigurationException,
    ExternalServiceException,
    NotFoundException,
    ValidationException,
)
from core.subscription_config import (
    SubscriptionRecord,
    SubscriptionStatus,
    is_transition_allowed,
    utcnow,
)
from services.event_interpreter import EventType, NormalizedEvent
from services.notification_service import NotificationDispatcher
from services.stripe_billing_client import StripeAPIError, StripeBillingClient

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 3

# 레코드가 없을 때 새로 만들 수 있는 이벤트
CREATING_EVENTS = frozenset({
    EventType.CHECKOUT_COMPLETED,
    EventType.SUBSCRIPTION_UPDATED,
    EventType.ENTITLEMENT_GRANTED,
    EventType.ENTITLEMENT_UNCANCELLATION,
    EventType.ENTITLEMENT_CANCELLATION,
    EventType.ENTITLEMENT_BILLING_ISSUE,
})


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    IGNORED = "ignored"
    LINKED = "linked"
    NOT_FOUND = "not_found"
    DISCARDED_STALE = "discarded_stale"
    DISCARDED_INVALID = "discarded_invalid"


@dataclass(slots=True)
class ReconciliationResult:
    outcome: ReconcileOutcome
    record: Optional[SubscriptionRecord] = None
    previous_status: Optional[SubscriptionStatus] = None
    reason: Optional[str] = None

    @property
    def status_changed(self) -> bool:
        return (
            self.outcome is ReconcileOutcome.APPLIED
            and self.record is not None
            and self.record.status != self.previous_status
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "status": self.record.status.value if self.record else None,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "subscription_id": self.record.external_subscription_id if self.record else None,
            "reason": self.reason,
        }


def map_provider_status(status: Optional[str], cancel_at_period_end: bool = False) -> Optional[SubscriptionStatus]:
    """결제사 구독 상태 문자열을 내부 상태로 변환 (반영하지 않을 상태는 None)"""
    value = (status or "").strip().lower()
    if value in ("active", "trialing"):
        if cancel_at_period_end:
            return SubscriptionStatus.CANCELED_AT_PERIOD_END
        return SubscriptionStatus.TRIALING if value == "trialing" else SubscriptionStatus.ACTIVE
    if value in ("past_due", "unpaid"):
        return SubscriptionStatus.PAST_DUE
    if value in ("canceled", "cancelled", "incomplete_expired"):
        return SubscriptionStatus.CANCELED
    return None


def derive_target_status(
    event: NormalizedEvent,
    current: Optional[SubscriptionStatus],
) -> Optional[SubscriptionStatus]:
    """이벤트가 요구하는 목표 상태. None 이면 상태 변화 없음"""
    event_type = event.event_type

    if event_type == EventType.CHECKOUT_COMPLETED:
        if (event.payment_status or "").lower() != "paid":
            return None
        if (event.status or "").lower() == "trialing":
            return SubscriptionStatus.TRIALING
        return SubscriptionStatus.ACTIVE

    if event_type == EventType.SUBSCRIPTION_UPDATED:
        return map_provider_status(event.status, event.cancel_at_period_end)

    if event_type in (EventType.SUBSCRIPTION_DELETED, EventType.ENTITLEMENT_EXPIRED, EventType.PERIOD_ELAPSED):
        return SubscriptionStatus.CANCELED

    if event_type == EventType.INVOICE_PAYMENT_FAILED:
        if current in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            return SubscriptionStatus.PAST_DUE
        return None

    if event_type == EventType.INVOICE_PAYMENT_SUCCEEDED:
        if current == SubscriptionStatus.PAST_DUE:
            return SubscriptionStatus.ACTIVE
        return None

    if event_type in (EventType.ENTITLEMENT_GRANTED, EventType.ENTITLEMENT_UNCANCELLATION):
        if (event.status or "").lower() == "trialing":
            return SubscriptionStatus.TRIALING
        return SubscriptionStatus.ACTIVE

    if event_type in (EventType.ENTITLEMENT_CANCELLATION, EventType.CANCEL_REQUESTED):
        return SubscriptionStatus.CANCELED_AT_PERIOD_END

    if event_type == EventType.ENTITLEMENT_BILLING_ISSUE:
        return SubscriptionStatus.PAST_DUE

    return None


def _recency_key(record: SubscriptionRecord) -> Tuple[datetime, int, str]:
    # 숫자 id 는 길이 우선 비교로 크기 순서를 맞춘다
    record_id = record.record_id or ""
    return record.updated_at, len(record_id), record_id


class ReconciliationService:
    """구독 상태 머신"""

    def __init__(
        self,
        store: ISubscriptionStore,
        billing_client: Optional[StripeBillingClient] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.billing_client = billing_client
        self.dispatcher = dispatcher
        self.clock = clock

    async def apply_event(self, event: NormalizedEvent) -> ReconciliationResult:
        """정규화된 이벤트를 구독 레코드에 반영 (여러 번 적용해도 결과 동일)"""

        if event.event_type == EventType.CUSTOMER_CREATED:
            return await self._link_only(event)

        for attempt in range(MAX_CAS_ATTEMPTS):
            current = await self._locate(event)
            if current is None:
                result = await self._create(event)
            else:
                result = await self._transition(current, event)

            if result is not None:
                await self._after_write(event, result)
                return result

            logger.info(
                "[RECONCILE] write conflict, re-evaluating: event=%s subscription=%s attempt=%s",
                event.event_type,
                event.external_subscription_id,
                attempt + 1,
            )

        raise RuntimeError(
            f"subscription write contention not resolved after {MAX_CAS_ATTEMPTS} attempts"
        )

    async def cancel_subscription(
        self,
        user_id: str,
        external_subscription_id: Optional[str] = None,
    ) -> ReconciliationResult:
        """사용자 해지 요청: 결제사 해지 호출이 성공한 경우에만 로컬 상태를 변경"""

        if external_subscription_id:
            record = await self.store.get_by_external_id(external_subscription_id)
            if record is None:
                raise NotFoundException("해지할 구독을 찾을 수 없습니다")
            if record.user_id != user_id:
                logger.warning(
                    "[RECONCILE] cancel rejected: user=%s does not own subscription=%s",
                    user_id,
                    external_subscription_id,
                )
                raise AuthorizationException("본인의 구독만 해지할 수 있습니다")
        else:
            record = await self.store.get_current_for_user(user_id)

        if (
            record is None
            or record.status == SubscriptionStatus.CANCELED
            or not record.external_subscription_id
        ):
            raise NotFoundException("No active subscription found")

        if record.status == SubscriptionStatus.CANCELED_AT_PERIOD_END:
            logger.info("[RECONCILE] cancel already scheduled: subscription=%s", record.external_subscription_id)
            return ReconciliationResult(
                ReconcileOutcome.UNCHANGED,
                record=record,
                previous_status=record.status,
                reason="already_canceled_at_period_end",
            )

        if record.provider != "stripe":
            raise ValidationException("앱 스토어 구독은 스토어에서 해지해야 합니다")

        billing = self._require_billing_client()
        try:
            response = await billing.cancel_at_period_end(record.external_subscription_id)
        except StripeAPIError as e:
            logger.error(
                "[RECONCILE] upstream cancel failed: subscription=%s status=%s code=%s",
                record.external_subscription_id,
                e.status_code,
                e.code,
            )
            raise ExternalServiceException("Stripe", "구독 해지 요청에 실패했습니다") from e

        period_end = response.get("current_period_end") if isinstance(response, dict) else None
        event = NormalizedEvent(
            event_type=EventType.CANCEL_REQUESTED,
            provider="stripe",
            occurred_at=max(self.clock(), record.updated_at),
            subject_user_id=user_id,
            external_subscription_id=record.external_subscription_id,
            cancel_at_period_end=True,
            current_period_end=(
                datetime.fromtimestamp(period_end, tz=timezone.utc)
                if isinstance(period_end, (int, float)) and not isinstance(period_end, bool)
                else None
            ),
        )
        return await self.apply_event(event)

    async def verify_checkout_session(self, user_id: str, session_id: str) -> ReconciliationResult:
        """클라이언트가 전달한 체크아웃 세션을 결제사에서 확인 후 반영"""

        if not session_id or not session_id.strip():
            raise ValidationException("세션 ID가 필요합니다")

        billing = self._require_billing_client()
        try:
            session = await billing.retrieve_checkout_session(session_id.strip())
        except StripeAPIError as e:
            logger.error("[RECONCILE] checkout session lookup failed: status=%s code=%s", e.status_code, e.code)
            raise ExternalServiceException("Stripe", "결제 세션을 확인하지 못했습니다") from e

        if session is None:
            raise NotFoundException("유효하지 않은 결제 세션입니다")
        if session.client_reference_id != user_id:
            logger.warning("[RECONCILE] checkout session user mismatch: user=%s session=%s", user_id, session.session_id)
            raise AuthorizationException("Invalid session - User mismatch")
        if (session.payment_status or "").lower() != "paid":
            raise ValidationException("결제가 완료되지 않았습니다")
        if not session.customer:
            raise ValidationException("결제 고객 정보를 찾을 수 없습니다")

        event = NormalizedEvent(
            event_type=EventType.CHECKOUT_COMPLETED,
            provider="stripe",
            occurred_at=session.created or self.clock(),
            subject_user_id=user_id,
            external_subscription_id=session.subscription,
            external_customer_id=session.customer,
            payment_status=session.payment_status,
        )
        return await self.apply_event(event)

    async def expire_elapsed_subscriptions(self, now: Optional[datetime] = None) -> int:
        """결제 주기가 끝난 해지 예약 구독을 종료 처리"""

        now = now or self.clock()
        expired = 0
        for record in await self.store.list_elapsed(now):
            elapsed_at = record.current_period_end or now
            event = NormalizedEvent(
                event_type=EventType.PERIOD_ELAPSED,
                provider=record.provider,
                occurred_at=max(elapsed_at, record.updated_at),
                subject_user_id=record.user_id,
                external_subscription_id=record.external_subscription_id,
            )
            try:
                result = await self.apply_event(event)
            except Exception as e:
                logger.error("[RECONCILE] period expiry failed: user=%s error=%s", record.user_id, e)
                continue
            if result.status_changed:
                expired += 1
        return expired

    async def get_entitlement(self, user_id: str) -> Dict[str, Any]:
        """사용자 현재 구독과 권한 여부"""
        record = await self.store.get_current_for_user(user_id)
        return {
            "subscription": record.to_dict() if record else None,
            "entitled": bool(record and record.is_entitled(self.clock())),
        }

    async def _locate(self, event: NormalizedEvent) -> Optional[SubscriptionRecord]:
        if event.external_subscription_id:
            record = await self.store.get_by_external_id(event.external_subscription_id)
            if record is not None:
                return record
            if event.event_type != EventType.CHECKOUT_COMPLETED or not event.subject_user_id:
                return None
            # 구독 ID 없이 먼저 생성된 레코드가 있으면 이어서 사용
            current = await self.store.get_current_for_user(event.subject_user_id)
            if (
                current is not None
                and current.status != SubscriptionStatus.CANCELED
                and not current.external_subscription_id
            ):
                return current
            return None

        if not event.subject_user_id:
            return None
        current = await self.store.get_current_for_user(event.subject_user_id)
        if current is None or current.status == SubscriptionStatus.CANCELED:
            return None
        return current

    async def _create(self, event: NormalizedEvent) -> Optional[ReconciliationResult]:
        if event.event_type not in CREATING_EVENTS:
            logger.info(
                "[RECONCILE] no subscription record for event=%s subscription=%s",
                event.event_type,
                event.external_subscription_id,
            )
            return ReconciliationResult(ReconcileOutcome.NOT_FOUND, reason="subscription_not_found")

        target = derive_target_status(event, None)
        if target is None:
            return ReconciliationResult(ReconcileOutcome.IGNORED, reason="no_state_change")

        if not event.subject_user_id:
            if event.event_type == EventType.CHECKOUT_COMPLETED:
                # 재전송해도 결과가 같으므로 오류 대신 폐기로 응답
                logger.warning("[RECONCILE] checkout event without client_reference_id discarded: event=%s", event.event_id)
                return ReconciliationResult(ReconcileOutcome.DISCARDED_INVALID, reason="subject_user_missing")
            return ReconciliationResult(ReconcileOutcome.NOT_FOUND, reason="subject_user_unknown")

        record = SubscriptionRecord(
            user_id=event.subject_user_id,
            status=target,
            updated_at=event.occurred_at,
            external_subscription_id=event.external_subscription_id,
            external_customer_id=event.external_customer_id,
            plan=event.plan,
            interval=event.interval,
            current_period_end=event.current_period_end,
            provider=event.provider,
        )
        created = await self.store.insert(record)
        if created is None:
            return None

        logger.info(
            "[RECONCILE] created user=%s subscription=%s status=%s",
            created.user_id,
            created.external_subscription_id,
            created.status.value,
        )
        if created.status != SubscriptionStatus.CANCELED:
            newer = await self._supersede_others(created, event.occurred_at)
            if newer is not None:
                # 동시에 생성된 더 최신 레코드가 남는다
                return ReconciliationResult(
                    ReconcileOutcome.UNCHANGED,
                    record=newer,
                    previous_status=newer.status,
                    reason="superseded_by_newer_record",
                )
        return ReconciliationResult(ReconcileOutcome.APPLIED, record=created, previous_status=None)

    async def _transition(
        self,
        current: SubscriptionRecord,
        event: NormalizedEvent,
    ) -> Optional[ReconciliationResult]:
        if event.occurred_at < current.updated_at:
            logger.info(
                "[RECONCILE] stale event discarded: event=%s subscription=%s event_at=%s record_at=%s",
                event.event_type,
                current.external_subscription_id,
                event.occurred_at.isoformat(),
                current.updated_at.isoformat(),
            )
            return ReconciliationResult(
                ReconcileOutcome.DISCARDED_STALE,
                record=current,
                previous_status=current.status,
                reason="stale_event",
            )

        if event.subject_user_id and event.subject_user_id != current.user_id:
            logger.warning(
                "[RECONCILE] event user does not own subscription=%s, discarded",
                current.external_subscription_id,
            )
            return ReconciliationResult(
                ReconcileOutcome.DISCARDED_INVALID,
                record=current,
                previous_status=current.status,
                reason="user_mismatch",
            )

        target = derive_target_status(event, current.status)
        if target is None:
            return ReconciliationResult(
                ReconcileOutcome.IGNORED,
                record=current,
                previous_status=current.status,
                reason="no_state_change",
            )

        if not is_transition_allowed(current.status, target):
            logger.info(
                "[RECONCILE] transition %s -> %s not allowed for subscription=%s",
                current.status.value,
                target.value,
                current.external_subscription_id,
            )
            return ReconciliationResult(
                ReconcileOutcome.DISCARDED_INVALID,
                record=current,
                previous_status=current.status,
                reason="invalid_transition",
            )

        updated = current.with_changes(
            status=target,
            updated_at=event.occurred_at,
            external_subscription_id=current.external_subscription_id or event.external_subscription_id,
            external_customer_id=event.external_customer_id or current.external_customer_id,
            plan=event.plan or current.plan,
            interval=event.interval or current.interval,
            current_period_end=event.current_period_end or current.current_period_end,
        )
        if updated == current:
            return ReconciliationResult(ReconcileOutcome.UNCHANGED, record=current, previous_status=current.status)

        if not await self.store.compare_and_set(updated, expected_status=current.status):
            return None

        logger.info(
            "[RECONCILE] subscription=%s %s -> %s (event=%s)",
            updated.external_subscription_id,
            current.status.value,
            target.value,
            event.event_type,
        )
        return ReconciliationResult(ReconcileOutcome.APPLIED, record=updated, previous_status=current.status)

    async def _supersede_others(
        self,
        keep: SubscriptionRecord,
        occurred_at: datetime,
    ) -> Optional[SubscriptionRecord]:
        """사용자당 해지되지 않은 레코드는 하나만 유지

        (updated_at, record_id) 가 가장 늦은 레코드가 남는다. 동시 생성 시 어느 쪽이
        먼저 실행되어도 같은 레코드가 남도록 keep 보다 늦은 레코드가 있으면 keep 을 닫고
        그 레코드를 반환한다.
        """
        others = [
            other
            for other in await self.store.list_open_for_user(keep.user_id)
            if other.record_id != keep.record_id
            and not (keep.external_subscription_id and other.external_subscription_id == keep.external_subscription_id)
        ]

        newer = [other for other in others if _recency_key(other) > _recency_key(keep)]
        if newer:
            await self._close_superseded(keep, occurred_at)
            return max(newer, key=_recency_key)

        for other in others:
            await self._close_superseded(other, occurred_at)
        return None

    async def _close_superseded(self, record: SubscriptionRecord, occurred_at: datetime) -> None:
        closed = record.with_changes(
            status=SubscriptionStatus.CANCELED,
            updated_at=max(record.updated_at, occurred_at),
        )
        if await self.store.compare_and_set(closed, expected_status=record.status):
            logger.info(
                "[RECONCILE] superseded subscription=%s record=%s for user=%s",
                record.external_subscription_id,
                record.record_id,
                record.user_id,
            )
        else:
            logger.info("[RECONCILE] superseded record=%s already changed by another writer", record.record_id)

    async def _link_only(self, event: NormalizedEvent) -> ReconciliationResult:
        if not event.subject_user_id or not event.external_customer_id:
            return ReconciliationResult(ReconcileOutcome.IGNORED, reason="customer_owner_unknown")
        await self.store.link_customer(event.subject_user_id, event.external_customer_id)
        return ReconciliationResult(ReconcileOutcome.LINKED)

    async def _after_write(self, event: NormalizedEvent, result: ReconciliationResult) -> None:
        if (
            event.event_type == EventType.CHECKOUT_COMPLETED
            and result.outcome is not ReconcileOutcome.IGNORED
            and result.outcome is not ReconcileOutcome.DISCARDED_INVALID
            and event.subject_user_id
            and event.external_customer_id
        ):
            await self.store.link_customer(event.subject_user_id, event.external_customer_id)

        if result.status_changed and self.dispatcher is not None:
            try:
                self.dispatcher.notify_status_change(
                    result.record.user_id,
                    result.record.status,
                    {"subscription_id": result.record.external_subscription_id},
                )
            except Exception as e:
                logger.error("[RECONCILE] notification scheduling failed: %s", e)

    def _require_billing_client(self) -> StripeBillingClient:
        if self.billing_client is None:
            raise ConfigurationException("결제 서비스가 설정되지 않았습니다")
        return self.billing_client
