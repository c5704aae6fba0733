"""
알림 디스패처

구독 상태 변경 결과를 푸시 알림으로 전달한다. 전송은 요청/상태 갱신과 분리된
asyncio 태스크에서 실행되며, 결과는 로깅만 하고 호출자는 기다리지 않는다.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from core.responses import ConfigurationException
from core.subscription_config import SubscriptionStatus
from services.onesignal_client import NotificationJob, OneSignalClient

logger = logging.getLogger(__name__)

HandleLookup = Callable[[str], Awaitable[Optional[str]]]

STATUS_MESSAGES: Dict[SubscriptionStatus, tuple[str, str]] = {
    SubscriptionStatus.ACTIVE: ("Subscription active", "Your subscription is now active."),
    SubscriptionStatus.TRIALING: ("Trial started", "Your free trial has started."),
    SubscriptionStatus.PAST_DUE: ("Payment failed", "We couldn't process your latest payment. Please update your payment method."),
    SubscriptionStatus.CANCELED_AT_PERIOD_END: ("Subscription canceled", "Your subscription will end at the close of the current billing period."),
    SubscriptionStatus.CANCELED: ("Subscription ended", "Your subscription has ended."),
}


class NotificationDispatcher:
    """분리 실행되는 best-effort 알림 디스패처"""

    def __init__(self, client: Optional[OneSignalClient], handle_lookup: Optional[HandleLookup] = None):
        self.client = client
        self.handle_lookup = handle_lookup
        self._tasks: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self.client is not None

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, job: NotificationJob) -> Optional[asyncio.Task]:
        """수신 핸들이 정해진 알림을 분리 태스크로 전송"""
        if not self.enabled:
            logger.info("[ONESIGNAL] dispatch disabled, notification dropped")
            return None
        return self._spawn(self._send(job))

    def notify_status_change(
        self,
        user_id: str,
        status: SubscriptionStatus,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[asyncio.Task]:
        """구독 상태 변경 알림. 핸들 조회부터 전송까지 모두 분리 태스크에서 수행"""
        if not self.enabled:
            return None
        if status not in STATUS_MESSAGES:
            return None
        return self._spawn(self._notify(user_id, status, metadata or {}))

    async def send_now(self, job: NotificationJob) -> Dict[str, Any]:
        """요청 경로에서 직접 전송하고 결과를 호출자에게 전달"""
        if not self.enabled:
            raise ConfigurationException("필수 설정이 누락되었습니다: ONESIGNAL_APP_ID, ONESIGNAL_REST_API_KEY")
        return await self.client.send(job)

    async def drain(self, timeout: float = 5.0) -> None:
        """진행 중인 알림 태스크 완료 대기 (종료 시/테스트용)"""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("[ONESIGNAL] %s notification task(s) cancelled at drain", len(pending))

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[ONESIGNAL] notification task failed: %s", exc)

    async def _notify(self, user_id: str, status: SubscriptionStatus, metadata: Dict[str, Any]) -> None:
        if self.handle_lookup is None:
            return
        try:
            handle = await self.handle_lookup(user_id)
        except Exception as e:
            logger.warning("[ONESIGNAL] push handle lookup failed for user=%s: %s", user_id, e)
            return
        if not handle:
            logger.info("[ONESIGNAL] no push handle for user=%s, skipped", user_id)
            return

        title, body = STATUS_MESSAGES[status]
        job = NotificationJob(
            recipient_handle=handle,
            title=title,
            body=body,
            metadata={"type": "subscription_status", "status": status.value, **metadata},
        )
        await self._send(job)

    async def _send(self, job: NotificationJob) -> None:
        try:
            await self.client.send(job)
            logger.info("[ONESIGNAL] notification delivered: title=%s", job.title)
        except Exception as e:
            # 실패는 기록 후 폐기 (재시도 큐 없음)
            logger.error("[ONESIGNAL] notification dropped: %s", e)
