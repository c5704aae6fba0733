"""
배경 작업 스케줄러
결제 주기가 끝난 해지 예약 구독을 주기적으로 종료 처리
"""
import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class BackgroundScheduler:
    def __init__(self, reconciliation_service, interval_seconds: float = 3600):
        self.reconciliation_service = reconciliation_service
        self.interval_seconds = interval_seconds
        self.running = False
        self.tasks = []

    async def start(self):
        """스케줄러 시작"""
        if self.running:
            return

        self.running = True
        logger.info("백그라운드 스케줄러 시작")

        self.tasks.append(
            asyncio.create_task(self._periodic_expiry_sweep())
        )

    async def stop(self):
        """스케줄러 중지"""
        if not self.running:
            return

        self.running = False
        logger.info("백그라운드 스케줄러 중지")

        for task in self.tasks:
            if not task.done():
                task.cancel()

        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        self.tasks.clear()

    async def _periodic_expiry_sweep(self):
        """주기적으로 만료 구독 종료 처리"""
        while self.running:
            try:
                await asyncio.sleep(self.interval_seconds)

                if not self.running:
                    break

                await self.run_expiry_sweep()

            except asyncio.CancelledError:
                logger.info("구독 만료 스케줄러 취소됨")
                break
            except Exception as e:
                logger.error(f"구독 만료 스케줄러 오류: {e}")

    async def run_expiry_sweep(self) -> int:
        """만료 구독 종료 처리 1회 실행"""
        expired = await self.reconciliation_service.expire_elapsed_subscriptions()
        if expired > 0:
            logger.info(f"결제 주기 만료 구독 {expired}개 종료 처리 완료")
        return expired


# 전역 스케줄러 인스턴스
scheduler: Optional[BackgroundScheduler] = None


def get_scheduler() -> Optional[BackgroundScheduler]:
    """스케줄러 인스턴스 반환"""
    return scheduler


async def initialize_scheduler(reconciliation_service, interval_seconds: float = 3600):
    """스케줄러 초기화"""
    global scheduler
    if scheduler is None:
        scheduler = BackgroundScheduler(reconciliation_service, interval_seconds)
        await scheduler.start()
        logger.info("백그라운드 스케줄러 초기화 완료")


async def cleanup_scheduler():
    """스케줄러 정리"""
    global scheduler
    if scheduler:
        await scheduler.stop()
        scheduler = None
        logger.info("백그라운드 스케줄러 정리 완료")
