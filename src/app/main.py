from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn
import signal
from contextlib import asynccontextmanager
import logging
from datetime import datetime

from core.config import settings
from core.factory import ServiceFactory
from core.middleware import setup_exception_handlers
from core.scheduler import initialize_scheduler, cleanup_scheduler
from core.responses import success_response, ConfigurationException

from routers import (
    notification_router,
    relay_router,
    revenuecat_router,
    stripe_webhook_router,
    subscription_router,
)

# 로깅 설정
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# 설정은 시작 시 1회 읽고, 누락된 값은 해당 구성요소를 처음 쓰는 요청에서 500으로 드러난다
ServiceFactory.configure_dependencies(settings)


def signal_handler(signum, frame):
    """SIGINT (Ctrl+C) 및 SIGTERM 처리"""
    import sys
    sys.exit(0)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # 결제 주기 만료 구독 정리 스케줄러
    try:
        reconciliation_service = ServiceFactory.get_reconciliation_service()
        await initialize_scheduler(reconciliation_service, settings.EXPIRY_SWEEP_INTERVAL_SECONDS)
    except ConfigurationException as e:
        logger.error(f"백그라운드 스케줄러 초기화 실패: {e.message}")

    yield

    try:
        await cleanup_scheduler()
    except Exception as e:
        logger.error(f"백그라운드 스케줄러 종료 실패: {e}")

    # 진행 중인 알림 전송 마무리
    await ServiceFactory.get_notification_dispatcher().drain()


app = FastAPI(
    title="Subscription Reconciliation Server",
    description="Webhook-driven subscription state reconciliation for Stripe and RevenueCat",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.DEBUG
)

# 예외 처리 미들웨어 설정
setup_exception_handlers(app)

# CORS 미들웨어 추가
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # 프로덕션에서는 특정 도메인만 허용
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    # 외부 서비스 연결은 검사하지 않고 정적 상태만 반환
    return success_response(
        data={
            "timestamp": datetime.now().isoformat(),
            "version": "1.0.0",
            "environment": "development" if settings.DEBUG else "production"
        },
        message="헬스 체크"
    )


# 라우터 등록
app.include_router(stripe_webhook_router.router)  # Stripe 웹훅
app.include_router(revenuecat_router.router)  # RevenueCat 웹훅
app.include_router(subscription_router.router)  # 구독 조회/해지/결제
app.include_router(notification_router.router)  # 푸시 알림
app.include_router(relay_router.router)  # 다른 엣지에서 들어온 웹훅 전달

if __name__ == "__main__":
    # 메인 스레드에서만 신호 핸들러 등록
    try:
        import threading
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, signal_handler)
            signal.signal(signal.SIGTERM, signal_handler)
        else:
            logger.warning("메인 스레드가 아니므로 signal 핸들러 등록을 건너뜁니다")
    except Exception as e:
        logger.warning(f"signal 핸들러 등록 실패, uvicorn 기본 처리에 위임: {e}")

    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=settings.DEBUG
    )
