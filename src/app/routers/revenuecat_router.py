"""
RevenueCat Webhook Router

앱 스토어(인앱 결제) 구독 이벤트를 RevenueCat 웹훅으로 받아 같은 조정 엔진에 반영한다.
발신자 검증은 대시보드에 설정한 Authorization 헤더 공유 비밀로 한다.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request

from core.factory import ServiceFactory
from core.interfaces import ISubscriptionStore
from core.responses import success_response
from routers.stripe_webhook_router import parse_json_body
from services.event_interpreter import interpret_revenuecat_event
from services.reconciliation_service import ReconciliationService
from services.webhook_verifier import SharedSecretVerifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks", "revenuecat"])


async def process_revenuecat_payload(
    payload: Dict[str, Any],
    reconciliation: ReconciliationService,
    store: ISubscriptionStore,
) -> Dict[str, Any]:
    """인증된 RevenueCat 이벤트를 처리하고 결과를 반환"""

    event = interpret_revenuecat_event(payload)
    if event is None:
        return {"event_id": None, "status": "skipped", "skip": True, "duplicate": False}

    event_id = event.event_id
    if event_id and await store.has_processed_webhook_event("revenuecat", event_id):
        logger.info("[REVENUECAT] duplicate event ignored: %s", event_id)
        return {"event_id": event_id, "status": "duplicate", "skip": False, "duplicate": True}

    logger.info(
        "[REVENUECAT] event=%s id=%s uid=%s subscription=%s",
        event.event_type.value,
        event_id,
        event.subject_user_id,
        event.external_subscription_id,
    )
    result = await reconciliation.apply_event(event)

    if event_id:
        await store.record_webhook_event("revenuecat", event_id, "processed", result.to_dict())

    return {
        "event_id": event_id,
        "status": result.outcome.value,
        "skip": False,
        "duplicate": False,
        "result": result.to_dict(),
    }


@router.post("/revenuecat")
async def revenuecat_webhook(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    verifier: SharedSecretVerifier = Depends(ServiceFactory.get_revenuecat_verifier),
    reconciliation: ReconciliationService = Depends(ServiceFactory.get_reconciliation_service),
    store: ISubscriptionStore = Depends(ServiceFactory.get_subscription_store),
):
    raw = await request.body()
    logger.info("[REVENUECAT] webhook received: len=%s, has_authorization=%s", len(raw), bool(authorization))

    verifier.verify(authorization)
    payload = parse_json_body(raw)

    outcome = await process_revenuecat_payload(payload, reconciliation, store)
    if outcome.get("skip"):
        return success_response(data={"received": True, "skipped": True}, message="event ignored")
    return success_response(data={"received": True, **outcome}, message="revenuecat webhook processed")
