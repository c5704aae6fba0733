"""
웹훅 릴레이 라우터
다른 호스트로 들어온 Stripe 웹훅을 정식 처리 엔드포인트로 전달한다.
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from core.factory import ServiceFactory
from services.relay_service import WebhookRelay

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/relay", tags=["relay"])


@router.post("/stripe")
async def relay_stripe_webhook(
    request: Request,
    relay: WebhookRelay = Depends(ServiceFactory.get_webhook_relay),
):
    raw = await request.body()
    forwarded = await relay.forward(request.method, request.headers, raw)
    return Response(
        content=forwarded.content,
        status_code=forwarded.status_code,
        media_type=forwarded.media_type,
    )
