"""
API 요청/응답 스키마 정의
클라이언트 앱이 camelCase 필드를 보내므로 alias 로 받고 필드명으로도 채울 수 있게 한다.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CancelSubscriptionRequest(_CamelModel):
    """구독 해지 요청 (구독 ID 생략 시 현재 구독)"""
    subscription_id: Optional[str] = Field(None, alias="subscriptionId", description="결제사 구독 ID")


class VerifySessionRequest(_CamelModel):
    """체크아웃 세션 확인 요청"""
    session_id: str = Field(..., alias="sessionId", description="Stripe 체크아웃 세션 ID")


class CheckoutSessionRequest(_CamelModel):
    """체크아웃 세션 생성 요청"""
    price_id: str = Field(..., alias="priceId", min_length=1, description="Stripe 가격 ID")
    plan_id: Optional[str] = Field(None, alias="planId", description="앱 내부 플랜 식별자")
    success_url: str = Field(..., alias="successUrl", min_length=1, description="결제 성공 후 이동할 URL")
    cancel_url: str = Field(..., alias="cancelUrl", min_length=1, description="결제 취소 시 이동할 URL")


class SendNotificationRequest(BaseModel):
    """단발 푸시 알림 전송 요청"""
    onesignal_id: str = Field(..., min_length=1, description="수신자 OneSignal 핸들")
    title: str = Field(..., min_length=1, description="알림 제목")
    message: str = Field(..., min_length=1, description="알림 본문")
    data: Optional[Dict[str, Any]] = Field(default=None, description="앱에 전달할 추가 데이터")
