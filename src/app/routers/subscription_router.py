"""
구독 관련 API 라우터
구독 조회, 해지, 체크아웃 세션 생성/확인 엔드포인트 제공
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.factory import ServiceFactory
from core.interfaces import IAuthService, ISubscriptionStore
from core.middleware import ClientActionRoute
from core.responses import ExternalServiceException, ValidationException, action_response
from schemas import CancelSubscriptionRequest, CheckoutSessionRequest, VerifySessionRequest
from services.auth_service import VerifiedUser
from services.reconciliation_service import ReconciliationService
from services.stripe_billing_client import StripeAPIError, StripeBillingClient

logger = logging.getLogger(__name__)

# 실패는 모두 400 {error} 로 응답
router = APIRouter(prefix="/api/v1/subscription", tags=["subscription"], route_class=ClientActionRoute)
# 헤더 누락도 AuthService 에서 같은 인증 오류로 처리
security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    auth_service: IAuthService = Depends(ServiceFactory.get_auth_service),
) -> VerifiedUser:
    """현재 사용자 정보를 가져오는 의존성"""
    return await auth_service.verify_bearer(credentials)


@router.get("")
async def get_subscription(
    user: VerifiedUser = Depends(get_current_user),
    reconciliation: ReconciliationService = Depends(ServiceFactory.get_reconciliation_service),
):
    """현재 구독과 이용 권한 조회"""
    entitlement = await reconciliation.get_entitlement(user.id)
    return action_response(data=entitlement, message="구독 정보를 조회했습니다")


@router.post("/cancel")
async def cancel_subscription(
    request: CancelSubscriptionRequest,
    user: VerifiedUser = Depends(get_current_user),
    reconciliation: ReconciliationService = Depends(ServiceFactory.get_reconciliation_service),
):
    """결제 주기 종료 시 해지되도록 예약"""
    result = await reconciliation.cancel_subscription(user.id, request.subscription_id)
    logger.info("[RECONCILE] cancel requested by user=%s outcome=%s", user.id, result.outcome.value)
    return action_response(
        data=result.to_dict(),
        message="구독이 현재 결제 주기 종료 시 해지됩니다",
    )


@router.post("/verify-session")
async def verify_session(
    request: VerifySessionRequest,
    user: VerifiedUser = Depends(get_current_user),
    reconciliation: ReconciliationService = Depends(ServiceFactory.get_reconciliation_service),
):
    """결제 완료 후 돌아온 클라이언트의 체크아웃 세션 확인"""
    result = await reconciliation.verify_checkout_session(user.id, request.session_id)
    return action_response(data=result.to_dict(), message="결제가 확인되었습니다")


@router.post("/checkout-session")
async def create_checkout_session(
    request: CheckoutSessionRequest,
    user: VerifiedUser = Depends(get_current_user),
    billing: StripeBillingClient = Depends(ServiceFactory.get_billing_client),
    store: ISubscriptionStore = Depends(ServiceFactory.get_subscription_store),
):
    """구독 결제용 체크아웃 세션 생성 (결제사 고객이 없으면 먼저 생성)"""

    try:
        customer_id = await store.get_customer_id(user.id)
        if not customer_id:
            customer = await billing.create_customer(user.email, user.id)
            customer_id = customer.get("id")
            if not customer_id:
                raise ExternalServiceException("Stripe", "결제 고객을 생성하지 못했습니다")
            await store.link_customer(user.id, customer_id)
            logger.info("[STRIPE] customer created for user=%s", user.id)

        session = await billing.create_checkout_session(
            customer_id=customer_id,
            price_id=request.price_id,
            user_id=user.id,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
            plan_id=request.plan_id,
        )
    except StripeAPIError as e:
        logger.error("[STRIPE] checkout session creation failed: status=%s code=%s", e.status_code, e.code)
        if 400 <= e.status_code < 500 and e.status_code not in (401, 403, 429):
            raise ValidationException(str(e)) from e
        raise ExternalServiceException("Stripe", "결제 세션을 생성하지 못했습니다") from e

    session_id = session.get("id")
    if not session_id:
        raise ExternalServiceException("Stripe", "결제 세션을 생성하지 못했습니다")
    return action_response(data={"sessionId": session_id, "url": session.get("url")}, message="결제 세션이 생성되었습니다")
