"""
푸시 알림 API 라우터
"""
import logging

from fastapi import APIRouter, Depends

from core.factory import ServiceFactory
from core.middleware import ClientActionRoute
from core.responses import ExternalServiceException, action_response
from routers.subscription_router import get_current_user
from schemas import SendNotificationRequest
from services.auth_service import VerifiedUser
from services.notification_service import NotificationDispatcher
from services.onesignal_client import NotificationJob, OneSignalAPIError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"], route_class=ClientActionRoute)


@router.post("/send")
async def send_notification(
    request: SendNotificationRequest,
    user: VerifiedUser = Depends(get_current_user),
    dispatcher: NotificationDispatcher = Depends(ServiceFactory.get_notification_dispatcher),
):
    """단일 수신자에게 푸시 알림 전송"""
    job = NotificationJob(
        recipient_handle=request.onesignal_id,
        title=request.title,
        body=request.message,
        metadata=request.data or {},
    )
    try:
        result = await dispatcher.send_now(job)
    except OneSignalAPIError as e:
        logger.error("[ONESIGNAL] send failed: user=%s status=%s", user.id, e.status_code)
        raise ExternalServiceException("OneSignal", "알림 전송에 실패했습니다") from e

    return action_response(
        data={"id": result.get("id"), "recipients": result.get("recipients")},
        message="알림이 전송되었습니다",
    )
