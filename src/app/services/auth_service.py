"""
인증 서비스 - Supabase 세션 토큰 검증
"""
from dataclasses import dataclass
from typing import Optional

from fastapi.security import HTTPAuthorizationCredentials
from supabase import Client
import logging

from core.interfaces import IAuthService
from core.responses import AuthenticationException

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class VerifiedUser:
    """검증된 호출자 정보"""
    user_id: str
    email: Optional[str] = None

    @property
    def id(self) -> str:
        return self.user_id


class AuthService(IAuthService):
    """토큰 암호 검증은 Supabase 에 위임하고 실패를 단일 인증 오류로 변환한다"""

    def __init__(self, supabase_client: Client):
        self.supabase = supabase_client

    async def verify_bearer(self, credentials: Optional[HTTPAuthorizationCredentials]) -> VerifiedUser:
        """Bearer 토큰 검증"""
        token = None
        if credentials is not None and (credentials.scheme or "").lower() == "bearer":
            token = (credentials.credentials or "").strip()

        if not token:
            # 외부 호출 전에 즉시 실패
            raise AuthenticationException("Authorization 헤더가 없습니다")

        try:
            response = self.supabase.auth.get_user(token)
        except Exception as e:
            logger.warning(f"토큰 검증 중 오류: {e}")
            raise AuthenticationException("유효하지 않은 토큰입니다") from e

        user = getattr(response, "user", None) if response is not None else None
        if user is None or not getattr(user, "id", None):
            raise AuthenticationException("유효하지 않은 토큰입니다")

        logger.info(f"사용자 인증 성공: {user.id}")
        return VerifiedUser(user_id=str(user.id), email=getattr(user, "email", None))
