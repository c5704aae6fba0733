"""
서비스 인터페이스 정의
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.subscription_config import SubscriptionRecord, SubscriptionStatus


class IAuthService(ABC):
    """인증 서비스 인터페이스"""

    @abstractmethod
    async def verify_bearer(self, credentials) -> Any:
        """Bearer 토큰 검증 후 사용자 식별자 반환"""
        pass


class ISubscriptionStore(ABC):
    """구독 상태 저장소 인터페이스

    쓰기 경로는 레코드 단위 compare-and-set 으로만 제공된다.
    """

    @abstractmethod
    async def get_by_external_id(self, external_subscription_id: str) -> Optional[SubscriptionRecord]:
        """결제사 구독 ID로 레코드 조회"""
        pass

    @abstractmethod
    async def get_current_for_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        """사용자의 현재 레코드 조회 (해지되지 않은 레코드 우선, 없으면 최신 레코드)"""
        pass

    @abstractmethod
    async def list_open_for_user(self, user_id: str) -> List[SubscriptionRecord]:
        """사용자의 해지되지 않은 레코드 목록"""
        pass

    @abstractmethod
    async def list_elapsed(self, now: datetime) -> List[SubscriptionRecord]:
        """기간 만료 해지 예약 레코드 목록"""
        pass

    @abstractmethod
    async def insert(self, record: SubscriptionRecord) -> Optional[SubscriptionRecord]:
        """신규 레코드 생성. 동일 키가 이미 존재하면 None"""
        pass

    @abstractmethod
    async def compare_and_set(
        self,
        record: SubscriptionRecord,
        expected_status: SubscriptionStatus,
    ) -> bool:
        """저장된 상태가 expected_status 이고 updated_at 이 record.updated_at 이하일 때만 갱신"""
        pass

    @abstractmethod
    async def link_customer(self, user_id: str, external_customer_id: str) -> None:
        """사용자 계정에 결제사 고객 ID 연결"""
        pass

    @abstractmethod
    async def get_customer_id(self, user_id: str) -> Optional[str]:
        """사용자 계정에 연결된 결제사 고객 ID 조회"""
        pass

    @abstractmethod
    async def get_push_handle(self, user_id: str) -> Optional[str]:
        """푸시 알림 수신 핸들 조회"""
        pass

    @abstractmethod
    async def has_processed_webhook_event(self, provider: str, event_id: str) -> bool:
        """웹훅 이벤트 처리 여부 확인"""
        pass

    @abstractmethod
    async def record_webhook_event(
        self,
        provider: str,
        event_id: str,
        status: str,
        payload: Dict[str, Any] = None,
    ) -> bool:
        """웹훅 이벤트 처리 기록"""
        pass
