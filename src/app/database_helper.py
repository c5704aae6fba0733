"""
구독 상태 저장소 (Supabase)

테이블
- user_subscriptions: 구독 레코드 (external_subscription_id 유니크)
- users: 결제사 고객 ID, 푸시 알림 핸들
- system_logs: 웹훅 이벤트 처리 기록

조회 실패는 None/빈 목록으로 숨기지 않고 로그 후 다시 발생시킨다.
웹훅 처리 중 저장소 오류는 5xx 응답이 되어 결제사가 재전송한다.
"""

from typing import Dict, List, Optional, Any
from datetime import datetime
from supabase import Client
import logging

from core.interfaces import ISubscriptionStore
from core.subscription_config import BillingInterval, SubscriptionRecord, SubscriptionStatus

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_TABLE = 'user_subscriptions'
USERS_TABLE = 'users'
SYSTEM_LOGS_TABLE = 'system_logs'

UNIQUE_VIOLATION = '23505'


class DatabaseHelper(ISubscriptionStore):
    def __init__(self, supabase_client: Client, admin_client: Client = None):
        self.supabase = supabase_client
        self.admin_client = admin_client or supabase_client

    def _get_client(self, use_admin: bool = False):
        """적절한 클라이언트 반환 - 일반적으로 admin client 사용"""
        return self.admin_client if use_admin or self.admin_client else self.supabase

    @staticmethod
    def _parse_iso_datetime(value: Any) -> Optional[datetime]:
        """ISO 포맷 문자열을 datetime 객체로 변환 (Z 접두 처리 포함)"""
        if not value:
            return None
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                normalized = value.replace('Z', '+00:00')
                return datetime.fromisoformat(normalized)
            except ValueError:
                return None
        return None

    def _to_record(self, row: Dict[str, Any]) -> SubscriptionRecord:
        interval = row.get('interval')
        return SubscriptionRecord(
            user_id=row['user_id'],
            status=SubscriptionStatus(row['status']),
            updated_at=self._parse_iso_datetime(row.get('updated_at')),
            external_subscription_id=row.get('external_subscription_id'),
            external_customer_id=row.get('external_customer_id'),
            plan=row.get('plan'),
            interval=BillingInterval(interval) if interval else None,
            current_period_end=self._parse_iso_datetime(row.get('current_period_end')),
            provider=row.get('provider') or 'stripe',
            record_id=str(row['id']) if row.get('id') is not None else None,
        )

    @staticmethod
    def _to_row(record: SubscriptionRecord) -> Dict[str, Any]:
        return {
            'user_id': record.user_id,
            'status': record.status.value,
            'external_subscription_id': record.external_subscription_id,
            'external_customer_id': record.external_customer_id,
            'plan': record.plan,
            'interval': record.interval.value if record.interval else None,
            'current_period_end': record.current_period_end.isoformat() if record.current_period_end else None,
            'updated_at': record.updated_at.isoformat(),
            'provider': record.provider,
        }

    # 구독 레코드 조회

    async def get_by_external_id(self, external_subscription_id: str) -> Optional[SubscriptionRecord]:
        """결제사 구독 ID로 레코드 조회"""
        try:
            client = self._get_client(use_admin=True)
            result = (
                client.table(SUBSCRIPTIONS_TABLE)
                .select('*')
                .eq('external_subscription_id', external_subscription_id)
                .limit(1)
                .execute()
            )
            return self._to_record(result.data[0]) if result.data else None
        except Exception as e:
            logger.error(f"구독 조회 실패: subscription={external_subscription_id} error={e}")
            raise

    async def get_current_for_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        """사용자의 현재 레코드 (해지되지 않은 레코드 우선, 없으면 최신 레코드)"""
        try:
            client = self._get_client(use_admin=True)
            result = (
                client.table(SUBSCRIPTIONS_TABLE)
                .select('*')
                .eq('user_id', user_id)
                .order('updated_at', desc=True)
                .execute()
            )
            rows = result.data or []
            for row in rows:
                if row.get('status') != SubscriptionStatus.CANCELED.value:
                    return self._to_record(row)
            return self._to_record(rows[0]) if rows else None
        except Exception as e:
            logger.error(f"사용자 구독 조회 실패: user={user_id} error={e}")
            raise

    async def list_open_for_user(self, user_id: str) -> List[SubscriptionRecord]:
        """사용자의 해지되지 않은 레코드 목록"""
        try:
            client = self._get_client(use_admin=True)
            result = (
                client.table(SUBSCRIPTIONS_TABLE)
                .select('*')
                .eq('user_id', user_id)
                .neq('status', SubscriptionStatus.CANCELED.value)
                .execute()
            )
            return [self._to_record(row) for row in result.data or []]
        except Exception as e:
            logger.error(f"사용자 열린 구독 조회 실패: user={user_id} error={e}")
            raise

    async def list_elapsed(self, now: datetime) -> List[SubscriptionRecord]:
        """결제 주기가 끝난 해지 예약 레코드 목록 (배치 작업용)"""
        try:
            client = self._get_client(use_admin=True)
            result = (
                client.table(SUBSCRIPTIONS_TABLE)
                .select('*')
                .eq('status', SubscriptionStatus.CANCELED_AT_PERIOD_END.value)
                .lte('current_period_end', now.isoformat())
                .execute()
            )
            return [self._to_record(row) for row in result.data or []]
        except Exception as e:
            logger.error(f"만료 구독 조회 실패: {e}")
            raise

    # 구독 레코드 쓰기

    async def insert(self, record: SubscriptionRecord) -> Optional[SubscriptionRecord]:
        """신규 레코드 생성. 같은 구독 ID가 먼저 생성되었으면 None"""
        try:
            client = self._get_client(use_admin=True)
            result = client.table(SUBSCRIPTIONS_TABLE).insert(self._to_row(record)).execute()
            return self._to_record(result.data[0]) if result.data else None
        except Exception as e:
            if getattr(e, 'code', None) == UNIQUE_VIOLATION:
                logger.info(f"구독 레코드 동시 생성 감지: subscription={record.external_subscription_id}")
                return None
            logger.error(f"구독 레코드 생성 실패: user={record.user_id} error={e}")
            raise

    async def compare_and_set(self, record: SubscriptionRecord, expected_status: SubscriptionStatus) -> bool:
        """저장된 상태가 expected_status 이고 updated_at 이 더 늦지 않을 때만 갱신"""
        if not record.record_id:
            raise ValueError("record_id가 없는 레코드는 갱신할 수 없습니다")
        try:
            client = self._get_client(use_admin=True)
            row = self._to_row(record)
            row.pop('user_id')
            result = (
                client.table(SUBSCRIPTIONS_TABLE)
                .update(row)
                .eq('id', record.record_id)
                .eq('status', expected_status.value)
                .lte('updated_at', record.updated_at.isoformat())
                .execute()
            )
            return bool(result.data)
        except Exception as e:
            logger.error(f"구독 레코드 갱신 실패: subscription={record.external_subscription_id} error={e}")
            raise

    # 사용자 계정

    async def link_customer(self, user_id: str, external_customer_id: str) -> None:
        """사용자 계정에 결제사 고객 ID 연결"""
        try:
            client = self._get_client(use_admin=True)
            client.table(USERS_TABLE).update({'stripe_customer_id': external_customer_id}).eq('id', user_id).execute()
        except Exception as e:
            logger.error(f"결제 고객 연결 실패: user={user_id} error={e}")
            raise

    async def get_customer_id(self, user_id: str) -> Optional[str]:
        """사용자 계정에 연결된 결제사 고객 ID 조회"""
        try:
            client = self._get_client(use_admin=True)
            result = client.table(USERS_TABLE).select('stripe_customer_id').eq('id', user_id).limit(1).execute()
            return result.data[0].get('stripe_customer_id') if result.data else None
        except Exception as e:
            logger.error(f"결제 고객 ID 조회 실패: user={user_id} error={e}")
            raise

    async def get_push_handle(self, user_id: str) -> Optional[str]:
        """푸시 알림 수신 핸들 조회"""
        try:
            client = self._get_client(use_admin=True)
            result = client.table(USERS_TABLE).select('onesignal_id').eq('id', user_id).limit(1).execute()
            return result.data[0].get('onesignal_id') if result.data else None
        except Exception as e:
            logger.error(f"푸시 핸들 조회 실패: user={user_id} error={e}")
            raise

    # 웹훅 이벤트 기록

    async def log_system_event(self, user_id: str = None, event_type: str = 'info',
                               event_data: Dict = None) -> bool:
        """시스템 이벤트 로그 기록"""
        try:
            log_data = {
                'user_id': user_id,
                'event_type': event_type,
                'event_data': event_data or {},
            }

            result = self.admin_client.table(SYSTEM_LOGS_TABLE).insert(log_data).execute()
            return len(result.data) > 0
        except Exception as e:
            logger.error(f"시스템 로그 기록 실패: {e}")
            return False

    async def has_processed_webhook_event(self, provider: str, event_id: str) -> bool:
        """지정한 공급자 웹훅 이벤트가 이미 처리되었는지 확인"""
        if not event_id:
            return False
        try:
            event_type = f"{provider}_webhook"
            client = self._get_client(use_admin=True)
            result = (
                client.table(SYSTEM_LOGS_TABLE)
                .select('id')
                .eq('event_type', event_type)
                .contains('event_data', {'event_id': event_id, 'status': 'processed'})
                .limit(1)
                .execute()
            )
            return bool(result.data)
        except Exception as e:
            # 중복 확인 실패 시 재처리 (반영 규칙 자체가 멱등)
            logger.error(f"웹훅 이벤트 중복 확인 실패: {e}")
            return False

    async def record_webhook_event(self, provider: str, event_id: str, status: str, payload: Dict[str, Any] = None) -> bool:
        """웹훅 이벤트 처리 기록"""
        if not event_id:
            return False

        event_payload = {
            'event_id': event_id,
            'status': status,
        }
        if payload:
            event_payload['payload'] = payload

        return await self.log_system_event(event_type=f"{provider}_webhook", event_data=event_payload)
