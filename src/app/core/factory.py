"""
서비스 팩토리 - 의존성 주입 설정
"""
from typing import Optional, Type, TypeVar
import logging

from supabase import Client, create_client

from core.config import Settings, settings as default_settings
from core.container import container
from core.interfaces import IAuthService, ISubscriptionStore
from core.responses import ConfigurationException
from database_helper import DatabaseHelper
from services.auth_service import AuthService
from services.notification_service import NotificationDispatcher
from services.onesignal_client import OneSignalClient
from services.reconciliation_service import ReconciliationService
from services.relay_service import WebhookRelay
from services.stripe_billing_client import StripeBillingClient
from services.webhook_verifier import SharedSecretVerifier, StripeSignatureVerifier

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ServiceFactory:
    """서비스 의존성 등록 및 초기화

    설정이 비어 있는 구성요소는 등록하지 않는다. 해당 구성요소가 필요한 요청에서
    getter 가 ConfigurationException (500) 을 발생시킨다.
    """

    @staticmethod
    def configure_dependencies(app_settings: Optional[Settings] = None):
        """의존성 주입 컨테이너 설정"""
        cfg = app_settings or default_settings
        container.clear()
        container.register_singleton(Settings, cfg)

        # Supabase: 세션 검증 + 구독 저장소
        store: Optional[DatabaseHelper] = None
        if cfg.SUPABASE_URL and cfg.SUPABASE_ANON_KEY:
            supabase_client = create_client(cfg.SUPABASE_URL, cfg.SUPABASE_ANON_KEY)
            supabase_admin = None
            if cfg.SUPABASE_SERVICE_ROLE_KEY:
                supabase_admin = create_client(cfg.SUPABASE_URL, cfg.SUPABASE_SERVICE_ROLE_KEY)
            container.register_singleton(Client, supabase_client)

            store = DatabaseHelper(supabase_client, supabase_admin)
            container.register_singleton(ISubscriptionStore, store)

            auth_service = AuthService(supabase_client)
            container.register_singleton(IAuthService, auth_service)
        else:
            logger.warning("[CONFIG] SUPABASE_URL/SUPABASE_ANON_KEY 미설정: 인증 및 구독 저장소 비활성화")

        # Stripe API 클라이언트
        billing_client: Optional[StripeBillingClient] = None
        if cfg.STRIPE_SECRET_KEY:
            billing_client = StripeBillingClient(
                api_key=cfg.STRIPE_SECRET_KEY,
                base_url=cfg.STRIPE_API_BASE_URL,
                timeout=cfg.UPSTREAM_TIMEOUT_SECONDS,
            )
            container.register_singleton(StripeBillingClient, billing_client)
        else:
            logger.warning("[STRIPE] STRIPE_SECRET_KEY가 설정되지 않아 StripeBillingClient를 초기화하지 않습니다.")

        # 웹훅 검증기
        if cfg.STRIPE_WEBHOOK_SECRET:
            container.register_singleton(
                StripeSignatureVerifier,
                StripeSignatureVerifier(cfg.STRIPE_WEBHOOK_SECRET, cfg.STRIPE_WEBHOOK_TOLERANCE_SECONDS),
            )
        if cfg.REVENUECAT_WEBHOOK_SECRET:
            container.register_singleton(
                SharedSecretVerifier,
                SharedSecretVerifier(cfg.REVENUECAT_WEBHOOK_SECRET, provider="revenuecat"),
            )

        # 알림 디스패처 (설정이 없으면 비활성 상태로 등록)
        onesignal_client: Optional[OneSignalClient] = None
        if cfg.ONESIGNAL_APP_ID and cfg.ONESIGNAL_REST_API_KEY:
            onesignal_client = OneSignalClient(
                app_id=cfg.ONESIGNAL_APP_ID,
                rest_api_key=cfg.ONESIGNAL_REST_API_KEY,
                api_url=cfg.ONESIGNAL_API_URL,
                android_group=cfg.ONESIGNAL_ANDROID_GROUP,
            )
        else:
            logger.warning("[ONESIGNAL] ONESIGNAL_APP_ID/ONESIGNAL_REST_API_KEY 미설정: 푸시 알림 비활성화")
        dispatcher = NotificationDispatcher(
            onesignal_client,
            handle_lookup=store.get_push_handle if store else None,
        )
        container.register_singleton(NotificationDispatcher, dispatcher)

        if store is not None:
            container.register_singleton(
                ReconciliationService,
                ReconciliationService(store, billing_client, dispatcher),
            )

        if cfg.WEBHOOK_RELAY_TARGET_URL:
            container.register_singleton(
                WebhookRelay,
                WebhookRelay(cfg.WEBHOOK_RELAY_TARGET_URL, timeout=cfg.UPSTREAM_TIMEOUT_SECONDS),
            )

    @staticmethod
    def _require(interface: Type[T], *setting_names: str) -> T:
        if container.has(interface):
            return container.get(interface)
        # 누락된 설정 이름만 메시지에 담는다
        ServiceFactory.get_settings().require(*setting_names)
        interface_name = getattr(interface, "__name__", repr(interface))
        raise ConfigurationException(f"{interface_name} 가 초기화되지 않았습니다")

    @staticmethod
    def get_settings() -> Settings:
        """설정 조회"""
        if container.has(Settings):
            return container.get(Settings)
        return default_settings

    @staticmethod
    def get_auth_service() -> IAuthService:
        """인증 서비스 조회"""
        return ServiceFactory._require(IAuthService, "SUPABASE_URL", "SUPABASE_ANON_KEY")

    @staticmethod
    def get_subscription_store() -> ISubscriptionStore:
        """구독 저장소 조회"""
        return ServiceFactory._require(ISubscriptionStore, "SUPABASE_URL", "SUPABASE_ANON_KEY")

    @staticmethod
    def get_reconciliation_service() -> ReconciliationService:
        """구독 상태 조정 서비스 조회"""
        return ServiceFactory._require(ReconciliationService, "SUPABASE_URL", "SUPABASE_ANON_KEY")

    @staticmethod
    def get_billing_client() -> StripeBillingClient:
        """Stripe 클라이언트 조회"""
        return ServiceFactory._require(StripeBillingClient, "STRIPE_SECRET_KEY")

    @staticmethod
    def get_stripe_verifier() -> StripeSignatureVerifier:
        """Stripe 웹훅 서명 검증기 조회"""
        return ServiceFactory._require(StripeSignatureVerifier, "STRIPE_WEBHOOK_SECRET")

    @staticmethod
    def get_revenuecat_verifier() -> SharedSecretVerifier:
        """RevenueCat 웹훅 검증기 조회"""
        return ServiceFactory._require(SharedSecretVerifier, "REVENUECAT_WEBHOOK_SECRET")

    @staticmethod
    def get_notification_dispatcher() -> NotificationDispatcher:
        """알림 디스패처 조회"""
        if container.has(NotificationDispatcher):
            return container.get(NotificationDispatcher)
        return NotificationDispatcher(None)

    @staticmethod
    def get_webhook_relay() -> WebhookRelay:
        """웹훅 릴레이 조회"""
        return ServiceFactory._require(WebhookRelay, "WEBHOOK_RELAY_TARGET_URL")
