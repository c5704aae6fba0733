"""
애플리케이션 설정 관리
"""
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import validator
from pydantic_settings import BaseSettings

from core.responses import ConfigurationException


_FILE_PATH = Path(__file__).resolve()


def _collect_env_files(file_path: Path) -> tuple[Path, ...]:
    """환경 파일 후보를 가까운 디렉터리부터 수집"""

    collected: list[Path] = []
    seen: set[Path] = set()

    for directory in file_path.parents:
        for name in (".env", ".env.local"):
            candidate = directory / name
            if candidate.exists() and candidate not in seen:
                collected.append(candidate)
                seen.add(candidate)

    return tuple(collected)


_ENV_FILES = _collect_env_files(_FILE_PATH)


def _load_dotenv_files() -> None:
    """프로젝트 전체에서 활용할 .env 파일들을 순차적으로 로드"""

    for dotenv_path in _ENV_FILES:
        load_dotenv(dotenv_path, override=False)


_load_dotenv_files()


class Settings(BaseSettings):
    """애플리케이션 설정

    필수 값이라도 임포트 시점에는 검증하지 않는다. 값이 필요한 컴포넌트가
    ``require`` 를 호출하는 시점에 ConfigurationException 으로 드러난다.
    """

    # 서버 설정
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False

    # 로깅 설정
    LOG_LEVEL: str = "INFO"

    # Supabase 설정 (인증 + 구독 저장소)
    SUPABASE_URL: Optional[str] = None
    SUPABASE_ANON_KEY: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None

    # Stripe 설정
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_API_BASE_URL: str = "https://api.stripe.com"
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # RevenueCat 설정
    REVENUECAT_WEBHOOK_SECRET: Optional[str] = None

    # OneSignal 설정
    ONESIGNAL_APP_ID: Optional[str] = None
    ONESIGNAL_REST_API_KEY: Optional[str] = None
    ONESIGNAL_API_URL: str = "https://onesignal.com/api/v1/notifications"
    ONESIGNAL_ANDROID_GROUP: str = "mindful_family"

    # 웹훅 릴레이 설정 (다른 엣지에서 정식 엔드포인트로 전달)
    WEBHOOK_RELAY_TARGET_URL: Optional[str] = None

    # 외부 호출 타임아웃 및 배치 주기
    UPSTREAM_TIMEOUT_SECONDS: float = 15.0
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 3600

    @validator("SUPABASE_URL", "STRIPE_API_BASE_URL")
    def strip_trailing_slash(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v.rstrip("/")
        return v

    @validator("LOG_LEVEL")
    def normalize_log_level(cls, v):
        return (v or "INFO").upper()

    def require(self, *names: str) -> None:
        """지정한 설정값이 모두 존재하는지 확인"""

        missing = [name for name in names if not getattr(self, name, None)]
        if missing:
            raise ConfigurationException(
                f"필수 설정이 누락되었습니다: {', '.join(missing)}"
            )

    class Config:
        env_file = tuple(str(path) for path in _ENV_FILES) if _ENV_FILES else None
        case_sensitive = True
        extra = "ignore"
        frozen = True


# 전역 설정 인스턴스 (시작 시 1회 로드, 이후 변경 불가)
settings = Settings()
