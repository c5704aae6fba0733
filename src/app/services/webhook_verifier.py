"""
웹훅 발신자 검증

Stripe-Signature (HMAC-SHA256) 와 RevenueCat 공유 비밀 헤더를 검증한다.
검증 실패 사유는 서버 로그에만 남기고, 호출자에게는 동일한 인증 실패만 전달한다.
"""
import hashlib
import hmac
import logging
import time
from typing import Callable, Dict, List, Optional

from core.responses import AuthenticationException, ConfigurationException

logger = logging.getLogger(__name__)


class StripeSignatureVerifier:
    """Stripe 웹훅 서명 검증기"""

    SCHEME = "v1"

    def __init__(
        self,
        secret: str,
        tolerance_seconds: int = 300,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret or not secret.strip():
            raise ConfigurationException("Stripe 웹훅 서명 비밀키가 설정되지 않았습니다.")

        self._secret = secret.strip().encode("utf-8")
        self.tolerance_seconds = max(0, int(tolerance_seconds))
        self._clock = clock

    def verify(self, raw: bytes, signature: Optional[str]) -> None:
        """원문 바이트와 서명 헤더가 일치하지 않으면 AuthenticationException"""

        if not signature:
            logger.warning("[STRIPE] missing Stripe-Signature header")
            raise AuthenticationException()

        timestamp, candidates = self._parse_header(signature)
        if timestamp is None or not candidates:
            logger.warning("[STRIPE] signature header missing t/v1 component")
            raise AuthenticationException()

        expected = self.compute_signature(timestamp, raw)
        if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
            logger.error("[STRIPE] signature mismatch")
            raise AuthenticationException()

        if self.tolerance_seconds and abs(self._clock() - timestamp) > self.tolerance_seconds:
            logger.error("[STRIPE] signature timestamp outside tolerance window")
            raise AuthenticationException()

    def compute_signature(self, timestamp: int, raw: bytes) -> str:
        payload = str(timestamp).encode("utf-8") + b"." + raw
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def _parse_header(self, signature: str) -> tuple[Optional[int], List[str]]:
        parts: Dict[str, List[str]] = {}
        for chunk in signature.split(","):
            chunk = chunk.strip()
            if not chunk or "=" not in chunk:
                continue
            k, v = chunk.split("=", 1)
            parts.setdefault(k.strip(), []).append(v.strip())

        timestamp: Optional[int] = None
        raw_ts = parts.get("t")
        if raw_ts:
            try:
                timestamp = int(raw_ts[0])
            except ValueError:
                timestamp = None

        return timestamp, parts.get(self.SCHEME, [])


class SharedSecretVerifier:
    """공유 비밀 헤더 검증기 (RevenueCat Authorization 헤더)"""

    def __init__(self, secret: str, provider: str = "revenuecat") -> None:
        if not secret or not secret.strip():
            raise ConfigurationException(f"{provider} 웹훅 비밀값이 설정되지 않았습니다.")

        self._secret = secret.strip().encode("utf-8")
        self.provider = provider

    def verify(self, header_value: Optional[str]) -> None:
        if not header_value:
            logger.warning("[%s] missing webhook authorization header", self.provider.upper())
            raise AuthenticationException()

        provided = header_value.strip()
        if provided.lower().startswith("bearer "):
            provided = provided[7:].strip()

        if not hmac.compare_digest(self._secret, provided.encode("utf-8")):
            logger.error("[%s] webhook secret mismatch", self.provider.upper())
            raise AuthenticationException()
