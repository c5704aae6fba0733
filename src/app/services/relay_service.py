"""
웹훅 릴레이

다른 네트워크 엣지로 들어온 웹훅을 정식 처리 엔드포인트로 그대로 전달한다.
본문은 파싱/재직렬화하지 않는다 (서명 검증이 원문 바이트 기준이므로).
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Tuple

import httpx

from core.responses import ExternalServiceException

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RelayResponse:
    status_code: int
    content: bytes
    media_type: Optional[str]


class WebhookRelay:
    """정식 엔드포인트로의 단일 전달기"""

    DEFAULT_FORWARD_HEADERS: Tuple[str, ...] = ("content-type", "stripe-signature")

    def __init__(
        self,
        target_url: str,
        forward_headers: Iterable[str] = DEFAULT_FORWARD_HEADERS,
        timeout: float = 15.0,
    ) -> None:
        if not target_url:
            raise ValueError("릴레이 대상 URL이 필요합니다.")
        self.target_url = target_url
        self.forward_headers = tuple(h.lower() for h in forward_headers)
        self.timeout = timeout

    async def forward(self, method: str, headers: Mapping[str, str], body: bytes) -> RelayResponse:
        """요청을 전달하고 대상의 상태/본문을 그대로 반환"""

        outbound = {}
        for name in self.forward_headers:
            value = headers.get(name)
            if value is not None:
                outbound[name] = value

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, self.target_url, headers=outbound, content=body)
        except httpx.HTTPError as exc:
            logger.error("[RELAY] forward failed: %s %s error=%s", method, self.target_url, exc)
            raise ExternalServiceException("webhook relay", "Failed to process webhook") from exc

        logger.info("[RELAY] forwarded: len=%s status=%s", len(body), response.status_code)
        return RelayResponse(
            status_code=response.status_code,
            content=response.content,
            media_type=response.headers.get("content-type"),
        )
