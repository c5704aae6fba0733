"""Stripe Billing API 클라이언트"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx


logger = logging.getLogger(__name__)


class StripeAPIError(RuntimeError):
    """Stripe API 오류"""

    def __init__(
        self,
        message: str,
        status_code: int,
        payload: Optional[Dict[str, Any]] = None,
        *,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}
        self.code = code or self._extract_error_code()

    def _extract_error_code(self) -> Optional[str]:
        """응답 페이로드에서 오류 코드를 추출"""

        error = self.payload.get("error") if isinstance(self.payload, dict) else None
        if isinstance(error, dict):
            return error.get("code") or error.get("type")
        return None


@dataclass(frozen=True, slots=True)
class CheckoutSession:
    """체크아웃 세션 중 이 서비스가 읽는 필드만 담은 DTO"""

    session_id: str
    payment_status: Optional[str]
    client_reference_id: Optional[str]
    customer: Optional[str]
    subscription: Optional[str]
    mode: Optional[str] = None
    created: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CheckoutSession":
        def _id_of(value: Any) -> Optional[str]:
            if isinstance(value, dict):
                value = value.get("id")
            return str(value) if value else None

        created_raw = payload.get("created")
        created = None
        if isinstance(created_raw, (int, float)) and not isinstance(created_raw, bool):
            created = datetime.fromtimestamp(float(created_raw), tz=timezone.utc)

        return cls(
            session_id=str(payload.get("id") or ""),
            payment_status=payload.get("payment_status"),
            client_reference_id=payload.get("client_reference_id"),
            customer=_id_of(payload.get("customer")),
            subscription=_id_of(payload.get("subscription")),
            mode=payload.get("mode"),
            created=created,
        )


def encode_form(data: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """Stripe 중첩 폼 인코딩 (metadata[userId]=..., line_items[0][price]=...)"""

    pairs: List[Tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_name = f"{name}[{index}]"
                if isinstance(item, dict):
                    pairs.extend(encode_form(item, item_name))
                else:
                    pairs.append((item_name, _scalar(item)))
        else:
            pairs.append((name, _scalar(value)))
    return pairs


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class StripeBillingClient:
    """Stripe REST API 비동기 클라이언트

    모든 호출은 단일 시도다. 재시도 여부는 호출자(클라이언트 재요청, 웹훅 재전송)가 결정한다.
    """

    ERROR_CODE_MESSAGES: Dict[str, str] = {
        "resource_missing": "요청한 Stripe 리소스를 찾을 수 없습니다.",
        "api_key_expired": "Stripe API 키가 만료되었습니다.",
        "rate_limit": "Stripe API 호출이 너무 많습니다. 잠시 후 다시 시도하세요.",
        "subscription_canceled": "이미 종료된 구독입니다.",
    }

    STATUS_MESSAGES: Dict[int, str] = {
        400: "Stripe API 요청 파라미터가 올바르지 않습니다.",
        401: "Stripe API 인증에 실패했습니다.",
        402: "Stripe 결제 요청이 거절되었습니다.",
        403: "Stripe API 접근 권한이 없습니다.",
        404: "요청한 Stripe 리소스를 찾지 못했습니다.",
        409: "Stripe 리소스 상태 충돌이 발생했습니다.",
        429: "Stripe API 호출이 제한되었습니다. 잠시 후 다시 시도하세요.",
        500: "Stripe API 서버 오류가 발생했습니다.",
        503: "Stripe API 서비스가 일시적으로 불가합니다.",
    }

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.stripe.com",
        timeout: float = 15.0,
    ) -> None:
        if not api_key or not api_key.strip():
            raise ValueError("Stripe 비밀 API 키가 설정되지 않았습니다.")

        self.api_key = api_key.strip()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }
        form = encode_form(data) if data else None
        query = encode_form(params) if params else None

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, headers=headers, data=form, params=query)
        except httpx.RequestError as exc:
            logger.warning(
                "[STRIPE] API request network error: %s %s error=%s",
                method,
                path,
                exc,
            )
            raise StripeAPIError(
                "Stripe API 네트워크 오류가 발생했습니다.",
                status_code=0,
                payload={"error": {"message": str(exc)}},
                code="network_error",
            ) from exc

        if response.status_code >= 400:
            payload = self._safe_json(response)
            message, code = self._resolve_error_message(payload, response.status_code)
            logger.error(
                "[STRIPE] API request failed: %s %s status=%s code=%s",
                method,
                path,
                response.status_code,
                code,
            )
            raise StripeAPIError(message, response.status_code, payload, code=code)

        try:
            return response.json()
        except ValueError as exc:
            logger.error("[STRIPE] API 응답 파싱 실패: %s", exc)
            raise StripeAPIError(
                "Stripe API 응답을 파싱하지 못했습니다",
                response.status_code,
                payload={"error": {"message": str(exc)}},
                code="parse_error",
            ) from exc

    async def retrieve_checkout_session(self, session_id: str) -> Optional[CheckoutSession]:
        """체크아웃 세션 조회 (customer 확장). 존재하지 않으면 None"""

        try:
            payload = await self._request(
                "GET",
                f"/v1/checkout/sessions/{session_id}",
                params={"expand": ["customer"]},
            )
        except StripeAPIError as exc:
            if exc.status_code == 404:
                return None
            raise
        return CheckoutSession.from_payload(payload)

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """구독 세부 정보를 조회"""

        return await self._request("GET", f"/v1/subscriptions/{subscription_id}")

    async def cancel_at_period_end(self, subscription_id: str) -> Dict[str, Any]:
        """현재 결제 주기 종료 시 해지되도록 구독 갱신"""

        return await self._request(
            "POST",
            f"/v1/subscriptions/{subscription_id}",
            data={"cancel_at_period_end": True},
        )

    async def create_customer(self, email: Optional[str], user_id: str) -> Dict[str, Any]:
        """결제사 고객 생성"""

        return await self._request(
            "POST",
            "/v1/customers",
            data={"email": email, "metadata": {"userId": user_id}},
        )

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        user_id: str,
        success_url: str,
        cancel_url: str,
        plan_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """구독 결제용 체크아웃 세션 생성"""

        return await self._request(
            "POST",
            "/v1/checkout/sessions",
            data={
                "customer": customer_id,
                "payment_method_types": ["card"],
                "line_items": [{"price": price_id, "quantity": 1}],
                "mode": "subscription",
                "success_url": success_url,
                "cancel_url": cancel_url,
                "client_reference_id": user_id,
                "metadata": {"userId": user_id, "planId": plan_id or "monthly"},
                "subscription_data": {"metadata": {"userId": user_id, "planId": plan_id or "monthly"}},
                "allow_promotion_codes": True,
                "billing_address_collection": "required",
                "customer_update": {"address": "auto", "name": "auto"},
            },
        )

    def _resolve_error_message(self, payload: Dict[str, Any], status_code: int) -> tuple[str, Optional[str]]:
        """Stripe 오류 응답을 기반으로 메시지와 코드 결정"""

        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            code = error.get("code") or error.get("type")
            if code and code in self.ERROR_CODE_MESSAGES:
                return self.ERROR_CODE_MESSAGES[code], code

            message = error.get("message")
            if isinstance(message, str) and message.strip():
                return message, code

        status_message = self.STATUS_MESSAGES.get(status_code)
        if status_message:
            return status_message, None

        return "Stripe API 요청에 실패했습니다", None

    @staticmethod
    def _safe_json(response: httpx.Response) -> Dict[str, Any]:
        """JSON 파싱 실패 시 안전하게 fallback"""

        try:
            payload = response.json()
            return payload if isinstance(payload, dict) else {"data": payload}
        except ValueError:
            return {"error": {"message": response.text}}
