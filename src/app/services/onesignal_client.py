"""OneSignal 푸시 알림 API 클라이언트"""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx


logger = logging.getLogger(__name__)


class OneSignalAPIError(RuntimeError):
    """OneSignal API 오류"""

    def __init__(self, message: str, status_code: int, payload: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


@dataclass(frozen=True, slots=True)
class NotificationJob:
    """단발성 알림 작업 (저장하지 않음)"""

    recipient_handle: str
    title: str
    body: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class OneSignalClient:
    """OneSignal REST API 비동기 클라이언트"""

    def __init__(
        self,
        app_id: str,
        rest_api_key: str,
        api_url: str = "https://onesignal.com/api/v1/notifications",
        timeout: float = 10.0,
        *,
        android_group: str = "mindful_family",
    ) -> None:
        if not app_id or not rest_api_key:
            raise ValueError("OneSignal 앱 ID와 REST API 키가 필요합니다.")

        self.app_id = app_id
        self.api_url = api_url
        self.timeout = timeout
        self.android_group = android_group
        token = base64.b64encode(f"{rest_api_key}:".encode("utf-8")).decode("ascii")
        self._auth_header = f"Basic {token}"

    def build_payload(self, job: NotificationJob) -> Dict[str, Any]:
        return {
            "app_id": self.app_id,
            "include_player_ids": [job.recipient_handle],
            "contents": {"en": job.body},
            "headings": {"en": job.title},
            "data": job.metadata,
            "ios_badgeType": "Increase",
            "ios_badgeCount": 1,
            "android_group": self.android_group,
            "android_group_message": {"en": "You have $[notif_count] new notifications"},
            "priority": 10,
        }

    async def send(self, job: NotificationJob) -> Dict[str, Any]:
        """알림 전송. 실패 시 OneSignalAPIError"""

        headers = {
            "Authorization": self._auth_header,
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.api_url, headers=headers, json=self.build_payload(job))
        except httpx.RequestError as exc:
            raise OneSignalAPIError(f"OneSignal 네트워크 오류: {exc}", status_code=0) from exc

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = {"errors": [response.text]}
            errors = payload.get("errors") if isinstance(payload, dict) else None
            first_error = errors[0] if isinstance(errors, list) and errors else "Unknown error"
            raise OneSignalAPIError(
                f"OneSignal API error: {first_error}",
                status_code=response.status_code,
                payload=payload if isinstance(payload, dict) else None,
            )

        try:
            return response.json()
        except ValueError:
            return {}
