"""
push.py — Mobile push notification channel (FCM legacy HTTP API).

Delivery mechanism:
    • POST {PUSH_API_URL} with ``Authorization: key=<PUSH_SERVER_KEY>``
    • Payload: device token, title/body/sound, data dict, high priority
    • Provider replies with per-token ``success`` / ``failure`` counts

    {
        "to": "<device token>",
        "notification": {"title": "...", "body": "...", "sound": "default"},
        "data": {...},
        "priority": "high"
    }

Transport errors and non-2xx replies raise ``httpx.HTTPError``; the
dispatcher decides whether that is a failed record or a retry.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from avalanche_watch.app.alerts.models import PushResponse
from avalanche_watch.app.core.config import settings

logger = logging.getLogger(__name__)


class PushChannel:
    def __init__(
        self,
        *,
        server_key: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.server_key = server_key if server_key is not None else settings.PUSH_SERVER_KEY
        self.api_url = api_url or settings.PUSH_API_URL
        self._client = httpx.Client(
            timeout=timeout or settings.PUSH_TIMEOUT,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.server_key)

    def deliver(
        self,
        token: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> PushResponse:
        """Send one notification to one device token."""
        payload = {
            "to": token,
            "notification": {
                "title": title,
                "body": body,
                "sound": "default",
            },
            "data": data or {},
            "priority": "high",
        }

        response = self._client.post(
            self.api_url,
            json=payload,
            headers={
                "Authorization": f"key={self.server_key}",
                "Content-Type": "application/json",
            },
        )
        response.raise_for_status()

        try:
            body_json = response.json()
        except ValueError:
            logger.warning("[PUSH] Non-JSON provider reply (%d)", response.status_code)
            body_json = {}
        if not isinstance(body_json, dict):
            body_json = {}

        result = PushResponse(
            success=int(body_json.get("success") or 0),
            failure=int(body_json.get("failure") or 0),
            status_code=response.status_code,
            raw=body_json,
        )
        logger.debug(
            "[PUSH] %s… → success=%d failure=%d",
            token[:12], result.success, result.failure,
        )
        return result

    def close(self) -> None:
        self._client.close()
