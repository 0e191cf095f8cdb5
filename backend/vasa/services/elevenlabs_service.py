# backend/vasa/services/elevenlabs_service.py
from __future__ import annotations

import hmac
import time
from hashlib import sha256
from typing import Optional

import httpx

from vasa.config import settings
from vasa.utils.logger import logger
from vasa.utils.retry import (
    async_retry,
    check_rate_limit_response,
    RateLimitError,
    RetryError,
)


class ElevenLabsService:
    def __init__(
        self,
        api_key: Optional[str] = None,
        agent_id: Optional[str] = None,
        webhook_secret: Optional[str] = None,
    ):
        self.api_key = (api_key if api_key is not None else settings.ELEVENLABS_API_KEY or "").strip()
        self.agent_id = (agent_id if agent_id is not None else settings.ELEVENLABS_AGENT_ID or "").strip()
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.ELEVENLABS_WEBHOOK_SECRET or ""
        ).strip()

        self.base_url = "https://api.elevenlabs.io"
        self._http = httpx.AsyncClient(timeout=25)

        if not self.api_key:
            logger.warning("ELEVENLABS_API_KEY is missing")
        if not self.agent_id:
            logger.warning("ELEVENLABS_AGENT_ID is missing")

    @property
    def webhook_security_enabled(self) -> bool:
        return bool(self.webhook_secret)

    async def get_signed_url(self, agent_id: Optional[str] = None) -> Optional[str]:
        """
        Signed websocket URL for a private conversational agent.
        Returns None when the API key is missing or the call fails.
        """
        agent = (agent_id or self.agent_id or "").strip()
        if not self.api_key or not agent:
            logger.warning("Cannot request signed URL: ElevenLabs API key or agent id missing")
            return None

        url = f"{self.base_url}/v1/convai/conversation/get_signed_url"

        @async_retry(
            max_attempts=3,
            initial_delay=2.0,
            max_delay=30.0,
            backoff_factor=2.0,
            retryable_exceptions=(
                httpx.TimeoutException,
                httpx.ConnectError,
                httpx.ReadError,
                RateLimitError,
            ),
            operation_name="elevenlabs_signed_url",
        )
        async def _fetch() -> Optional[str]:
            resp = await self._http.get(url, headers={"xi-api-key": self.api_key}, params={"agent_id": agent})
            check_rate_limit_response(resp)

            if resp.status_code >= 500:
                raise httpx.ReadError(f"Server error {resp.status_code}")
            if resp.status_code >= 400:
                logger.error(f"ElevenLabs signed-url error {resp.status_code}: {resp.text[:500]}")
                return None

            return resp.json().get("signed_url")

        try:
            return await _fetch()
        except RetryError as e:
            logger.error(f"ElevenLabs signed-url failed after retries: {e}")
            return None

    def verify_webhook_signature(
        self,
        *,
        raw_body: bytes,
        signature_header: Optional[str],
        tolerance_seconds: int = 30 * 60,
    ) -> bool:
        """
        Verifies ElevenLabs webhook signature.
        Header example: "t=timestamp,v0=hash"
        hash = HMAC_SHA256(secret, f"{timestamp}.{body}")
        """
        if not self.webhook_secret:
            logger.warning("ELEVENLABS_WEBHOOK_SECRET missing; webhook verification will fail.")
            return False

        if not signature_header:
            return False

        parts = [p.strip() for p in signature_header.split(",")]
        t_part = next((p for p in parts if p.startswith("t=")), "")
        v0_part = next((p for p in parts if p.startswith("v0=")), "")
        if not t_part or not v0_part:
            return False

        try:
            ts = int(t_part[2:])
        except ValueError:
            return False
        if ts < int(time.time()) - tolerance_seconds:
            return False

        msg = f"{ts}.".encode("utf-8") + raw_body
        mac = hmac.new(self.webhook_secret.encode("utf-8"), msg=msg, digestmod=sha256)
        expected = "v0=" + mac.hexdigest()

        return hmac.compare_digest(v0_part, expected)

    async def aclose(self) -> None:
        await self._http.aclose()
