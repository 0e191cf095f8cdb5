# backend/vasa/services/mem0_service.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

import httpx

from vasa.config import settings
from vasa.utils.logger import logger
from vasa.utils.retry import check_rate_limit_response, mem0_retry


class Mem0Error(Exception):
    """Mem0 answered with a client error or could not be reached."""


def _results(data: Any) -> List[Dict[str, Any]]:
    # v1 endpoints answer with either a bare list or {"results": [...]}
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return list(data.get("results") or data.get("memories") or [])
    return []


class Mem0Service:
    """Thin client for the hosted Mem0 REST API."""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = (api_key if api_key is not None else settings.MEM0_API_KEY or "").strip()
        self.base_url = (base_url or settings.MEM0_BASE_URL).rstrip("/")
        self._http = httpx.AsyncClient(timeout=20)

        if not self.api_key:
            logger.warning("MEM0_API_KEY is missing")

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Token {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        if not self.api_key:
            raise Mem0Error("MEM0_API_KEY missing")

        resp = await self._http.request(method, f"{self.base_url}{path}", headers=self._headers(), **kwargs)
        check_rate_limit_response(resp)

        if resp.status_code >= 500:
            # transient: reads retry via mem0_retry, writes via TurnWriter
            raise httpx.ReadError(f"Mem0 server error {resp.status_code}")
        if resp.status_code >= 400:
            logger.error(f"Mem0 {method} {path} error {resp.status_code}: {resp.text[:500]}")
            raise Mem0Error(f"Mem0 error {resp.status_code}")

        if not resp.content:
            return {}
        return resp.json()

    async def add(
        self,
        content: Union[str, List[Dict[str, str]]],
        user_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Store a memory. `content` is plain text or a list of {role, content} messages.

        Not retried here: callers write through TurnWriter, which owns the
        single retry.
        """
        messages = [{"role": "user", "content": content}] if isinstance(content, str) else list(content)
        payload: Dict[str, Any] = {"messages": messages, "user_id": user_id}
        if metadata:
            payload["metadata"] = metadata

        logger.info(f"[Mem0] Adding memory for user {user_id} ({len(messages)} messages)")
        return await self._request("POST", "/v1/memories/", json=payload)

    @mem0_retry()
    async def search(self, user_id: str, query: str, limit: int = 5) -> List[Dict[str, Any]]:
        payload = {"query": query, "user_id": user_id, "limit": limit}
        data = await self._request("POST", "/v1/memories/search/", json=payload)
        return _results(data)[:limit]

    @mem0_retry()
    async def get_all(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/v1/memories/", params={"user_id": user_id})
        return _results(data)[:limit]

    @mem0_retry()
    async def delete_all(self, user_id: str) -> Any:
        logger.warning(f"[Mem0] Deleting all memories for user {user_id}")
        return await self._request("DELETE", "/v1/memories/", params={"user_id": user_id})

    async def aclose(self) -> None:
        await self._http.aclose()
