"""Dreamina (Jimeng) web API client.

Thin wrapper over the ``/mweb/v1`` endpoints the generators need: upload
tokens, draft submission and history lookups. Every response comes in a
``{ret, errmsg, data}`` envelope; a non-zero ``ret`` raises ProviderError.

The refresh token is supplied by the caller (one per request, taken from the
Authorization header); acquiring it is not this module's job.
"""

from __future__ import annotations

import logging
import random
from typing import Any

import httpx

from genrelay.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/132.0.0.0 Safari/537.36"
)


class ProviderError(Exception):
    """Provider-level failure carried in the response envelope."""

    def __init__(self, message: str, ret: str | None = None, payload: Any = None):
        super().__init__(message)
        self.ret = ret
        self.payload = payload


def split_tokens(authorization: str) -> list[str]:
    """Parse ``Bearer tok1,tok2`` into a token list."""
    value = authorization.strip()
    scheme, _, rest = value.partition(" ")
    if scheme.lower() == "bearer":
        value = rest
    return [t.strip() for t in value.split(",") if t.strip()]


def pick_token(authorization: str) -> str:
    tokens = split_tokens(authorization)
    if not tokens:
        raise ValueError("Authorization header carries no refresh token")
    return random.choice(tokens)


class DreaminaClient:
    """Session-scoped client for one refresh token."""

    def __init__(
        self,
        refresh_token: str,
        *,
        base_url: str | None = None,
        assistant_id: int | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not refresh_token:
            raise ValueError("refresh token is required")
        self.refresh_token = refresh_token
        self.base_url = (base_url or settings.DREAMINA_BASE_URL).rstrip("/")
        self.assistant_id = assistant_id or settings.DREAMINA_ASSISTANT_ID
        self._http_client = http_client

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json, text/plain, */*",
            "Appid": str(self.assistant_id),
            "Cookie": f"sessionid={self.refresh_token}; sessionid_ss={self.refresh_token}",
            "Origin": self.base_url,
            "Referer": f"{self.base_url}/",
            "Pf": "7",
            "User-Agent": _USER_AGENT,
        }

    async def request(
        self,
        method: str,
        uri: str,
        *,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Call ``uri`` and return the unwrapped ``data`` field."""
        query = {
            "aid": self.assistant_id,
            "device_platform": "web",
            "web_version": settings.DREAMINA_WEB_VERSION,
            **(params or {}),
        }
        url = f"{self.base_url}{uri}"
        logger.debug("%s %s", method.upper(), uri)

        resp = await self._get_client().request(
            method.upper(), url, params=query, json=data, headers=self._headers(),
        )
        resp.raise_for_status()
        body = resp.json()

        ret = str(body.get("ret", "0"))
        if ret != "0":
            errmsg = body.get("errmsg") or body.get("message") or "unknown error"
            logger.warning("Provider error on %s: ret=%s errmsg=%s", uri, ret, errmsg)
            raise ProviderError(f"{uri} failed: [{ret}] {errmsg}", ret=ret, payload=body)
        return body.get("data")

    async def get_upload_token(self, scene: int) -> dict[str, Any]:
        return await self.request("post", "/mweb/v1/get_upload_token", data={"scene": scene}) or {}

    async def submit_generation(self, data: dict[str, Any], params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Submit a draft; returns ``aigc_data`` (carries ``history_record_id``)."""
        result = await self.request("post", "/mweb/v1/aigc_draft/generate", data=data, params=params) or {}
        aigc_data = result.get("aigc_data")
        if not aigc_data:
            raise ProviderError("generation submit returned no aigc_data", payload=result)
        return aigc_data

    async def get_history_by_ids(self, history_ids: list[str]) -> dict[str, Any]:
        return await self.request(
            "post", "/mweb/v1/get_history_by_ids", data={"history_ids": history_ids},
        ) or {}

    async def get_history_records(self, history_ids: list[str]) -> dict[str, Any]:
        return await self.request(
            "post", "/mweb/v1/get_history_records", data={"history_record_ids": history_ids},
        ) or {}
