# User value: This file gives every outbound service call the same timeout, auth header and failure classification so users see consistent retry guidance.
import logging
from typing import Any, Optional

import httpx

from config import HTTP_TIMEOUT_SEC, SERVICE_API_TOKEN

logger = logging.getLogger("api.http")


def is_transient_status(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


def response_message(response: httpx.Response, default: str) -> str:
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:300] or default
    if isinstance(body, dict):
        for key in ("message", "error_message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return default


# Services answer either bare objects or {"success": ..., "data": {...}} envelopes.
def unwrap_data(payload: Any) -> dict:
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        return payload["data"]
    if isinstance(payload, dict):
        return payload
    return {}


class ServiceHttpClient:
    """Thin async httpx wrapper shared by the registration, extraction and profile clients."""

    service_name = "service"

    def __init__(
        self,
        base_url: str,
        *,
        token: str = SERVICE_API_TOKEN,
        timeout: float = HTTP_TIMEOUT_SEC,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._http

    async def _send(self, method: str, path: str, *, json: Any = None) -> httpx.Response:
        response = await self._client().request(method, path, json=json)
        logger.debug(
            "service_call service=%s method=%s path=%s status=%s",
            self.service_name,
            method,
            path,
            response.status_code,
        )
        return response

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None
