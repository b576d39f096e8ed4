import logging
from typing import Any, Dict, List

import httpx

from .errors import (
    ConversationNotFoundError,
    FetchTimeoutError,
    NotReadyError,
    UnauthorizedError,
    UpstreamError,
)

logger = logging.getLogger(__name__)


class WhatsAppApiClient:
    """Client for a remote wabridge REST API.

    Exposes the same coroutine methods as ``MessagingService`` so the MCP
    tools can run against either.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"X-API-Key": api_key} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("WhatsApp API %s %s timed out: %s", method, path, e)
            raise FetchTimeoutError(self._client.timeout.read or 0) from e
        except httpx.HTTPError as e:
            logger.warning("WhatsApp API %s %s failed: %s", method, path, e)
            raise UpstreamError(502, f"WhatsApp API unreachable: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {"error": response.text}

        if response.is_success:
            return payload

        message = str(payload.get("error") or payload.get("message") or response.reason_phrase)
        status = response.status_code
        logger.debug("WhatsApp API %s %s -> %s: %s", method, path, status, message)
        if status == 401:
            raise UnauthorizedError(message)
        if status == 503:
            raise NotReadyError(str(payload.get("status", "unknown")))
        if status == 404:
            raise ConversationNotFoundError(kwargs.get("json", {}).get("to") or path)
        if status == 504:
            raise FetchTimeoutError(self._client.timeout.read or 0)
        raise UpstreamError(status, message)

    async def get_status(self) -> Dict[str, Any]:
        payload = await self._request("GET", "/status")
        return {
            "connected": payload.get("connected", False),
            "status": payload.get("status"),
            "error": payload.get("error"),
            "timestamp": payload.get("timestamp"),
        }

    async def list_chats(self) -> List[Dict[str, Any]]:
        payload = await self._request("GET", "/chats")
        return payload.get("chats", [])

    async def get_messages(self, chat_id: str, limit: int | None = None) -> List[Dict[str, Any]]:
        params = {"limit": limit} if limit else None
        payload = await self._request("GET", f"/chats/{chat_id}/messages", params=params)
        return payload.get("messages", [])

    async def send_message(self, to: str, message: str) -> Dict[str, Any]:
        payload = await self._request("POST", "/send", json={"to": to, "message": message})
        return {"messageId": payload.get("messageId"), "to": payload.get("to", to)}

    async def recent_message(self) -> Dict[str, Any]:
        payload = await self._request("GET", "/recent-message")
        payload.pop("success", None)
        return payload
