"""WhatsApp tools exposed over the Model Context Protocol."""

import json
import logging
from typing import Any, Awaitable, Dict, List, Protocol

from mcp.server.fastmcp import FastMCP

from .errors import BridgeError

logger = logging.getLogger(__name__)


class WhatsAppBackend(Protocol):
    async def get_status(self) -> Dict[str, Any]: ...

    async def list_chats(self) -> List[Dict[str, Any]]: ...

    async def get_messages(self, chat_id: str, limit: int | None = None) -> List[Dict[str, Any]]: ...

    async def send_message(self, to: str, message: str) -> Dict[str, Any]: ...

    async def recent_message(self) -> Dict[str, Any]: ...


def _error(e: Exception) -> str:
    return json.dumps({"error": str(e)})


class WhatsAppTools:
    """Tool implementations; each returns a JSON string."""

    def __init__(self, backend: WhatsAppBackend) -> None:
        self._backend = backend

    async def _run(self, name: str, call: Awaitable[Any]) -> str:
        try:
            return json.dumps(await call, indent=2)
        except BridgeError as e:
            logger.warning("%s failed: %s", name, e)
            return _error(e)
        except Exception as e:
            logger.exception("%s failed unexpectedly: %s", name, e)
            return _error(e)

    async def get_status(self) -> str:
        """Get the WhatsApp Web connection status (ready, qr_pending, error, ...)."""
        return await self._run("get_status", self._backend.get_status())

    async def get_chats(self) -> str:
        """List WhatsApp chats with id, name, last activity timestamp and unread count."""
        return await self._run("get_chats", self._backend.list_chats())

    async def get_messages(self, chat_id: str, limit: int = 20) -> str:
        """Get the latest messages of a chat (e.g. 15551234567@c.us or a bare phone number)."""
        return await self._run(f"get_messages {chat_id}", self._backend.get_messages(chat_id, limit))

    async def send_message(self, to: str, message: str) -> str:
        """Send a text message to a chat id or phone number."""
        if not to or not message:
            return json.dumps({"error": "Missing required fields: to, message"})
        return await self._run(f"send_message to {to}", self._backend.send_message(to, message))

    async def get_recent_message(self) -> str:
        """Get the most recently active chat and its last message."""
        return await self._run("get_recent_message", self._backend.recent_message())


def create_mcp_server(backend: WhatsAppBackend, **settings: Any) -> FastMCP:
    """Build the FastMCP server with all WhatsApp tools registered."""
    tools = WhatsAppTools(backend)
    mcp = FastMCP("WhatsApp Web", **settings)
    mcp.add_tool(tools.get_status, name="get_status")
    mcp.add_tool(tools.get_chats, name="get_chats")
    mcp.add_tool(tools.get_messages, name="get_messages")
    mcp.add_tool(tools.send_message, name="send_message")
    mcp.add_tool(tools.get_recent_message, name="get_recent_message")
    return mcp
