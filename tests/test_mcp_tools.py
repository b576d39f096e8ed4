import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from wabridge.errors import ConversationNotFoundError, NotReadyError
from wabridge.mcp_tools import WhatsAppTools, create_mcp_server


@pytest.fixture
def backend() -> MagicMock:
    """Backend with the MessagingService / API client surface."""
    m = MagicMock()
    m.get_status = AsyncMock(return_value={"connected": True, "status": "ready"})
    m.list_chats = AsyncMock(return_value=[{"id": "1@c.us", "name": "Alice"}])
    m.get_messages = AsyncMock(return_value=[{"id": "m1", "body": "hi"}])
    m.send_message = AsyncMock(return_value={"messageId": "m2", "to": "1@c.us"})
    m.recent_message = AsyncMock(return_value={"chat": None, "message": None, "noChats": True})
    return m


@pytest.mark.asyncio
async def test_get_chats_returns_json(backend: MagicMock) -> None:
    tools = WhatsAppTools(backend)
    assert json.loads(await tools.get_chats()) == [{"id": "1@c.us", "name": "Alice"}]


@pytest.mark.asyncio
async def test_get_messages_forwards_limit(backend: MagicMock) -> None:
    tools = WhatsAppTools(backend)
    await tools.get_messages("1@c.us", limit=5)
    backend.get_messages.assert_awaited_once_with("1@c.us", 5)


@pytest.mark.asyncio
async def test_send_message_requires_fields(backend: MagicMock) -> None:
    """Empty recipient or body is rejected before reaching the backend."""
    tools = WhatsAppTools(backend)
    assert json.loads(await tools.send_message("", "hi")) == {"error": "Missing required fields: to, message"}
    backend.send_message.assert_not_called()


@pytest.mark.asyncio
async def test_send_message_success(backend: MagicMock) -> None:
    tools = WhatsAppTools(backend)
    assert json.loads(await tools.send_message("1@c.us", "hi")) == {"messageId": "m2", "to": "1@c.us"}


@pytest.mark.asyncio
async def test_bridge_errors_become_error_payloads(backend: MagicMock) -> None:
    """Tool calls never raise bridge errors to the MCP client."""
    backend.list_chats.side_effect = NotReadyError("qr_pending")
    backend.send_message.side_effect = ConversationNotFoundError("9@c.us")
    tools = WhatsAppTools(backend)
    assert json.loads(await tools.get_chats()) == {"error": "WhatsApp not ready. Current status: qr_pending"}
    assert json.loads(await tools.send_message("9", "x")) == {"error": "Chat not found: 9@c.us"}


@pytest.mark.asyncio
async def test_unexpected_errors_become_error_payloads(backend: MagicMock, caplog: pytest.LogCaptureFixture) -> None:
    """Non-bridge failures are logged and still returned as JSON."""
    backend.get_messages.side_effect = ValueError("bad chat id")
    backend.get_status.side_effect = RuntimeError("browser gone")
    tools = WhatsAppTools(backend)
    assert json.loads(await tools.get_messages("x")) == {"error": "bad chat id"}
    assert json.loads(await tools.get_status()) == {"error": "browser gone"}
    assert "failed unexpectedly" in caplog.text


@pytest.mark.asyncio
async def test_recent_message(backend: MagicMock) -> None:
    tools = WhatsAppTools(backend)
    assert json.loads(await tools.get_recent_message())["noChats"] is True


@pytest.mark.asyncio
async def test_server_registers_tools(backend: MagicMock) -> None:
    """All WhatsApp tools are listed by the FastMCP server."""
    server = create_mcp_server(backend)
    names = {tool.name for tool in await server.list_tools()}
    assert names == {"get_status", "get_chats", "get_messages", "send_message", "get_recent_message"}
