import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))


class FakeClient:
    """In-memory messaging client; tests drive its lifecycle through emit()."""

    def __init__(
        self,
        chats: Optional[List[Dict[str, Any]]] = None,
        messages: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        init_error: Optional[Exception] = None,
    ) -> None:
        self.chats = chats or []
        self.messages = messages or {}
        self.init_error = init_error
        self.listeners: List[Any] = []
        self.initialized = False
        self.closed = False
        self.sent: List[tuple] = []

    def subscribe(self, listener: Any) -> None:
        self.listeners.append(listener)

    def emit(self, event: Any) -> None:
        for listener in list(self.listeners):
            listener(event)

    async def initialize(self) -> None:
        if self.init_error is not None:
            raise self.init_error
        self.initialized = True

    async def list_conversations(self) -> List[Any]:
        return list(self.chats)

    async def get_conversation(self, conversation_id: str) -> Optional[Any]:
        for chat in self.chats:
            if chat["id"] == conversation_id:
                return chat
        return None

    async def send_message(self, conversation_id: str, body: str) -> Any:
        self.sent.append((conversation_id, body))
        return {"id": {"_serialized": f"true_{conversation_id}_3EB0"}}

    async def fetch_messages(self, conversation_id: str, limit: int = 20) -> List[Any]:
        return self.messages.get(conversation_id, [])[-limit:]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def chats() -> List[Dict[str, Any]]:
    return [
        {"id": {"_serialized": "15550001111@c.us"}, "name": "Alice", "timestamp": 1700000000, "unreadCount": 1},
        {"id": "12036304@g.us", "name": "Team", "timestamp": 1700000500, "isGroup": True},
        {"id": {"user": "15550002222", "server": "c.us"}, "name": "Bob", "timestamp": None},
    ]


@pytest.fixture
def messages() -> Dict[str, List[Dict[str, Any]]]:
    return {
        "12036304@g.us": [
            {"id": "false_12036304@g.us_A1", "body": "hi", "timestamp": 1700000400, "from": "12036304@g.us"},
            {"id": "true_12036304@g.us_A2", "body": "hello", "timestamp": 1700000500, "fromMe": True,
             "from": "12036304@g.us"},
        ],
    }


@pytest.fixture
def fake_client(chats, messages) -> FakeClient:
    return FakeClient(chats=chats, messages=messages)
