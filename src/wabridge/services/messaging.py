import logging
from typing import Any, Dict, List

from ..errors import ConversationNotFoundError, NotReadyError
from ..models import FetchKind, FetchRequest, FetchResult, isoformat, utcnow
from .fetcher import ResilientFetcher, format_chat_id, most_recent, serialize_id
from .lifecycle import SessionLifecycle

logger = logging.getLogger(__name__)


class MessagingService:
    """WhatsApp operations gated on session readiness.

    Shared by the REST API and the in-process MCP tools. Every method returns
    JSON-ready dicts.
    """

    def __init__(
        self,
        lifecycle: SessionLifecycle,
        fetcher: ResilientFetcher,
        default_limit: int = 20,
    ) -> None:
        self.lifecycle = lifecycle
        self.fetcher = fetcher
        self.default_limit = default_limit

    def _require_handle(self) -> Any:
        handle = self.lifecycle.get_handle()
        if handle is None:
            raise NotReadyError(self.lifecycle.get_status().status.value)
        return handle

    async def get_status(self) -> Dict[str, Any]:
        snapshot = self.lifecycle.get_status()
        return {
            "connected": snapshot.ready,
            "status": snapshot.status.value,
            "error": snapshot.last_error,
            "timestamp": isoformat(utcnow()),
        }

    async def fetch_chats(self) -> FetchResult:
        handle = self._require_handle()
        return await self.fetcher.fetch_collection(
            handle, FetchRequest(kind=FetchKind.CONVERSATIONS)
        )

    async def fetch_messages(self, chat_id: str, limit: int | None = None) -> FetchResult:
        handle = self._require_handle()
        request = FetchRequest(
            kind=FetchKind.MESSAGES,
            conversation_id=format_chat_id(chat_id),
            limit=limit or self.default_limit,
        )
        return await self.fetcher.fetch_collection(handle, request)

    async def list_chats(self) -> List[Dict[str, Any]]:
        return (await self.fetch_chats()).to_list()

    async def get_messages(self, chat_id: str, limit: int | None = None) -> List[Dict[str, Any]]:
        return (await self.fetch_messages(chat_id, limit)).to_list()

    async def send_message(self, to: str, message: str) -> Dict[str, Any]:
        """Send ``message`` to an existing chat.

        Raises:
            NotReadyError: session is not ready.
            ConversationNotFoundError: the chat cannot be resolved.
            UnsupportedRecipientError: the client cannot deliver to this chat.
        """
        handle = self._require_handle()
        chat_id = format_chat_id(to)
        try:
            conversation = await handle.get_conversation(chat_id)
        except Exception as e:
            logger.warning("Error getting chat by id %s: %s", chat_id, e)
            raise ConversationNotFoundError(chat_id) from e
        if conversation is None:
            raise ConversationNotFoundError(chat_id)

        result = await handle.send_message(chat_id, message)
        message_id = "sent"
        raw_id = result.get("id") if isinstance(result, dict) else getattr(result, "id", None)
        if raw_id is not None:
            message_id = serialize_id(raw_id)
        logger.info("Message sent to %s", chat_id)
        return {"messageId": message_id, "to": chat_id}

    async def recent_message(self) -> Dict[str, Any]:
        """Return the most recent chat and its last message."""
        chats = await self.fetch_chats()
        if chats.placeholder:
            return {"chat": None, "message": None, "noChats": True}

        chat = most_recent(chats.records)
        messages = await self.fetch_messages(chat.id, limit=1)
        message = None if messages.placeholder else messages.records[-1].to_dict()
        return {
            "chat": {"id": chat.id, "name": chat.name, "isGroup": chat.is_group},
            "message": message,
        }
