import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..errors import FetchTimeoutError
from ..models import ChatSummary, FetchKind, FetchRequest, FetchResult, MessageSummary, utcnow

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT_SECONDS = 15.0
PLACEHOLDER = "placeholder"

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)

StrategyFn = Callable[[Any, FetchRequest], Awaitable[Optional[Sequence[Any]]]]


@dataclass(frozen=True)
class FetchStrategy:
    name: str
    fn: StrategyFn


# In-page accessors, used when the client API itself is unreliable. They scrape
# the rendered DOM.
CHATS_SCRIPT = """
() => {
  const rows = document.querySelectorAll('#pane-side [role="listitem"], #pane-side [role="row"]');
  return Array.from(rows).map(row => {
    const title = row.querySelector('span[title]');
    const name = title ? title.getAttribute('title') : '';
    return { id: name, name: name, timestamp: null, isGroup: false, unreadCount: 0 };
  }).filter(c => c.name);
}
"""

MESSAGES_SCRIPT = """
({ chatId, limit }) => {
  const rows = document.querySelectorAll('#main [data-id]');
  return Array.from(rows)
    .filter(row => row.getAttribute('data-id').includes(chatId))
    .slice(-limit)
    .map(row => {
      const dataId = row.getAttribute('data-id');
      const text = row.querySelector('.copyable-text span, span.selectable-text');
      return {
        id: dataId,
        body: text ? text.innerText : '',
        timestamp: null,
        from: chatId,
        fromMe: dataId.startsWith('true_'),
        type: 'chat'
      };
    });
}
"""


# Raw record helpers


def _get(raw: Any, *names: str, default: Any = None) -> Any:
    """Read the first present field from a dict or an object."""
    for name in names:
        if isinstance(raw, dict):
            if raw.get(name) is not None:
                return raw[name]
        else:
            value = getattr(raw, name, None)
            if value is not None:
                return value
    return default


def serialize_id(value: Any) -> str:
    """Coerce a WhatsApp id (dict, object or scalar) to its serialized string."""
    if value is None:
        raise ValueError("record has no id")
    if isinstance(value, str):
        return value
    serialized = _get(value, "_serialized")
    if serialized is not None:
        return str(serialized)
    user = _get(value, "user")
    server = _get(value, "server")
    if user is not None and server is not None:
        return f"{user}@{server}"
    return str(value)


def to_datetime(value: Any) -> Optional[datetime]:
    """Convert epoch seconds to a UTC datetime; missing or invalid -> None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def normalize_chat(raw: Any) -> ChatSummary:
    return ChatSummary(
        id=serialize_id(_get(raw, "id")),
        name=str(_get(raw, "name", "formattedTitle", default="")),
        timestamp=to_datetime(_get(raw, "timestamp", "t")),
        is_group=bool(_get(raw, "isGroup", "is_group", default=False)),
        unread_count=int(_get(raw, "unreadCount", "unread_count", default=0)),
    )


def normalize_message(raw: Any) -> MessageSummary:
    sender = _get(raw, "from", "sender", default="")
    return MessageSummary(
        id=serialize_id(_get(raw, "id")),
        body=str(_get(raw, "body", default="")),
        timestamp=to_datetime(_get(raw, "timestamp", "t")),
        sender=serialize_id(sender) if sender else "",
        from_me=bool(_get(raw, "fromMe", "from_me", default=False)),
        type=str(_get(raw, "type", default="chat")),
    )


_NORMALIZERS: Dict[FetchKind, Callable[[Any], Any]] = {
    FetchKind.CONVERSATIONS: normalize_chat,
    FetchKind.MESSAGES: normalize_message,
}


def format_chat_id(chat_id: str) -> str:
    """Append the personal-chat suffix to bare phone numbers."""
    chat_id = chat_id.strip()
    return chat_id if "@" in chat_id else f"{chat_id}@c.us"


def most_recent(records: Sequence[Any]) -> Optional[Any]:
    """Return the record with the newest timestamp; missing timestamps sort last."""
    if not records:
        return None
    ordered = sorted(records, key=lambda r: r.timestamp or _EPOCH, reverse=True)
    return ordered[0]


def placeholder_record(request: FetchRequest) -> Any:
    if request.kind is FetchKind.CONVERSATIONS:
        return ChatSummary(
            id="placeholder-chat",
            name="No chats available (fallback)",
            timestamp=utcnow(),
        )
    return MessageSummary(
        id="placeholder-message",
        body="No messages available (fallback)",
        timestamp=utcnow(),
        sender=request.conversation_id or "",
    )


# Default strategies, most authoritative first


async def _primary_conversations(handle: Any, request: FetchRequest) -> Optional[Sequence[Any]]:
    return await handle.list_conversations()


async def _cached_conversations(handle: Any, request: FetchRequest) -> Optional[Sequence[Any]]:
    cached = getattr(handle, "cached_conversations", None)
    if inspect.isawaitable(cached):
        cached = await cached
    return list(cached) if cached else None


async def _store_conversations(handle: Any, request: FetchRequest) -> Optional[Sequence[Any]]:
    store = getattr(handle, "store", None)
    get_chats = getattr(store, "get_chats", None)
    if not callable(get_chats):
        return None
    return await get_chats()


async def _in_page_conversations(handle: Any, request: FetchRequest) -> Optional[Sequence[Any]]:
    evaluate = getattr(handle, "evaluate", None)
    if not callable(evaluate):
        return None
    return await evaluate(CHATS_SCRIPT)


async def _primary_messages(handle: Any, request: FetchRequest) -> Optional[Sequence[Any]]:
    return await handle.fetch_messages(request.conversation_id, limit=request.limit)


async def _conversation_messages(handle: Any, request: FetchRequest) -> Optional[Sequence[Any]]:
    conversation = await handle.get_conversation(request.conversation_id)
    fetch = getattr(conversation, "fetch_messages", None)
    if not callable(fetch):
        return None
    return await fetch(limit=request.limit)


async def _in_page_messages(handle: Any, request: FetchRequest) -> Optional[Sequence[Any]]:
    evaluate = getattr(handle, "evaluate", None)
    if not callable(evaluate):
        return None
    return await evaluate(
        MESSAGES_SCRIPT, {"chatId": request.conversation_id, "limit": request.limit}
    )


DEFAULT_STRATEGIES: Dict[FetchKind, List[FetchStrategy]] = {
    FetchKind.CONVERSATIONS: [
        FetchStrategy("primary", _primary_conversations),
        FetchStrategy("cached", _cached_conversations),
        FetchStrategy("store", _store_conversations),
        FetchStrategy("in_page", _in_page_conversations),
    ],
    FetchKind.MESSAGES: [
        FetchStrategy("primary", _primary_messages),
        FetchStrategy("conversation", _conversation_messages),
        FetchStrategy("in_page", _in_page_messages),
    ],
}


class ResilientFetcher:
    """Retrieves collections through an ordered chain of fallback strategies.

    Strategies run one after another; the first non-empty result wins. A
    failing or empty strategy is logged and skipped. When all of them fail the
    result holds a single placeholder record. The chain as a whole is raced
    against ``timeout_seconds``; on expiry ``FetchTimeoutError`` is raised.
    """

    def __init__(
        self,
        strategies: Optional[Dict[FetchKind, List[FetchStrategy]]] = None,
        timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
    ) -> None:
        self._strategies = dict(DEFAULT_STRATEGIES)
        if strategies:
            self._strategies.update(strategies)
        self._timeout = timeout_seconds

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def strategies_for(self, kind: FetchKind) -> List[FetchStrategy]:
        return list(self._strategies.get(kind, []))

    async def fetch_collection(self, handle: Any, request: FetchRequest) -> FetchResult:
        try:
            return await asyncio.wait_for(self._run_chain(handle, request), self._timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Fetching %s timed out after %gs", request.kind.value, self._timeout
            )
            raise FetchTimeoutError(self._timeout) from None

    async def _run_chain(self, handle: Any, request: FetchRequest) -> FetchResult:
        normalize = _NORMALIZERS[request.kind]
        for strategy in self.strategies_for(request.kind):
            try:
                raw = await strategy.fn(handle, request)
                if not raw:
                    logger.debug("Strategy %s returned no %s", strategy.name, request.kind.value)
                    continue
                records = [normalize(item) for item in raw]
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    "Strategy %s failed for %s: %s", strategy.name, request.kind.value, e
                )
                continue

            if request.kind is FetchKind.MESSAGES and request.limit > 0:
                records = records[-request.limit:]
            logger.debug(
                "Strategy %s returned %d %s", strategy.name, len(records), request.kind.value
            )
            return FetchResult(kind=request.kind, records=records, strategy=strategy.name)

        logger.warning("All %s strategies exhausted; returning placeholder", request.kind.value)
        return FetchResult(
            kind=request.kind,
            records=[placeholder_record(request)],
            strategy=PLACEHOLDER,
            placeholder=True,
        )
