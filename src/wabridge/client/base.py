"""Interface of the WhatsApp Web client the bridge drives.

The client reports its lifecycle through a closed set of event classes. Any
implementation (browser automation, a test double) only has to emit these
events to the subscribed listener and provide the data operations below.
"""

from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol, Union


@dataclass(frozen=True)
class QrIssued:
    payload: str


@dataclass(frozen=True)
class Authenticated:
    pass


@dataclass(frozen=True)
class Ready:
    pass


@dataclass(frozen=True)
class AuthFailed:
    reason: str


@dataclass(frozen=True)
class Disconnected:
    reason: str


@dataclass(frozen=True)
class ClientError:
    message: str


@dataclass(frozen=True)
class LoadingProgress:
    percent: int
    message: str = ""


@dataclass(frozen=True)
class StateChanged:
    state: str


LifecycleEvent = Union[
    QrIssued,
    Authenticated,
    Ready,
    AuthFailed,
    Disconnected,
    ClientError,
    LoadingProgress,
    StateChanged,
]

EventListener = Callable[[LifecycleEvent], None]


class MessagingClient(Protocol):
    """Operations the lifecycle and the fetch chain rely on."""

    def subscribe(self, listener: EventListener) -> None: ...

    async def initialize(self) -> None: ...

    async def list_conversations(self) -> List[Any]: ...

    async def get_conversation(self, conversation_id: str) -> Optional[Any]: ...

    async def send_message(self, conversation_id: str, body: str) -> Any: ...

    async def fetch_messages(self, conversation_id: str, limit: int = 20) -> List[Any]: ...

    async def close(self) -> None: ...


ClientFactory = Callable[[], MessagingClient]
