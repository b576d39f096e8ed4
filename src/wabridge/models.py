from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class SessionStatus(str, Enum):
    NOT_STARTED = "not_started"
    INITIALIZING = "initializing"
    QR_PENDING = "qr_pending"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    AUTH_FAILED = "auth_failed"
    DISCONNECTED = "disconnected"
    ERROR = "error"


# start() is a no-op while the session is in one of these states.
ACTIVE_STATUSES = frozenset(
    {
        SessionStatus.INITIALIZING,
        SessionStatus.QR_PENDING,
        SessionStatus.AUTHENTICATED,
        SessionStatus.READY,
    }
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime as ISO-8601 UTC with milliseconds and a Z suffix."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class SessionState:
    """State of the single WhatsApp session, mutated only by lifecycle events."""

    status: SessionStatus = SessionStatus.NOT_STARTED
    pairing_artifact: Optional[str] = None
    access_credential: Optional[str] = None
    last_error: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class StatusSnapshot:
    status: SessionStatus
    last_error: Optional[str]
    has_credential: bool
    has_pairing_artifact: bool
    updated_at: datetime

    @property
    def ready(self) -> bool:
        return self.status is SessionStatus.READY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "error": self.last_error,
            "hasCredential": self.has_credential,
            "hasQr": self.has_pairing_artifact,
            "updatedAt": isoformat(self.updated_at),
        }


class FetchKind(str, Enum):
    CONVERSATIONS = "conversations"
    MESSAGES = "messages"


@dataclass(frozen=True)
class FetchRequest:
    kind: FetchKind
    conversation_id: Optional[str] = None
    limit: int = 20


@dataclass
class ChatSummary:
    id: str
    name: str = ""
    timestamp: Optional[datetime] = None
    is_group: bool = False
    unread_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "timestamp": isoformat(self.timestamp),
            "isGroup": self.is_group,
            "unreadCount": self.unread_count,
        }


@dataclass
class MessageSummary:
    id: str
    body: str = ""
    timestamp: Optional[datetime] = None
    sender: str = ""
    from_me: bool = False
    type: str = "chat"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "body": self.body,
            "timestamp": isoformat(self.timestamp),
            "from": self.sender,
            "fromMe": self.from_me,
            "type": self.type,
        }


@dataclass
class FetchResult:
    """Normalized records produced by one run of the fetch chain."""

    kind: FetchKind
    records: List[Any] = field(default_factory=list)
    strategy: str = ""
    placeholder: bool = False

    def to_list(self) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self.records]
