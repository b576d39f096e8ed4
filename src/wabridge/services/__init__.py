"""Session lifecycle, fetch chain and the services built on them."""

from .fetcher import FetchStrategy, ResilientFetcher, format_chat_id, most_recent
from .lifecycle import SessionLifecycle, generate_credential
from .messaging import MessagingService

__all__ = [
    "FetchStrategy",
    "MessagingService",
    "ResilientFetcher",
    "SessionLifecycle",
    "format_chat_id",
    "generate_credential",
    "most_recent",
]
