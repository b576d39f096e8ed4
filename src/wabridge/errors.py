"""Error taxonomy shared by the HTTP app, the MCP tools and the API client."""


class BridgeError(Exception):
    """Base class for errors surfaced to callers of the bridge."""

    status_code = 500


class NotReadyError(BridgeError):
    """The WhatsApp session is not in the ready state."""

    status_code = 503

    def __init__(self, status: str) -> None:
        super().__init__(f"WhatsApp not ready. Current status: {status}")
        self.status = status


class FetchTimeoutError(BridgeError):
    """The fetch chain did not finish within its time budget."""

    status_code = 504

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Request timed out after {timeout:g} seconds")
        self.timeout = timeout


class UnauthorizedError(BridgeError):
    status_code = 401

    def __init__(self, message: str = "Invalid API key") -> None:
        super().__init__(message)


class ConversationNotFoundError(BridgeError):
    status_code = 404

    def __init__(self, chat_id: str) -> None:
        super().__init__(f"Chat not found: {chat_id}")
        self.chat_id = chat_id


class UnsupportedRecipientError(BridgeError):
    """The chat exists but the client has no way to deliver to it."""

    status_code = 400

    def __init__(self, chat_id: str, reason: str) -> None:
        super().__init__(f"Cannot send to {chat_id}: {reason}")
        self.chat_id = chat_id


class UpstreamError(BridgeError):
    """Unexpected response from the remote WhatsApp REST API."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
