import asyncio
import contextlib
import inspect
import logging
import secrets
import threading
from typing import Any, Callable, List, Optional, Set

from ..client.base import (
    Authenticated,
    AuthFailed,
    ClientError,
    ClientFactory,
    Disconnected,
    LifecycleEvent,
    LoadingProgress,
    MessagingClient,
    QrIssued,
    Ready,
    StateChanged,
)
from ..models import ACTIVE_STATUSES, SessionState, SessionStatus, StatusSnapshot, utcnow

logger = logging.getLogger(__name__)

CREDENTIAL_BYTES = 32

ReadyCallback = Callable[[MessagingClient], Any]
StatusListener = Callable[[StatusSnapshot], Any]


def generate_credential() -> str:
    """Return a random 64-character hex access credential."""
    return secrets.token_hex(CREDENTIAL_BYTES)


class SessionLifecycle:
    """Connection state machine for the single WhatsApp Web session.

    The lifecycle builds a client through ``client_factory`` on every
    ``start()``, subscribes to its events and applies them to one
    ``SessionState``. Failures never propagate to callers: auth failures and
    errors schedule a new ``start()`` after ``error_backoff_seconds``, a
    disconnect after ``reconnect_backoff_seconds``.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        reconnect_backoff_seconds: float = 5.0,
        error_backoff_seconds: float = 10.0,
        credential_factory: Callable[[], str] = generate_credential,
    ) -> None:
        self._client_factory = client_factory
        self._reconnect_backoff = reconnect_backoff_seconds
        self._error_backoff = error_backoff_seconds
        self._credential_factory = credential_factory

        self._state = SessionState()
        self._lock = threading.Lock()
        self._client: Optional[MessagingClient] = None
        # Bumped on every start(); events from older clients are dropped.
        self._generation = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._init_task: Optional[asyncio.Task[None]] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._ready_callbacks: List[ReadyCallback] = []
        self._listeners: List[StatusListener] = []
        self._background: Set[asyncio.Future[Any]] = set()

    # Reads

    def get_status(self) -> StatusSnapshot:
        with self._lock:
            return self._snapshot()

    def get_pairing_artifact(self) -> Optional[str]:
        """Return the latest QR payload, or None outside the qr_pending state."""
        with self._lock:
            if self._state.status is not SessionStatus.QR_PENDING:
                return None
            return self._state.pairing_artifact

    def get_credential(self) -> Optional[str]:
        with self._lock:
            return self._state.access_credential

    def get_handle(self) -> Optional[MessagingClient]:
        """Return the client while the session is ready, else None."""
        with self._lock:
            if self._state.status is not SessionStatus.READY:
                return None
            return self._client

    @property
    def retry_pending(self) -> bool:
        return self._retry_handle is not None

    # Subscriptions

    def on_ready(self, callback: ReadyCallback) -> None:
        """Call ``callback(client)`` on every transition into ready.

        When the session is already ready the callback runs immediately.
        """
        with self._lock:
            self._ready_callbacks.append(callback)
            ready = self._state.status is SessionStatus.READY
            client = self._client
        if ready and client is not None:
            self._invoke(callback, client)

    def add_listener(self, listener: StatusListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # Transitions

    def start(self) -> SessionStatus:
        """Begin initialization unless a session is already active. Idempotent.

        Must be called from the event loop. The client's ``initialize()`` runs
        in the background; its outcome arrives through events only.
        """
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._state.status in ACTIVE_STATUSES:
                return self._state.status
            self._loop = loop
            self._cancel_retry()
            previous = self._client
            self._generation += 1
            generation = self._generation
            try:
                client = self._client_factory()
            except Exception as e:
                logger.exception("Failed to create WhatsApp client: %s", e)
                self._client = None
                self._state.last_error = str(e) or e.__class__.__name__
                self._set_status(SessionStatus.ERROR)
                snapshot = self._snapshot()
                client = None
            else:
                self._client = client
                self._set_status(SessionStatus.INITIALIZING)
                snapshot = self._snapshot()

        if client is None:
            if previous is not None:
                self._spawn(self._close_client(previous))
            self._schedule_retry(self._error_backoff)
            self._notify_listeners(snapshot)
            return snapshot.status

        logger.info("Starting WhatsApp client initialization")
        client.subscribe(lambda event: self._dispatch(generation, event))
        self._init_task = loop.create_task(self._initialize(client, generation, previous))
        self._notify_listeners(snapshot)
        return SessionStatus.INITIALIZING

    def handle_event(self, event: LifecycleEvent) -> None:
        """Apply one client event to the session state."""
        retry_delay: Optional[float] = None
        became_ready = False
        credential_issued: Optional[str] = None

        with self._lock:
            state = self._state
            if state.status is SessionStatus.NOT_STARTED:
                logger.warning("Ignoring %s received before start()", type(event).__name__)
                return

            if isinstance(event, QrIssued):
                state.pairing_artifact = event.payload
                state.last_error = None
                self._set_status(SessionStatus.QR_PENDING)
            elif isinstance(event, Authenticated):
                self._set_status(SessionStatus.AUTHENTICATED)
            elif isinstance(event, Ready):
                state.last_error = None
                if state.access_credential is None:
                    state.access_credential = self._credential_factory()
                    credential_issued = state.access_credential
                self._set_status(SessionStatus.READY)
                became_ready = True
            elif isinstance(event, AuthFailed):
                state.last_error = event.reason
                self._set_status(SessionStatus.AUTH_FAILED)
                retry_delay = self._error_backoff
            elif isinstance(event, Disconnected):
                state.last_error = event.reason
                self._set_status(SessionStatus.DISCONNECTED)
                retry_delay = self._reconnect_backoff
            elif isinstance(event, ClientError):
                state.last_error = event.message
                self._set_status(SessionStatus.ERROR)
                retry_delay = self._error_backoff
            elif isinstance(event, LoadingProgress):
                logger.info("Loading: %s%% - %s", event.percent, event.message)
                return
            elif isinstance(event, StateChanged):
                logger.info("Client state changed to: %s", event.state)
                return
            else:
                raise TypeError(f"Unknown lifecycle event: {event!r}")

            snapshot = self._snapshot()
            client = self._client
            callbacks = list(self._ready_callbacks) if became_ready else []

        logger.info("Session status -> %s", snapshot.status.value)
        if snapshot.last_error and retry_delay is not None:
            logger.warning("Session %s: %s", snapshot.status.value, snapshot.last_error)
        if credential_issued:
            logger.info("Access credential issued: %s", credential_issued)

        if retry_delay is not None:
            self._schedule_retry(retry_delay)
        self._notify_listeners(snapshot)
        if client is not None:
            for callback in callbacks:
                self._invoke(callback, client)

    async def close(self) -> None:
        """Stop retries, cancel initialization and close the client."""
        self._cancel_retry()
        with self._lock:
            self._generation += 1
            client = self._client
            self._client = None
            init_task = self._init_task
            self._init_task = None

        if init_task is not None and not init_task.done():
            init_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await init_task
        if client is not None:
            await self._close_client(client)
        for task in list(self._background):
            task.cancel()

    # Internals

    def _snapshot(self) -> StatusSnapshot:
        state = self._state
        return StatusSnapshot(
            status=state.status,
            last_error=state.last_error,
            has_credential=state.access_credential is not None,
            has_pairing_artifact=state.pairing_artifact is not None,
            updated_at=state.updated_at,
        )

    def _set_status(self, status: SessionStatus) -> None:
        self._state.status = status
        self._state.updated_at = utcnow()
        if status is not SessionStatus.QR_PENDING:
            self._state.pairing_artifact = None

    def _dispatch(self, generation: int, event: LifecycleEvent) -> None:
        if generation != self._generation:
            logger.debug("Dropping %s from a superseded client", type(event).__name__)
            return
        self.handle_event(event)

    async def _initialize(
        self,
        client: MessagingClient,
        generation: int,
        previous: Optional[MessagingClient] = None,
    ) -> None:
        # Both clients share one browser profile; the old one must be gone first.
        if previous is not None:
            await self._close_client(previous)
        try:
            await client.initialize()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Error during client initialization: %s", e)
            self._dispatch(generation, ClientError(str(e) or e.__class__.__name__))

    def _schedule_retry(self, delay: float) -> None:
        if self._loop is None or self._loop.is_closed():
            logger.warning("No event loop available; retry not scheduled")
            return
        self._cancel_retry()
        logger.info("Re-initializing WhatsApp client in %gs", delay)
        self._retry_handle = self._loop.call_later(delay, self._retry)

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _retry(self) -> None:
        self._retry_handle = None
        self.start()

    async def _close_client(self, client: MessagingClient) -> None:
        try:
            await client.close()
        except Exception as e:
            logger.warning("Error closing WhatsApp client: %s", e)

    def _notify_listeners(self, snapshot: StatusSnapshot) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            self._invoke(listener, snapshot)

    def _invoke(self, callback: Callable[[Any], Any], arg: Any) -> None:
        try:
            result = callback(arg)
            if inspect.isawaitable(result):
                self._spawn(result)
        except Exception:
            logger.exception("Error in lifecycle callback %r", callback)

    def _spawn(self, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: "asyncio.Future[Any]") -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Lifecycle background task failed: %s", exc)
