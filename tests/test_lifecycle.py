import asyncio
import re
from typing import List

import pytest
import pytest_asyncio

from conftest import FakeClient
from wabridge.client.base import (
    Authenticated,
    AuthFailed,
    ClientError,
    Disconnected,
    LoadingProgress,
    QrIssued,
    Ready,
    StateChanged,
)
from wabridge.models import SessionStatus
from wabridge.services.lifecycle import SessionLifecycle, generate_credential


class Factory:
    """Client factory recording every client it builds."""

    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.clients: List[FakeClient] = []

    def __call__(self) -> FakeClient:
        client = FakeClient(**self.kwargs)
        self.clients.append(client)
        return client

    @property
    def last(self) -> FakeClient:
        return self.clients[-1]


@pytest.fixture
def factory() -> Factory:
    return Factory()


@pytest_asyncio.fixture
async def lifecycle(factory: Factory):
    lc = SessionLifecycle(factory, reconnect_backoff_seconds=60, error_backoff_seconds=60)
    yield lc
    await lc.close()


def test_generate_credential_is_64_hex() -> None:
    """Credentials are 32 random bytes in hex."""
    value = generate_credential()
    assert re.fullmatch(r"[0-9a-f]{64}", value)
    assert value != generate_credential()


def test_events_before_start_are_ignored(factory: Factory) -> None:
    """Events arriving while not_started leave the state untouched."""
    lc = SessionLifecycle(factory)
    lc.handle_event(Ready())
    lc.handle_event(QrIssued("XYZ"))
    snapshot = lc.get_status()
    assert snapshot.status is SessionStatus.NOT_STARTED
    assert lc.get_credential() is None
    assert lc.get_pairing_artifact() is None


@pytest.mark.asyncio
async def test_start_enters_initializing(lifecycle: SessionLifecycle, factory: Factory) -> None:
    """start() builds a client and initializes it in the background."""
    assert lifecycle.start() is SessionStatus.INITIALIZING
    await asyncio.sleep(0)
    assert factory.last.initialized is True
    assert lifecycle.get_status().status is SessionStatus.INITIALIZING


@pytest.mark.asyncio
async def test_start_is_idempotent_while_active(lifecycle: SessionLifecycle, factory: Factory) -> None:
    """A second start() while active builds no new client."""
    lifecycle.start()
    factory.last.emit(QrIssued("XYZ"))
    assert lifecycle.start() is SessionStatus.QR_PENDING
    assert len(factory.clients) == 1


@pytest.mark.asyncio
async def test_qr_then_ready_issues_credential(lifecycle: SessionLifecycle, factory: Factory) -> None:
    """[start, QrIssued, Ready] ends ready with a 64-hex credential and no QR."""
    lifecycle.start()
    factory.last.emit(QrIssued("XYZ"))
    assert lifecycle.get_pairing_artifact() == "XYZ"
    factory.last.emit(Ready())

    snapshot = lifecycle.get_status()
    assert snapshot.status is SessionStatus.READY
    assert snapshot.has_credential is True
    assert re.fullmatch(r"[0-9a-f]{64}", lifecycle.get_credential())
    assert lifecycle.get_pairing_artifact() is None
    assert lifecycle.get_handle() is factory.last


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "events, expected",
    [
        ([QrIssued("a")], SessionStatus.QR_PENDING),
        ([QrIssued("a"), Authenticated()], SessionStatus.AUTHENTICATED),
        ([Authenticated(), Ready()], SessionStatus.READY),
        ([Ready(), Disconnected("LOGOUT")], SessionStatus.DISCONNECTED),
        ([QrIssued("a"), AuthFailed("bad session")], SessionStatus.AUTH_FAILED),
        ([ClientError("boom")], SessionStatus.ERROR),
        ([LoadingProgress(50, "Loading"), StateChanged("CONNECTED")], SessionStatus.INITIALIZING),
    ],
)
async def test_event_sequences(lifecycle: SessionLifecycle, factory: Factory, events, expected) -> None:
    """Each event sequence folds into the expected status."""
    lifecycle.start()
    for event in events:
        factory.last.emit(event)
    assert lifecycle.get_status().status is expected


@pytest.mark.asyncio
async def test_qr_cleared_outside_qr_pending(lifecycle: SessionLifecycle, factory: Factory) -> None:
    """The pairing artifact is only readable while qr_pending."""
    lifecycle.start()
    factory.last.emit(QrIssued("first"))
    factory.last.emit(QrIssued("second"))
    assert lifecycle.get_pairing_artifact() == "second"
    factory.last.emit(Authenticated())
    assert lifecycle.get_pairing_artifact() is None
    assert lifecycle.get_status().has_pairing_artifact is False


@pytest.mark.asyncio
async def test_failures_record_error_and_schedule_retry(lifecycle: SessionLifecycle, factory: Factory) -> None:
    """auth_failed and disconnected keep the reason and arm a retry."""
    lifecycle.start()
    factory.last.emit(AuthFailed("session expired"))
    assert lifecycle.get_status().last_error == "session expired"
    assert lifecycle.retry_pending is True


@pytest.mark.asyncio
async def test_credential_stable_across_reconnect(lifecycle: SessionLifecycle, factory: Factory) -> None:
    """The credential is generated once and survives disconnect -> ready."""
    lifecycle.start()
    factory.last.emit(Ready())
    first = lifecycle.get_credential()

    factory.last.emit(Disconnected("NAVIGATION"))
    assert lifecycle.get_handle() is None
    lifecycle.start()
    assert len(factory.clients) == 2
    factory.last.emit(Ready())

    assert lifecycle.get_credential() == first
    assert lifecycle.get_status().last_error is None


@pytest.mark.asyncio
async def test_retry_restarts_after_backoff(factory: Factory) -> None:
    """A disconnect triggers a new start() after the reconnect backoff."""
    lc = SessionLifecycle(factory, reconnect_backoff_seconds=0.01, error_backoff_seconds=60)
    try:
        lc.start()
        first = factory.last
        first.emit(Disconnected("LOGOUT"))
        await asyncio.sleep(0.05)
        assert len(factory.clients) == 2
        assert lc.get_status().status is SessionStatus.INITIALIZING
        assert first.closed is True
    finally:
        await lc.close()


@pytest.mark.asyncio
async def test_superseded_client_events_dropped(factory: Factory) -> None:
    """Events from a replaced client do not touch the state."""
    lc = SessionLifecycle(factory, reconnect_backoff_seconds=0.01, error_backoff_seconds=60)
    try:
        lc.start()
        stale = factory.last
        stale.emit(Disconnected("LOGOUT"))
        await asyncio.sleep(0.05)
        stale.emit(Ready())
        assert lc.get_status().status is SessionStatus.INITIALIZING
        assert lc.get_credential() is None
    finally:
        await lc.close()


@pytest.mark.asyncio
async def test_initialize_exception_becomes_error() -> None:
    """A failing initialize() moves the session to error with a retry armed."""
    factory = Factory(init_error=RuntimeError("browser crashed"))
    lc = SessionLifecycle(factory, error_backoff_seconds=60)
    try:
        lc.start()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        snapshot = lc.get_status()
        assert snapshot.status is SessionStatus.ERROR
        assert snapshot.last_error == "browser crashed"
        assert lc.retry_pending is True
    finally:
        await lc.close()


@pytest.mark.asyncio
async def test_factory_exception_becomes_error() -> None:
    """A factory that raises leaves the session in error, not the caller."""

    def broken():
        raise OSError("no browser")

    lc = SessionLifecycle(broken, error_backoff_seconds=60)
    try:
        assert lc.start() is SessionStatus.ERROR
        assert lc.get_status().last_error == "no browser"
        assert lc.retry_pending is True
    finally:
        await lc.close()


@pytest.mark.asyncio
async def test_on_ready_runs_immediately_when_ready(lifecycle: SessionLifecycle, factory: Factory) -> None:
    """Late on_ready subscribers are called right away with the client."""
    lifecycle.start()
    factory.last.emit(Ready())
    seen = []
    lifecycle.on_ready(seen.append)
    assert seen == [factory.last]


@pytest.mark.asyncio
async def test_on_ready_callbacks_are_isolated(lifecycle: SessionLifecycle, factory: Factory) -> None:
    """One raising callback does not stop the others or the transition."""
    seen = []

    def broken(client):
        raise RuntimeError("callback failed")

    lifecycle.on_ready(broken)
    lifecycle.on_ready(seen.append)
    lifecycle.start()
    factory.last.emit(Ready())
    assert seen == [factory.last]
    assert lifecycle.get_status().status is SessionStatus.READY


@pytest.mark.asyncio
async def test_listeners_receive_snapshots(lifecycle: SessionLifecycle, factory: Factory) -> None:
    """Sync and async listeners get every transition."""
    sync_seen = []
    async_seen = []

    async def async_listener(snapshot):
        async_seen.append(snapshot.status)

    lifecycle.add_listener(lambda s: sync_seen.append(s.status))
    lifecycle.add_listener(async_listener)
    lifecycle.start()
    factory.last.emit(QrIssued("XYZ"))
    await asyncio.sleep(0)

    assert sync_seen == [SessionStatus.INITIALIZING, SessionStatus.QR_PENDING]
    assert async_seen == [SessionStatus.INITIALIZING, SessionStatus.QR_PENDING]


@pytest.mark.asyncio
async def test_unknown_event_rejected(lifecycle: SessionLifecycle) -> None:
    """Events outside the closed set raise TypeError."""
    lifecycle.start()
    with pytest.raises(TypeError):
        lifecycle.handle_event(object())


@pytest.mark.asyncio
async def test_close_closes_client(lifecycle: SessionLifecycle, factory: Factory) -> None:
    """close() cancels the retry and closes the current client."""
    lifecycle.start()
    factory.last.emit(Disconnected("LOGOUT"))
    await lifecycle.close()
    assert lifecycle.retry_pending is False
    assert factory.last.closed is True


class SlowCloseClient(FakeClient):
    """Client that records lifecycle calls into a shared log."""

    def __init__(self, name: str, log: List[str]) -> None:
        super().__init__()
        self.name = name
        self.log = log

    async def initialize(self) -> None:
        self.log.append(f"{self.name}-init")

    async def close(self) -> None:
        self.log.append(f"{self.name}-close-start")
        await asyncio.sleep(0.02)
        self.log.append(f"{self.name}-close-end")


@pytest.mark.asyncio
async def test_restart_waits_for_previous_close() -> None:
    """A new client initializes only after the old one has fully closed."""
    log: List[str] = []
    clients: List[SlowCloseClient] = []

    def factory() -> SlowCloseClient:
        clients.append(SlowCloseClient(f"c{len(clients) + 1}", log))
        return clients[-1]

    lc = SessionLifecycle(factory, reconnect_backoff_seconds=0.01, error_backoff_seconds=60)
    try:
        lc.start()
        await asyncio.sleep(0)
        clients[0].emit(Ready())
        clients[0].emit(Disconnected("LOGOUT"))
        await asyncio.sleep(0.1)
        assert log == ["c1-init", "c1-close-start", "c1-close-end", "c2-init"]
    finally:
        await lc.close()
