"""WhatsApp Web driven through a persistent Playwright Chromium context.

The client opens web.whatsapp.com, polls the page for the QR ``data-ref``
payload and for the logged-in chat list, and reports what it sees as
lifecycle events. Data operations read the in-page store exposed by WhatsApp
Web and fall back to the rendered DOM.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, List, Optional
from urllib.parse import quote

from playwright.async_api import BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from ..errors import UnsupportedRecipientError
from ..settings import Settings
from .base import (
    Authenticated,
    ClientError,
    ClientFactory,
    Disconnected,
    EventListener,
    LifecycleEvent,
    QrIssued,
    Ready,
    StateChanged,
)

logger = logging.getLogger(__name__)

WHATSAPP_WEB_URL = "https://web.whatsapp.com/"

QR_REF_SELECTORS = [
    "div[data-ref]",
    "[data-testid='qrcode'][data-ref]",
]

LOGIN_MARKERS = [
    "#pane-side",
    "div[data-testid='chat-list']",
    "div[aria-label='Chat list']",
    "header[data-testid='chatlist-header']",
]

DEFAULT_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
    "--disable-blink-features=AutomationControlled",
]

CONTAINER_ARGS = DEFAULT_ARGS + [
    "--single-process",
    "--disable-extensions",
    "--ignore-certificate-errors",
    "--disable-storage-reset",
]

USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

STORE_CHATS_SCRIPT = """
() => {
  if (!window.Store || !window.Store.Chat) return [];
  return window.Store.Chat.getModelsArray().map(c => ({
    id: c.id._serialized,
    name: c.name || c.formattedTitle || '',
    timestamp: c.t || null,
    isGroup: !!c.isGroup,
    unreadCount: c.unreadCount || 0
  }));
}
"""

STORE_CHAT_SCRIPT = """
(chatId) => {
  if (!window.Store || !window.Store.Chat) return { store: false, chat: null };
  const c = window.Store.Chat.get(chatId);
  if (!c) return { store: true, chat: null };
  return {
    store: true,
    chat: { id: c.id._serialized, name: c.name || '', isGroup: !!c.isGroup, timestamp: c.t || null }
  };
}
"""

STORE_MESSAGES_SCRIPT = """
({ chatId, limit }) => {
  if (!window.Store || !window.Store.Chat) return [];
  const chat = window.Store.Chat.get(chatId);
  if (!chat || !chat.msgs) return [];
  return chat.msgs.getModelsArray().slice(-limit).map(m => ({
    id: m.id._serialized,
    body: m.body || '',
    timestamp: m.t || null,
    from: m.from && m.from._serialized ? m.from._serialized : String(m.from || ''),
    fromMe: !!m.id.fromMe,
    type: m.type || 'chat'
  }));
}
"""

STORE_SEND_SCRIPT = """
async ({ chatId, body }) => {
  if (!window.Store || !window.Store.Chat) return { store: false, sent: false };
  const chat = window.Store.Chat.get(chatId);
  if (!chat) return { store: true, sent: false };
  if (!window.Store.SendTextMsgToChat) return { store: true, sent: false };
  const msg = await window.Store.SendTextMsgToChat(chat, body);
  return { store: true, sent: true, id: msg && msg.id ? msg.id._serialized : null };
}
"""

# WhatsApp Web persists its chat table in IndexedDB; readable even when the
# in-memory store is not exposed.
IDB_CHATS_SCRIPT = """
async () => {
  const db = await new Promise((resolve, reject) => {
    const req = indexedDB.open('model-storage');
    req.onsuccess = () => resolve(req.result);
    req.onerror = () => reject(req.error);
  });
  try {
    if (!db.objectStoreNames.contains('chat')) return [];
    const rows = await new Promise((resolve, reject) => {
      const req = db.transaction('chat', 'readonly').objectStore('chat').getAll();
      req.onsuccess = () => resolve(req.result || []);
      req.onerror = () => reject(req.error);
    });
    return rows.map(c => ({
      id: String(c.id),
      name: c.name || c.formattedTitle || '',
      timestamp: c.t || null,
      isGroup: String(c.id).endsWith('@g.us'),
      unreadCount: c.unreadCount || 0
    }));
  } finally {
    db.close();
  }
}
"""

COMPOSE_SELECTORS = [
    "footer div[contenteditable='true']",
    "[data-testid='conversation-compose-box-input']",
]


def remove_singleton_lock(auth_data_path: Path) -> None:
    """Delete a stale Chromium profile lock left behind by a crashed browser."""
    lock = auth_data_path / "SingletonLock"
    try:
        lock.unlink()
        logger.debug("Removed stale browser lock %s", lock)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove browser lock %s: %s", lock, e)


class PersistedChatStore:
    """Reads chats from WhatsApp Web's IndexedDB tables."""

    def __init__(self, client: "PlaywrightWhatsAppClient") -> None:
        self._client = client

    async def get_chats(self) -> List[Any]:
        return await self._client.evaluate(IDB_CHATS_SCRIPT) or []


class PlaywrightWhatsAppClient:
    """Messaging client backed by a headless Chromium running WhatsApp Web."""

    def __init__(
        self,
        auth_data_path: Path,
        headless: bool = True,
        executable_path: Optional[str] = None,
        docker_container: bool = False,
        poll_interval: float = 2.0,
        qr_timeout: float = 600.0,
    ) -> None:
        self._auth_data_path = Path(auth_data_path)
        self._headless = headless
        self._executable_path = executable_path
        self._docker_container = docker_container
        self._poll_interval = poll_interval
        self._qr_timeout = qr_timeout

        self._listeners: List[EventListener] = []
        self._playwright: Optional[Playwright] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._monitor_task: Optional[asyncio.Task[None]] = None
        self._last_qr: Optional[str] = None
        self._logged_in = False
        self._closing = False
        self._cached: List[Any] = []
        self.store = PersistedChatStore(self)

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def _emit(self, event: LifecycleEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Error in client event listener for %s", type(event).__name__)

    @property
    def cached_conversations(self) -> List[Any]:
        """Chats from the last successful listing."""
        return list(self._cached)

    async def initialize(self) -> None:
        self._auth_data_path.mkdir(parents=True, exist_ok=True)
        remove_singleton_lock(self._auth_data_path)

        args = CONTAINER_ARGS if self._docker_container else DEFAULT_ARGS
        logger.info(
            "Launching Chromium (headless=%s, executable=%s)",
            self._headless,
            self._executable_path or "default",
        )
        self._playwright = await async_playwright().start()
        self._context = await self._playwright.chromium.launch_persistent_context(
            user_data_dir=str(self._auth_data_path),
            headless=self._headless,
            executable_path=self._executable_path,
            args=args,
            user_agent=USER_AGENT,
            viewport={"width": 1280, "height": 800},
            locale="en-US",
        )
        pages = self._context.pages
        self._page = pages[0] if pages else await self._context.new_page()
        self._page.on("close", self._on_page_closed)

        await self._page.goto(WHATSAPP_WEB_URL, wait_until="domcontentloaded", timeout=60_000)
        self._emit(StateChanged("page_loaded"))
        self._monitor_task = asyncio.create_task(self._monitor())

    async def _monitor(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._qr_timeout
        while not self._closing:
            try:
                phase = await self.poll_once()
            except PlaywrightError as e:
                if self._closing:
                    return
                logger.warning("Error polling WhatsApp Web page: %s", e)
                phase = "loading"

            if phase == "disconnected":
                return
            if phase == "ready":
                deadline = loop.time() + self._qr_timeout
            elif loop.time() > deadline:
                self._emit(ClientError("Timed out waiting for QR code scan"))
                return
            await asyncio.sleep(self._poll_interval)

    async def poll_once(self) -> str:
        """Inspect the page once and emit events for what changed.

        Returns one of ``ready``, ``qr``, ``disconnected`` or ``loading``.
        """
        if await self._has_any(LOGIN_MARKERS):
            if not self._logged_in:
                self._logged_in = True
                self._last_qr = None
                self._emit(Authenticated())
                self._emit(Ready())
            return "ready"

        payload = await self._read_qr_payload()
        if payload:
            if self._logged_in:
                self._logged_in = False
                self._emit(Disconnected("LOGOUT"))
                return "disconnected"
            if payload != self._last_qr:
                self._last_qr = payload
                logger.info("New QR code received")
                self._emit(QrIssued(payload))
            return "qr"
        return "loading"

    async def _has_any(self, selectors: List[str]) -> bool:
        page = self._require_page()
        for selector in selectors:
            if await page.locator(selector).count() > 0:
                return True
        return False

    async def _read_qr_payload(self) -> Optional[str]:
        page = self._require_page()
        for selector in QR_REF_SELECTORS:
            locator = page.locator(selector).first
            if await locator.count() > 0:
                value = await locator.get_attribute("data-ref")
                if value:
                    return value
        return None

    def _on_page_closed(self, page: Page) -> None:
        if not self._closing:
            self._emit(Disconnected("Browser page closed"))

    def _require_page(self) -> Page:
        if self._page is None:
            raise RuntimeError("WhatsApp Web page is not open")
        return self._page

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        page = self._require_page()
        if arg is None:
            return await page.evaluate(script)
        return await page.evaluate(script, arg)

    async def list_conversations(self) -> List[Any]:
        chats = await self.evaluate(STORE_CHATS_SCRIPT)
        if chats:
            self._cached = list(chats)
        return chats or []

    async def get_conversation(self, conversation_id: str) -> Optional[Any]:
        result = await self.evaluate(STORE_CHAT_SCRIPT, conversation_id)
        if result and result.get("chat"):
            return result["chat"]
        if result and not result.get("store") and conversation_id.endswith("@c.us"):
            # Without the store any personal number is reachable through the send URL.
            return {"id": conversation_id, "name": ""}
        return None

    async def fetch_messages(self, conversation_id: str, limit: int = 20) -> List[Any]:
        messages = await self.evaluate(
            STORE_MESSAGES_SCRIPT, {"chatId": conversation_id, "limit": limit}
        )
        return messages or []

    async def send_message(self, conversation_id: str, body: str) -> Any:
        """Send through the in-page store, or the send URL for personal chats."""
        result = await self.evaluate(STORE_SEND_SCRIPT, {"chatId": conversation_id, "body": body})
        if result and result.get("sent"):
            logger.debug("Message sent to %s via store", conversation_id)
            return {"id": result.get("id"), "to": conversation_id}
        if not conversation_id.endswith("@c.us"):
            raise UnsupportedRecipientError(
                conversation_id, "group chats need the WhatsApp Web store, which is not available"
            )
        page = self._require_page()
        phone = conversation_id.split("@", 1)[0]
        await page.goto(
            f"{WHATSAPP_WEB_URL}send?phone={phone}&text={quote(body)}",
            wait_until="domcontentloaded",
            timeout=60_000,
        )
        compose = page.locator(", ".join(COMPOSE_SELECTORS)).first
        await compose.wait_for(timeout=30_000)
        await compose.press("Enter")
        logger.debug("Message submitted to %s", conversation_id)
        return {"id": None, "to": conversation_id}

    async def close(self) -> None:
        self._closing = True
        if self._monitor_task is not None and not self._monitor_task.done():
            self._monitor_task.cancel()
        try:
            if self._context is not None:
                await self._context.close()
            if self._playwright is not None:
                await self._playwright.stop()
        except PlaywrightError as e:
            logger.warning("Error shutting down browser: %s", e)
        finally:
            self._context = None
            self._page = None
            self._playwright = None


def client_factory_from_settings(settings: Settings) -> ClientFactory:
    """Build a factory producing a fresh browser client per lifecycle start."""

    def factory() -> PlaywrightWhatsAppClient:
        return PlaywrightWhatsAppClient(
            auth_data_path=settings.auth_data_path,
            headless=settings.headless,
            executable_path=settings.browser_executable_path,
            docker_container=settings.docker_container,
            poll_interval=settings.qr_poll_interval_seconds,
            qr_timeout=settings.qr_timeout_seconds,
        )

    return factory
