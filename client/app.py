import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict
from urllib.parse import urlsplit, urlunsplit

import streamlit as st
from websocket import WebSocketTimeoutException, create_connection


def setup_client_logging() -> logging.Logger:
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("wabridge.dashboard")
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "dashboard.log", maxBytes=2_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)
    return logger


LOGGER = setup_client_logging()

STATUS_LABELS = {
    "not_started": "Not started",
    "initializing": "Initializing WhatsApp...",
    "qr_pending": "Waiting for QR code scan",
    "authenticated": "Authenticated, loading chats...",
    "ready": "WhatsApp ready",
    "auth_failed": "Authentication failed, retrying",
    "disconnected": "Disconnected, reconnecting",
    "error": "Error, retrying",
}


def http_base(ws_url: str) -> str:
    """Turn ws://host:port/ws/status into http://host:port."""
    parts = urlsplit(ws_url)
    scheme = "https" if parts.scheme == "wss" else "http"
    return urlunsplit((scheme, parts.netloc, "", "", ""))


def read_status(ws_url: str, wait_for_change: bool = False, timeout: float = 30.0) -> Dict[str, Any]:
    """Read the current snapshot from the status feed.

    With ``wait_for_change`` the call blocks until the status differs from the
    first snapshot or ``timeout`` expires.
    """
    LOGGER.info("Connecting ws_url=%s", ws_url)
    ws = create_connection(ws_url, timeout=timeout)
    try:
        snapshot = json.loads(ws.recv())
        if not wait_for_change:
            return snapshot
        first = snapshot.get("status")
        while snapshot.get("status") == first:
            try:
                snapshot = json.loads(ws.recv())
            except WebSocketTimeoutException:
                break
        return snapshot
    finally:
        ws.close()


st.set_page_config(page_title="WhatsApp Web Bridge", page_icon="💬", layout="centered")

st.title("WhatsApp Web Bridge")

with st.sidebar:
    st.subheader("Connection")
    ws_url = st.text_input("Status feed URL", value="ws://localhost:3000/ws/status")
    watch = st.checkbox("Wait for status changes", value=False)
    st.markdown("---")
    st.button("Refresh")

try:
    snapshot = read_status(ws_url, wait_for_change=watch)
except (OSError, ValueError) as e:
    LOGGER.error("Status feed unavailable: %s", e)
    st.error(f"Status feed unavailable: {e}")
    st.stop()

status = snapshot.get("status", "unknown")
label = STATUS_LABELS.get(status, status)
if status == "ready":
    st.success(label)
elif status in ("error", "auth_failed", "disconnected"):
    st.warning(label)
else:
    st.info(label)

if snapshot.get("error"):
    st.caption(f"Last error: {snapshot['error']}")

if snapshot.get("hasQr"):
    st.image(
        f"{http_base(ws_url)}/qr?format=png",
        caption="Scan with WhatsApp > Linked devices",
    )

if snapshot.get("hasCredential"):
    st.caption("An access credential has been issued; see the server log.")

st.caption(f"Updated at {snapshot.get('updatedAt')}")

if watch:
    st.rerun()
