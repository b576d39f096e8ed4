import asyncio
import io
import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import Any

import qrcode
from fastapi import Depends, FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .client.playwright_client import client_factory_from_settings
from .errors import BridgeError, NotReadyError, UnauthorizedError
from .log import setup_logging
from .models import StatusSnapshot, isoformat, utcnow
from .services.fetcher import ResilientFetcher
from .services.lifecycle import SessionLifecycle
from .services.messaging import MessagingService
from .services.snapshot_store import SessionSnapshotStore, get_snapshot_store
from .settings import Settings, get_settings


class SendMessageRequest(BaseModel):
    to: str | None = None
    message: str | None = None


class ChatMessageRequest(BaseModel):
    message: str | None = None


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


def extract_credential(request: Request) -> str | None:
    """Read the caller's API key from the query string or the headers."""
    params = request.query_params
    from_query = params.get("api_key") or params.get("apiKey")
    if from_query:
        return from_query
    header = request.headers.get("x-api-key") or request.headers.get("authorization")
    if not header:
        return None
    if header.startswith("Bearer "):
        header = header[len("Bearer "):]
    return header.strip() or None


def _error_response(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message, **extra},
    )


LOGGER = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    lifecycle: SessionLifecycle | None = None,
    snapshot_store: SessionSnapshotStore | None = None,
) -> FastAPI:
    """Build the REST API around one session lifecycle.

    Serve with ``wabridge --mode api`` or ``uvicorn --factory wabridge.main:create_app``.
    """
    settings = settings or get_settings()
    setup_logging(level=settings.log_level, log_dir=settings.log_dir)
    if lifecycle is None:
        lifecycle = SessionLifecycle(
            client_factory_from_settings(settings),
            reconnect_backoff_seconds=settings.reconnect_backoff_seconds,
            error_backoff_seconds=settings.error_backoff_seconds,
        )
    fetcher = ResilientFetcher(timeout_seconds=settings.fetch_timeout_seconds)
    messaging = MessagingService(lifecycle, fetcher, default_limit=settings.default_message_limit)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Connect the optional Redis mirror and start the WhatsApp session."""
        store = snapshot_store or get_snapshot_store(settings)
        if store is not None:
            try:
                await store.connect()
                lifecycle.add_listener(
                    lambda snapshot: store.save_snapshot(snapshot, lifecycle.get_pairing_artifact())
                )
                LOGGER.info("Session snapshots mirrored to Redis")
            except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
                LOGGER.warning("Snapshot store not available: %s", e)
                store = None

        if settings.auto_start:
            LOGGER.info("Starting WhatsApp session in the background")
            lifecycle.start()

        yield

        LOGGER.info("Shutting down...")
        await lifecycle.close()
        if store is not None:
            await store.close()

    app = FastAPI(
        title="WhatsApp Web Bridge",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.lifecycle = lifecycle
    app.state.messaging = messaging

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        LOGGER.info(
            "%s %s -> %s (%.1f ms)",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
        )
        return response

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
        extra = {"status": exc.status} if isinstance(exc, NotReadyError) else {}
        return _error_response(exc.status_code, str(exc), **extra)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        if any(err.get("type") == "json_invalid" for err in errors):
            return _error_response(400, "Invalid JSON in request body")
        detail = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in errors
        )
        return _error_response(400, detail or "Invalid request")

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        LOGGER.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
        return _error_response(500, "Internal server error")

    def require_credential(request: Request) -> None:
        """Once a credential is issued, every API call must present it."""
        if not settings.require_api_key:
            return
        expected = lifecycle.get_credential()
        if expected is None:
            return
        provided = extract_credential(request)
        if provided is None or not secrets.compare_digest(provided, expected):
            raise UnauthorizedError()

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check for load balancers; independent of the WhatsApp session."""
        return {"status": "ok", "timestamp": isoformat(utcnow())}

    @app.get("/status")
    async def status() -> dict[str, Any]:
        snapshot = lifecycle.get_status()
        return {
            "status": snapshot.status.value,
            "error": snapshot.last_error,
            "hasCredential": snapshot.has_credential,
            "timestamp": isoformat(utcnow()),
        }

    @app.post("/start")
    async def start() -> dict[str, Any]:
        """Start the WhatsApp session if it is not already running."""
        current = lifecycle.start()
        return {"status": current.value, "message": "Check /status for updates"}

    @app.get("/qr")
    async def qr(format: str = Query("text", pattern="^(text|png)$")) -> Response:
        """Return the pending QR payload as text, or rendered as a PNG image."""
        artifact = lifecycle.get_pairing_artifact()
        if artifact is None:
            current = lifecycle.get_status().status.value
            return _error_response(404, f"QR code not available. Current status: {current}")
        if format == "png":
            buffer = io.BytesIO()
            qrcode.make(artifact).save(buffer, format="PNG")
            return Response(content=buffer.getvalue(), media_type="image/png")
        return PlainTextResponse(artifact)

    api = [Depends(require_credential)]

    @app.get("/api/status", dependencies=api)
    async def api_status() -> dict[str, Any]:
        return {"success": True, **await messaging.get_status()}

    @app.get("/api/chats", dependencies=api)
    async def api_chats() -> dict[str, Any]:
        return {"success": True, "chats": await messaging.list_chats()}

    @app.get("/api/chats/{chat_id}/messages", dependencies=api)
    async def api_chat_messages(
        chat_id: str,
        limit: int | None = Query(None, ge=1, le=1000),
    ) -> dict[str, Any]:
        return {"success": True, "messages": await messaging.get_messages(chat_id, limit)}

    @app.post("/api/chats/{chat_id}/messages", dependencies=api)
    async def api_send_to_chat(chat_id: str, payload: ChatMessageRequest) -> Any:
        if not payload.message:
            return _error_response(400, "Missing required field: message")
        result = await messaging.send_message(chat_id, payload.message)
        return {"success": True, **result}

    @app.post("/api/send", dependencies=api)
    async def api_send(payload: SendMessageRequest) -> Any:
        if not payload.to or not payload.message:
            return _error_response(400, "Missing required fields: to, message")
        result = await messaging.send_message(payload.to, payload.message)
        return {"success": True, **result}

    @app.get("/api/recent-message", dependencies=api)
    async def api_recent_message() -> dict[str, Any]:
        return {"success": True, **await messaging.recent_message()}

    @app.websocket("/ws/status")
    async def status_ws(websocket: WebSocket) -> None:
        """Push the session status on connect and after every transition."""
        await websocket.accept()
        queue: asyncio.Queue[StatusSnapshot] = asyncio.Queue()
        lifecycle.add_listener(queue.put_nowait)

        async def push() -> None:
            await websocket.send_json(lifecycle.get_status().to_dict())
            while True:
                snapshot = await queue.get()
                await websocket.send_json(snapshot.to_dict())

        pusher = asyncio.create_task(push())
        try:
            # Observers only listen; reading here surfaces the disconnect.
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            LOGGER.info("Status WS disconnect")
        except RuntimeError as e:
            LOGGER.debug("Status WS closed: %s", e)
        finally:
            pusher.cancel()
            lifecycle.remove_listener(queue.put_nowait)

    return app
