"""Command line entry point: REST API server or MCP server."""

import argparse
import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import uvicorn

from .api_client import WhatsAppApiClient
from .client.playwright_client import client_factory_from_settings
from .log import setup_logging
from .mcp_tools import create_mcp_server
from .services.fetcher import ResilientFetcher
from .services.lifecycle import SessionLifecycle
from .services.messaging import MessagingService
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wabridge",
        description="Expose a WhatsApp Web session over a REST API or as an MCP server.",
    )
    parser.add_argument("-m", "--mode", default="mcp", choices=["mcp", "api"],
                        help="Run the MCP server or the WhatsApp REST API")
    parser.add_argument("-c", "--mcp-mode", default=settings.mcp_mode, choices=["standalone", "api"],
                        help="MCP backend: in-process WhatsApp client or a remote REST API")
    parser.add_argument("-t", "--transport", default=settings.mcp_transport, choices=["sse", "command"],
                        help="MCP transport: SSE over HTTP or stdio")
    parser.add_argument("-p", "--sse-port", type=int, default=settings.sse_port)
    parser.add_argument("--api-port", type=int, default=settings.port)
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("-a", "--auth-data-path", type=Path, default=settings.auth_data_path,
                        help="Browser profile directory holding the WhatsApp session")
    parser.add_argument("--api-base-url", default=settings.api_base_url,
                        help="REST API base URL used when --mcp-mode=api")
    parser.add_argument("-k", "--api-key", default=settings.api_key,
                        help="Access credential for the REST API when --mcp-mode=api")
    parser.add_argument("-l", "--log-level", default=settings.log_level,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], type=str.upper)
    return parser


def apply_args(settings: Settings, args: argparse.Namespace) -> Settings:
    """Return a copy of the settings with command line overrides applied."""
    return settings.model_copy(
        update={
            "mcp_mode": args.mcp_mode,
            "mcp_transport": args.transport,
            "sse_port": args.sse_port,
            "port": args.api_port,
            "host": args.host,
            "auth_data_path": args.auth_data_path,
            "api_base_url": args.api_base_url,
            "api_key": args.api_key,
            "log_level": args.log_level,
        }
    )


def build_lifecycle(settings: Settings) -> SessionLifecycle:
    return SessionLifecycle(
        client_factory_from_settings(settings),
        reconnect_backoff_seconds=settings.reconnect_backoff_seconds,
        error_backoff_seconds=settings.error_backoff_seconds,
    )


async def run_mcp(settings: Settings) -> None:
    """Serve the MCP tools until the transport closes."""
    lifecycle: Optional[SessionLifecycle] = None
    api_client: Optional[WhatsAppApiClient] = None

    if settings.mcp_mode == "standalone":
        lifecycle = build_lifecycle(settings)
        fetcher = ResilientFetcher(timeout_seconds=settings.fetch_timeout_seconds)
        backend = MessagingService(lifecycle, fetcher, default_limit=settings.default_message_limit)
        lifecycle.start()
    else:
        if not settings.api_key:
            logger.warning("No API key configured; requests to %s may be rejected", settings.api_base_url)
        api_client = WhatsAppApiClient(
            settings.api_base_url, settings.api_key, timeout=settings.api_timeout_seconds
        )
        backend = api_client

    server = create_mcp_server(
        backend,
        host=settings.host,
        port=settings.sse_port,
        json_response=True,
        log_level=settings.log_level,
    )
    logger.info("Starting MCP server in %s mode over %s", settings.mcp_mode, settings.mcp_transport)
    try:
        if settings.mcp_transport == "command":
            await server.run_stdio_async()
        else:
            await server.run_sse_async()
    finally:
        logger.info("WhatsApp MCP server closed")
        if lifecycle is not None:
            await lifecycle.close()
        if api_client is not None:
            await api_client.close()


def main(argv: Optional[List[str]] = None) -> int:
    base = get_settings()
    args = build_parser(base).parse_args(argv)
    settings = apply_args(base, args)
    setup_logging(level=settings.log_level, log_dir=settings.log_dir)

    if args.mode == "api":
        from .main import create_app

        uvicorn.run(
            create_app(settings),
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
        return 0

    try:
        asyncio.run(run_mcp(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
