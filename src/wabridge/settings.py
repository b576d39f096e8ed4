from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 3000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_dir: Path = Path("logs")

    cors_origins: str = "*"

    # WhatsApp Web browser session
    auth_data_path: Path = Path(".wwebjs_auth")
    headless: bool = True
    browser_executable_path: str | None = None
    docker_container: bool = False
    auto_start: bool = True
    qr_poll_interval_seconds: float = 2.0
    qr_timeout_seconds: float = 600.0

    # Lifecycle and fetch chain
    require_api_key: bool = True
    fetch_timeout_seconds: float = 15.0
    reconnect_backoff_seconds: float = 5.0
    error_backoff_seconds: float = 10.0
    default_message_limit: int = 20

    redis_url: str | None = None
    snapshot_ttl_seconds: int = 300

    # MCP server
    api_base_url: str = "http://localhost:3000/api"
    api_key: str | None = None
    api_timeout_seconds: float = 30.0
    mcp_mode: Literal["standalone", "api"] = "standalone"
    mcp_transport: Literal["sse", "command"] = "sse"
    sse_port: int = 3002

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings()
    return _SETTINGS
