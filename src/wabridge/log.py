import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

QR_LOG_MARKER = "[WA-QR]"

_NOISE_MARKERS = (
    "puppeteer",
    "playwright",
    "Network.",
    "webSocket",
    "sessionId",
    "targetId",
    "SEND",
    "RECV",
)


class BrowserNoiseFilter(logging.Filter):
    """Drop chatty browser protocol lines; QR lines always pass."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if QR_LOG_MARKER in message:
            return True
        if record.levelno >= logging.WARNING:
            return True
        return not any(marker in message for marker in _NOISE_MARKERS)


def setup_logging(
    name: str = "wabridge",
    filename: str = "server.log",
    level: str = "INFO",
    log_dir: Path = Path("logs"),
) -> logging.Logger:
    """Configure and return the package logger.

    The stream handler writes to stderr, which keeps stdout free for the MCP
    stdio transport.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")
    noise_filter = BrowserNoiseFilter()

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    ch.addFilter(noise_filter)
    logger.addHandler(ch)

    log_dir.mkdir(parents=True, exist_ok=True)
    fh = RotatingFileHandler(log_dir / filename, maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    fh.addFilter(noise_filter)
    logger.addHandler(fh)

    return logger
