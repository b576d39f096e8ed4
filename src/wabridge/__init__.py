"""WhatsApp Web bridge: session lifecycle, resilient data access, REST and MCP surfaces."""

__version__ = "0.1.0"
