"""WhatsApp MCP server (stdio) backed by a running wabridge REST API.

Configure with API_BASE_URL and API_KEY (see GET /status and the server log
for the issued key).
"""

from wabridge.api_client import WhatsAppApiClient
from wabridge.mcp_tools import create_mcp_server
from wabridge.settings import get_settings

settings = get_settings()

mcp = create_mcp_server(
    WhatsAppApiClient(
        settings.api_base_url,
        settings.api_key,
        timeout=settings.api_timeout_seconds,
    ),
    json_response=True,
)


if __name__ == "__main__":
    mcp.run(transport="stdio")
