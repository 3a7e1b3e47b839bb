"""opencode server process and API client."""

from fly_agent.opencode.client import (
    EventStream,
    HttpClientConfig,
    OpencodeClient,
    OpencodeClientError,
)
from fly_agent.opencode.server import OpencodeServer, ServerConfig

__all__ = [
    "EventStream",
    "HttpClientConfig",
    "OpencodeClient",
    "OpencodeClientError",
    "OpencodeServer",
    "ServerConfig",
]
