"""Core remote-source functionality shared between CLI and MCP server."""

from .async_utils import run_sync
from .client import (
    EmptyResultError,
    FetchError,
    ListingClient,
    ListingResponse,
    MediaProbe,
    SourceError,
    TransportError,
)

__all__ = [
    "EmptyResultError",
    "FetchError",
    "ListingClient",
    "ListingResponse",
    "MediaProbe",
    "SourceError",
    "TransportError",
    "run_sync",
]
