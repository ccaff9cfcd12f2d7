"""Adapters package - aiohttp implementations of the engine's collaborators.

The REST client and websocket transport connect the engine to the
platform API and its push channels.
"""
from __future__ import annotations

__all__ = [
    "StorefrontApiClient",
    "WebSocketTransport",
    "websocket_transport_factory",
]

from storesync.adapters.rest_client import StorefrontApiClient
from storesync.adapters.ws_transport import WebSocketTransport, websocket_transport_factory
