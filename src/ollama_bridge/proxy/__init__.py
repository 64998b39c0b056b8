"""Reverse proxy from the gateway to the upstream inference service."""

from ollama_bridge.proxy.forwarder import ProxyForwarder, strip_api_prefix
from ollama_bridge.proxy.headers import (
    CORS_HEADERS,
    HOP_BY_HOP_HEADERS,
    cors_headers,
    normalize_content_type,
    outbound_headers,
)

__all__ = [
    "CORS_HEADERS",
    "HOP_BY_HOP_HEADERS",
    "ProxyForwarder",
    "cors_headers",
    "normalize_content_type",
    "outbound_headers",
    "strip_api_prefix",
]
