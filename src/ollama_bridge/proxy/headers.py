"""HTTP header rules for the reverse proxy.

Filters hop-by-hop headers, rewrites the caller's identity headers to the
upstream's own, and applies the CORS and content-type rules to responses.
"""

from __future__ import annotations

from typing import Iterable, Mapping

import httpx

from ollama_bridge.domain.models import UpstreamTarget

AUTH_HEADER = "x-auth-token"
DEFAULT_USER_AGENT = "ollama-bridge"

# RFC 7230: Hop-by-hop headers that must not be forwarded
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Replaced with the upstream's own values on the way out
IDENTITY_HEADERS = {"host", "origin", "user-agent"}

REQUEST_EXCLUDED_HEADERS = HOP_BY_HOP_HEADERS | IDENTITY_HEADERS | {AUTH_HEADER}

# The ASGI server frames the streamed body itself
RESPONSE_EXCLUDED_HEADERS = HOP_BY_HOP_HEADERS | {"content-length"}

# Handshake headers the websockets client generates on its own
WEBSOCKET_EXCLUDED_HEADERS = REQUEST_EXCLUDED_HEADERS | {
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "sec-websocket-accept",
}

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,POST,PUT,DELETE,OPTIONS",
    "Access-Control-Allow-Headers": "*",
}

JSON_MEDIA_TYPE = "application/json"


def cors_headers() -> dict[str, str]:
    return dict(CORS_HEADERS)


def filter_headers(
    headers: Iterable[tuple[str, str]], exclude: set[str]
) -> list[tuple[str, str]]:
    """Drop every header whose lowercased name is in ``exclude``.

    Works on (name, value) pairs so repeated headers survive.
    """
    return [(k, v) for k, v in headers if k.lower() not in exclude]


def outbound_headers(
    inbound: Iterable[tuple[str, str]],
    upstream: UpstreamTarget,
    user_agent: str = DEFAULT_USER_AGENT,
    exclude: set[str] = REQUEST_EXCLUDED_HEADERS,
) -> httpx.Headers:
    """Headers to send upstream for an inbound request.

    Hop-by-hop headers, the auth token and the caller's identity headers
    are dropped; ``Host``, ``Origin`` and ``User-Agent`` are set so the
    upstream sees a local, same-origin client.
    """
    headers = httpx.Headers(filter_headers(inbound, exclude))
    headers["Host"] = upstream.host_header
    headers["Origin"] = upstream.origin
    headers["User-Agent"] = user_agent
    return headers


def normalize_content_type(content_type: str | None) -> str | None:
    """Content-Type to present to the client.

    Missing or ``application/json`` (with any parameters) becomes plain
    ``application/json``; anything else is passed through unchanged.
    """
    if not content_type:
        return JSON_MEDIA_TYPE
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type == JSON_MEDIA_TYPE:
        return JSON_MEDIA_TYPE
    return content_type


def response_headers(upstream_headers: httpx.Headers) -> list[tuple[str, str]]:
    """Filter upstream response headers and apply the CORS/content-type rules.

    Returns lowercased (name, value) pairs; repeated headers such as
    ``set-cookie`` keep every value.
    """
    replaced = {"content-type"} | {key.lower() for key in CORS_HEADERS}
    headers = [
        (k.lower(), v)
        for k, v in filter_headers(upstream_headers.multi_items(), RESPONSE_EXCLUDED_HEADERS)
        if k.lower() not in replaced
    ]
    headers.append(
        ("content-type", normalize_content_type(upstream_headers.get("content-type")))
    )
    headers.extend((key.lower(), value) for key, value in CORS_HEADERS.items())
    return headers


def has_request_body(headers: Mapping[str, str]) -> bool:
    """Whether the inbound request declares a body."""
    if "transfer-encoding" in headers:
        return True
    length = headers.get("content-length")
    return length is not None and length.strip() not in ("", "0")
