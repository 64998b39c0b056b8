"""Core domain models for the bridge.

These models represent the values flowing through the system: the
upstream target being exposed, the per-run session that authorizes
access to it, individual proxied exchanges, and the lifecycle events
published by an open tunnel.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class BridgeState(str, enum.Enum):
    """Lifecycle states of the bridge process."""

    INIT = "init"
    PROBED = "probed"  # Upstream answered the probe
    PORTED = "ported"  # Local port allocated
    TUNNELED = "tunneled"  # Public tunnel open
    SERVING = "serving"  # Listener bound, session live
    CLOSING = "closing"
    TERMINATED = "terminated"


class TunnelEventKind(str, enum.Enum):
    """Asynchronous events a tunnel handle can publish."""

    ERROR = "error"  # Fatal tunnel failure, exit non-zero
    CLOSED = "closed"  # Remote side tore the tunnel down, exit zero


# ---------------------------------------------------------------------------
# Upstream
# ---------------------------------------------------------------------------


def normalize_loopback(url: str) -> str:
    """Replace a ``localhost`` host with ``127.0.0.1`` to force IPv4."""
    parts = urlsplit(url)
    if parts.hostname != "localhost":
        return url
    netloc = "127.0.0.1"
    if parts.port is not None:
        netloc = f"{netloc}:{parts.port}"
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"
    return urlunsplit(parts._replace(netloc=netloc))


class UpstreamTarget(BaseModel):
    """The inference service being exposed. Fixed for the process lifetime."""

    model_config = ConfigDict(frozen=True)

    base_url: str = Field(description="Upstream base URL as configured")

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, v: str) -> str:
        parts = urlsplit(v)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError(f"Upstream URL must be http(s)://host[:port], got: {v}")
        return v.rstrip("/")

    @property
    def resolved_url(self) -> str:
        """Base URL with ``localhost`` pinned to IPv4 loopback."""
        return normalize_loopback(self.base_url)

    @property
    def host_header(self) -> str:
        """The ``Host`` value the upstream expects (its own netloc)."""
        parts = urlsplit(self.resolved_url)
        host = parts.hostname or ""
        if parts.port is not None:
            return f"{host}:{parts.port}"
        return host

    @property
    def origin(self) -> str:
        parts = urlsplit(self.resolved_url)
        return f"{parts.scheme}://{self.host_header}"

    def url_for(self, path: str, query: str = "") -> str:
        """Absolute upstream URL for a rewritten request path."""
        base = urlsplit(self.resolved_url)
        if not path.startswith("/"):
            path = "/" + path
        full_path = base.path.rstrip("/") + path
        return urlunsplit((base.scheme, base.netloc, full_path, query, ""))

    def ws_url_for(self, path: str, query: str = "") -> str:
        """WebSocket URL for a rewritten request path."""
        url = self.url_for(path, query)
        if url.startswith("https://"):
            return "wss://" + url[len("https://"):]
        return "ws://" + url[len("http://"):]


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class Session(BaseModel):
    """The single per-run secret/port/URL tuple authorizing access.

    Built once the tunnel is open and handed to the listener; never
    mutated afterwards. The secret is left out of ``repr`` so it cannot
    leak into log lines by accident.
    """

    model_config = ConfigDict(frozen=True)

    secret_token: str = Field(repr=False, min_length=32)
    local_port: int = Field(ge=1, le=65535)
    public_url: str
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def local_url(self) -> str:
        return f"http://127.0.0.1:{self.local_port}"


# ---------------------------------------------------------------------------
# Proxy
# ---------------------------------------------------------------------------


class ProxyExchange(BaseModel):
    """One inbound request on its way to the upstream."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    method: str
    path: str = Field(description="Upstream path, prefix already stripped")
    query: str = Field(default="")
    headers: httpx.Headers = Field(description="Outbound headers, case-insensitive")
    body: Any = Field(default=None, description="Async byte iterator, or None for no body")
    is_upgrade: bool = Field(default=False)


# ---------------------------------------------------------------------------
# Tunnel
# ---------------------------------------------------------------------------


class TunnelEvent(BaseModel):
    """A lifecycle event published by a tunnel handle."""

    model_config = ConfigDict(frozen=True)

    kind: TunnelEventKind
    message: str = Field(default="")
    timestamp: datetime = Field(default_factory=datetime.now)

    @property
    def is_error(self) -> bool:
        return self.kind is TunnelEventKind.ERROR
