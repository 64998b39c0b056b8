"""Public tunnel providers for ollama-bridge.

Public API:
    TunnelManager -- Abstract base class for providers
    TunnelHandle -- An open tunnel with its event queue
    RelayTunnelManager -- localtunnel-protocol relay
    ManagedTunnelManager -- authenticated ngrok agent (needs pyngrok)
    create_tunnel_manager -- Build the provider selected in settings
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from ollama_bridge.tunnel.base import TunnelHandle, TunnelManager

if TYPE_CHECKING:
    from ollama_bridge.config.settings import Settings
    from ollama_bridge.config.store import CredentialStore

__all__ = [
    "ManagedTunnelManager",
    "RelayTunnelManager",
    "TunnelHandle",
    "TunnelManager",
    "create_tunnel_manager",
]


def create_tunnel_manager(
    settings: Settings, store: CredentialStore | None = None
) -> TunnelManager:
    """Build the tunnel manager for ``settings.tunnel.provider``.

    For the managed provider the authtoken comes from configuration
    (including ``NGROK_AUTHTOKEN``) first, then from the credential store.
    """
    if settings.tunnel.provider == "managed":
        from ollama_bridge.tunnel.managed import ManagedTunnelManager

        managed = settings.managed
        token = managed.authtoken.get_secret_value()
        if not token and store is not None:
            token = store.get() or ""
        return ManagedTunnelManager(
            authtoken=token or None,
            domain=managed.domain,
            region=managed.region,
            allowed_domains=managed.allowed_domains,
            strip_request_headers=managed.strip_request_headers,
            open_timeout=settings.tunnel.open_timeout,
            poll_interval=managed.poll_interval,
        )

    from ollama_bridge.tunnel.relay import RelayTunnelManager

    return RelayTunnelManager(
        host=settings.relay.host,
        subdomain=settings.relay.subdomain,
        max_connections=settings.relay.max_connections,
        open_timeout=settings.tunnel.open_timeout,
    )


def __getattr__(name: str) -> type:
    """Lazy import for concrete providers that require external deps."""
    if name == "RelayTunnelManager":
        from ollama_bridge.tunnel.relay import RelayTunnelManager
        return RelayTunnelManager
    if name == "ManagedTunnelManager":
        from ollama_bridge.tunnel.managed import ManagedTunnelManager
        return ManagedTunnelManager
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
