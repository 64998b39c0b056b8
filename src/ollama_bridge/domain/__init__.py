"""Domain models for ollama-bridge.

This package contains the core data structures, enumerations and the
error hierarchy used throughout the system. All models use Pydantic v2
for validation.
"""

from ollama_bridge.domain.errors import (
    BridgeError,
    MissingCredentialError,
    PortExhaustedError,
    ProviderRejectedError,
    TunnelError,
    UpstreamUnreachableError,
)
from ollama_bridge.domain.models import (
    BridgeState,
    ProxyExchange,
    Session,
    TunnelEvent,
    TunnelEventKind,
    UpstreamTarget,
)

__all__ = [
    "BridgeError",
    "BridgeState",
    "MissingCredentialError",
    "PortExhaustedError",
    "ProviderRejectedError",
    "ProxyExchange",
    "Session",
    "TunnelError",
    "TunnelEvent",
    "TunnelEventKind",
    "UpstreamTarget",
    "UpstreamUnreachableError",
]
