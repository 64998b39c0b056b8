"""Authenticated HTTP gateway in front of the upstream."""

from ollama_bridge.gateway.auth import AuthGateway
from ollama_bridge.gateway.server import create_app
from ollama_bridge.gateway.tokens import TokenIssuer

__all__ = ["AuthGateway", "TokenIssuer", "create_app"]
