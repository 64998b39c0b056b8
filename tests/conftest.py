"""Shared test fixtures for the ollama-bridge test suite.

Provides common fixtures used across the unit tests: settings isolated
from the user's environment, a live session, the upstream target and
helpers for wiring the gateway to an ``httpx.MockTransport`` upstream.
"""

from __future__ import annotations

import os
import socket
from pathlib import Path
from typing import Callable

import httpx
import pytest
from fastapi import FastAPI

from ollama_bridge.config.settings import Settings
from ollama_bridge.domain.models import Session, UpstreamTarget
from ollama_bridge.gateway.server import create_app
from ollama_bridge.proxy.forwarder import ProxyForwarder

SECRET = "a" * 64


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer credentials out of the tests."""
    monkeypatch.delenv("NGROK_AUTHTOKEN", raising=False)
    for key in list(os.environ):
        if key.startswith("OLLAMA_BRIDGE_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def free_port() -> int:
    """A TCP port nothing is listening on (at the time of the call)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# ---------------------------------------------------------------------------
# Configuration / domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Default settings with the credential store under tmp_path."""
    s = Settings()
    s.store.path = tmp_path / "credentials.yaml"
    return s


@pytest.fixture
def upstream() -> UpstreamTarget:
    return UpstreamTarget(base_url="http://localhost:11434")


@pytest.fixture
def session() -> Session:
    return Session(
        secret_token=SECRET,
        local_port=3535,
        public_url="https://quiet-fox.loca.lt",
    )


@pytest.fixture
def auth() -> dict[str, str]:
    """Headers carrying the valid session token."""
    return {"x-auth-token": SECRET}


# ---------------------------------------------------------------------------
# Gateway fixtures
# ---------------------------------------------------------------------------


Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def make_app(session: Session, upstream: UpstreamTarget) -> Callable[[Handler], FastAPI]:
    """Build the gateway app with the upstream replaced by ``handler``."""

    def _make(handler: Handler) -> FastAPI:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        forwarder = ProxyForwarder(upstream, client=client)
        return create_app(session, upstream, forwarder=forwarder)

    return _make
