"""Tests for the token-checking middleware."""

from __future__ import annotations

from typing import Callable

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from ollama_bridge.gateway.auth import AuthGateway


@pytest.fixture
def upstream_calls() -> list[httpx.Request]:
    return []


@pytest.fixture
def client(make_app: Callable, upstream_calls: list[httpx.Request]) -> TestClient:
    def handler(request: httpx.Request) -> httpx.Response:
        upstream_calls.append(request)
        return httpx.Response(200, json={"models": []})

    return TestClient(make_app(handler))


class TestAuthGateway:
    def test_missing_token(self, client: TestClient, upstream_calls: list) -> None:
        """A request without a token gets the structured 401."""
        resp = client.get("/api/tags")
        assert resp.status_code == 401
        assert resp.json() == {
            "error": "Unauthorized",
            "receivedToken": "missing",
            "tokenMatch": False,
        }
        assert resp.headers["access-control-allow-origin"] == "*"
        assert upstream_calls == []

    def test_wrong_token(self, client: TestClient, upstream_calls: list) -> None:
        """A wrong token is rejected and never reaches the upstream."""
        resp = client.post("/api/generate", headers={"x-auth-token": "nope"}, json={})
        assert resp.status_code == 401
        assert resp.json()["receivedToken"] == "present"
        assert resp.json()["tokenMatch"] is False
        assert upstream_calls == []

    def test_token_with_different_length(self, client: TestClient, upstream_calls: list) -> None:
        """A token of the wrong length is rejected."""
        resp = client.get("/api/tags", headers={"x-auth-token": "a" * 65})
        assert resp.status_code == 401
        assert upstream_calls == []

    def test_valid_token(self, client: TestClient, auth: dict, upstream_calls: list) -> None:
        """The correct token lets the request through."""
        resp = client.get("/api/tags", headers=auth)
        assert resp.status_code == 200
        assert len(upstream_calls) == 1

    def test_token_not_forwarded(self, client: TestClient, auth: dict, upstream_calls: list) -> None:
        """The auth header should be stripped before proxying."""
        client.get("/api/tags", headers=auth)
        assert "x-auth-token" not in upstream_calls[0].headers

    def test_health_needs_no_token(self, client: TestClient) -> None:
        """GET /health should answer without a token."""
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_other_paths_need_token(self, client: TestClient) -> None:
        """Paths other than GET /health require the token."""
        assert client.get("/").status_code == 401
        assert client.post("/health").status_code == 401

    @pytest.mark.parametrize("path", ["/api/tags", "/health", "/anything"])
    def test_preflight(self, client: TestClient, upstream_calls: list, path: str) -> None:
        """OPTIONS on any path should answer 204 with CORS headers."""
        resp = client.options(path)
        assert resp.status_code == 204
        assert resp.headers["access-control-allow-origin"] == "*"
        assert resp.headers["access-control-allow-methods"] == "GET,POST,PUT,DELETE,OPTIONS"
        assert resp.headers["access-control-allow-headers"] == "*"
        assert upstream_calls == []

    def test_websocket_rejected_without_token(self, client: TestClient) -> None:
        """An unauthenticated WebSocket is closed with 1008."""
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/api/chat"):
                pass
        assert exc_info.value.code == 1008


class TestIsAuthorized:
    def test_compare(self) -> None:
        """Only the exact secret should be authorized."""
        gateway = AuthGateway(FastAPI(), secret_token="s" * 64)
        assert gateway.is_authorized("s" * 64) is True
        assert gateway.is_authorized("t" * 64) is False
        assert gateway.is_authorized(None) is False
        assert gateway.is_authorized("") is False
