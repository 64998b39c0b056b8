"""FastAPI application for the bridge listener.

Exposes an unauthenticated health check and proxies everything under
``/api`` to the upstream inference service. Authentication is handled
by :class:`AuthGateway` before any route runs.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import Response
from pydantic import BaseModel

from ollama_bridge.domain.models import Session, UpstreamTarget
from ollama_bridge.gateway.auth import AuthGateway
from ollama_bridge.proxy.forwarder import ProxyForwarder
from ollama_bridge.proxy.headers import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]


class HealthStatus(BaseModel):
    status: str = "ok"


def create_app(
    session: Session,
    upstream: UpstreamTarget,
    forwarder: ProxyForwarder | None = None,
    user_agent: str = DEFAULT_USER_AGENT,
    connect_timeout: float = 10.0,
) -> FastAPI:
    """Create and configure the gateway application.

    Args:
        session: The live session; its secret guards every proxied route.
        upstream: The inference service to forward to.
        forwarder: Optional pre-built forwarder (tests inject one wired to
            an ``httpx.MockTransport``).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Gateway listening on %s", session.local_url)
        yield
        await app.state.forwarder.aclose()
        logger.info("Gateway stopped")

    app = FastAPI(
        title="ollama-bridge",
        description="Authenticated public gateway to a local Ollama server",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.state.session = session
    app.state.forwarder = forwarder or ProxyForwarder(
        upstream, user_agent=user_agent, connect_timeout=connect_timeout
    )
    app.add_middleware(AuthGateway, secret_token=session.secret_token)

    @app.get("/health")
    async def health_check() -> HealthStatus:
        return HealthStatus()

    @app.api_route("/api", methods=PROXY_METHODS)
    @app.api_route("/api/{path:path}", methods=PROXY_METHODS)
    async def proxy(request: Request) -> Response:
        f: ProxyForwarder = app.state.forwarder
        return await f.forward_http(request)

    @app.websocket("/api")
    @app.websocket("/api/{path:path}")
    async def proxy_websocket(websocket: WebSocket) -> None:
        f: ProxyForwarder = app.state.forwarder
        await f.forward_websocket(websocket)

    return app
