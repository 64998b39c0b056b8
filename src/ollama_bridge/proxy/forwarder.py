"""Streaming reverse proxy from the gateway to the upstream service.

HTTP exchanges are relayed with httpx streaming in both directions, so
long-running generation responses reach the client chunk by chunk.
WebSocket upgrades are bridged frame by frame with the websockets client.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

import httpx
from fastapi import Request, WebSocket
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.websockets import WebSocketDisconnect, WebSocketState
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from ollama_bridge.domain.models import ProxyExchange, UpstreamTarget
from ollama_bridge.proxy.headers import (
    DEFAULT_USER_AGENT,
    WEBSOCKET_EXCLUDED_HEADERS,
    cors_headers,
    has_request_body,
    outbound_headers,
    response_headers,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api"

# Close codes that may not be sent on the wire
_RESERVED_CLOSE_CODES = {1005, 1006, 1015}


def strip_api_prefix(path: str) -> str:
    """Map a gateway path onto the upstream: ``/api/tags`` -> ``/tags``."""
    if path == API_PREFIX:
        return "/"
    if path.startswith(API_PREFIX + "/"):
        return path[len(API_PREFIX):]
    return path


class ProxyForwarder:
    """Relays authenticated ``/api/*`` traffic to the upstream target.

    Owns a single ``httpx.AsyncClient``; only the connect phase is bounded
    since generation streams can stay open for minutes.
    """

    def __init__(
        self,
        upstream: UpstreamTarget,
        client: httpx.AsyncClient | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        connect_timeout: float = 10.0,
    ) -> None:
        self._upstream = upstream
        self._user_agent = user_agent
        self._connect_timeout = connect_timeout
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=connect_timeout),
        )

    @property
    def upstream(self) -> UpstreamTarget:
        return self._upstream

    async def aclose(self) -> None:
        await self._client.aclose()

    def build_exchange(self, request: Request) -> ProxyExchange:
        body = request.stream() if has_request_body(request.headers) else None
        return ProxyExchange(
            method=request.method,
            path=strip_api_prefix(request.url.path),
            query=request.url.query,
            headers=outbound_headers(
                request.headers.items(), self._upstream, self._user_agent
            ),
            body=body,
        )

    async def forward_http(self, request: Request) -> Response:
        """Send one request upstream and stream the answer back.

        Transport failures are answered with a 502 JSON body; nothing is
        raised to the caller.
        """
        exchange = self.build_exchange(request)
        url = self._upstream.url_for(exchange.path, exchange.query)
        upstream_request = self._client.build_request(
            exchange.method,
            url,
            headers=exchange.headers,
            content=exchange.body,
        )
        logger.debug("Proxying %s %s -> %s", exchange.method, request.url.path, url)

        try:
            upstream_response = await self._client.send(upstream_request, stream=True)
        except httpx.RequestError as e:
            logger.error("Proxy error for %s: %s", request.url.path, e)
            return JSONResponse(
                {"error": "Proxy Error", "message": str(e) or type(e).__name__},
                status_code=502,
                headers=cors_headers(),
            )

        response = StreamingResponse(
            _relay_body(upstream_response, request.url.path),
            status_code=upstream_response.status_code,
            background=BackgroundTask(upstream_response.aclose),
        )
        for key, value in response_headers(upstream_response.headers):
            response.headers.append(key, value)
        return response

    async def forward_websocket(self, websocket: WebSocket) -> None:
        """Bridge a client WebSocket to the matching upstream endpoint."""
        path = strip_api_prefix(websocket.url.path)
        url = self._upstream.ws_url_for(path, websocket.url.query)
        headers = outbound_headers(
            websocket.headers.items(),
            self._upstream,
            self._user_agent,
            exclude=WEBSOCKET_EXCLUDED_HEADERS,
        )
        extra = [
            (k, v)
            for k, v in headers.multi_items()
            if k.lower() not in ("host", "origin", "user-agent")
        ]
        subprotocols = websocket.scope.get("subprotocols") or None

        try:
            upstream_ws = await connect(
                url,
                additional_headers=extra,
                origin=headers["origin"],
                user_agent_header=self._user_agent,
                subprotocols=subprotocols,
                open_timeout=self._connect_timeout,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error("WebSocket proxy error for %s: %s", websocket.url.path, e)
            await websocket.accept()
            await websocket.close(code=1011, reason="Proxy Error")
            return

        await websocket.accept(subprotocol=upstream_ws.subprotocol)
        logger.debug("WebSocket bridged %s -> %s", websocket.url.path, url)

        pumps = [
            asyncio.create_task(_client_to_upstream(websocket, upstream_ws)),
            asyncio.create_task(_upstream_to_client(upstream_ws, websocket)),
        ]
        try:
            _, pending = await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        finally:
            await upstream_ws.close()
            if (
                websocket.client_state is WebSocketState.CONNECTED
                and websocket.application_state is WebSocketState.CONNECTED
            ):
                code = upstream_ws.close_code
                if code is None or code in _RESERVED_CLOSE_CODES:
                    code = 1000
                await websocket.close(code=code)


async def _relay_body(response: httpx.Response, path: str) -> AsyncIterator[bytes]:
    """Yield upstream body chunks; a mid-stream failure propagates to abort the client."""
    try:
        async for chunk in response.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        logger.error("Upstream stream for %s ended early: %s", path, e)
        await response.aclose()
        raise


async def _client_to_upstream(websocket: WebSocket, upstream_ws: ClientConnection) -> None:
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            if message.get("text") is not None:
                await upstream_ws.send(message["text"])
            elif message.get("bytes") is not None:
                await upstream_ws.send(message["bytes"])
    except ConnectionClosed:
        logger.debug("Upstream WebSocket closed while sending")


async def _upstream_to_client(upstream_ws: ClientConnection, websocket: WebSocket) -> None:
    try:
        async for message in upstream_ws:
            if isinstance(message, str):
                await websocket.send_text(message)
            else:
                await websocket.send_bytes(message)
    except ConnectionClosed:
        logger.debug("Upstream WebSocket closed abnormally")
    except WebSocketDisconnect:
        logger.debug("Client WebSocket went away while sending")
