"""Token authentication for every inbound request.

Implemented as plain ASGI middleware so HTTP requests and WebSocket
handshakes are checked by the same code before any route runs.
"""

from __future__ import annotations

import hmac
import logging

from starlette.datastructures import Headers
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Receive, Scope, Send
from starlette.websockets import WebSocketClose

from ollama_bridge.proxy.headers import AUTH_HEADER, cors_headers

logger = logging.getLogger(__name__)

PUBLIC_PATHS = frozenset({"/health"})

# WebSocket close code: policy violation
WS_POLICY_VIOLATION = 1008


class AuthGateway:
    """Rejects requests that lack the session's ``x-auth-token``.

    - ``OPTIONS`` on any path answers 204 with the CORS headers.
    - ``GET`` on a public path (``/health``) passes without a token.
    - Everything else needs a header equal to the secret, compared in
      constant time. Failures get a 401 JSON body (HTTP) or a 1008
      close before the handshake completes (WebSocket).

    On success the token header is removed from the scope handed on.
    """

    def __init__(
        self,
        app: ASGIApp,
        secret_token: str,
        public_paths: frozenset[str] = PUBLIC_PATHS,
    ) -> None:
        self.app = app
        self._secret = secret_token.encode()
        self._public_paths = public_paths
        self._header_key = AUTH_HEADER.encode("latin-1")

    def is_authorized(self, token: str | None) -> bool:
        if token is None:
            return False
        return hmac.compare_digest(token.encode(), self._secret)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        if scope["type"] == "http":
            method = scope["method"]
            if method == "OPTIONS":
                response: Response = Response(status_code=204, headers=cors_headers())
                await response(scope, receive, send)
                return
            if method == "GET" and scope["path"] in self._public_paths:
                await self.app(scope, receive, send)
                return

        token = Headers(scope=scope).get(AUTH_HEADER)
        if not self.is_authorized(token):
            logger.warning(
                "Rejected %s %s: token %s",
                scope["type"],
                scope["path"],
                "missing" if token is None else "mismatch",
            )
            if scope["type"] == "websocket":
                await WebSocketClose(code=WS_POLICY_VIOLATION)(scope, receive, send)
                return
            response = JSONResponse(
                {
                    "error": "Unauthorized",
                    "receivedToken": "missing" if token is None else "present",
                    "tokenMatch": False,
                },
                status_code=401,
                headers=cors_headers(),
            )
            await response(scope, receive, send)
            return

        scope = dict(scope)
        scope["headers"] = [
            (k, v) for k, v in scope["headers"] if k.lower() != self._header_key
        ]
        await self.app(scope, receive, send)
