"""Relay tunnel speaking the localtunnel client protocol.

The relay server hands out an endpoint (``GET <host>/?new`` or
``GET <host>/<subdomain>``) together with a TCP port on its side. The
client keeps a small pool of outbound connections to that port; each
one is spliced to the local listener as soon as the relay pushes a
request down it, then replaced with a fresh connection.
"""

from __future__ import annotations

import asyncio
import logging
import re
from urllib.parse import urlsplit

import httpx

from ollama_bridge.domain.errors import ProviderRejectedError
from ollama_bridge.domain.models import TunnelEventKind
from ollama_bridge.tunnel.base import TunnelHandle, TunnelManager

logger = logging.getLogger(__name__)

PROVIDER = "relay"
DEFAULT_RELAY_HOST = "https://localtunnel.me"
SUBDOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]{2,61}[a-z0-9]$")

CHUNK_SIZE = 65536
# Remote closes a freshly opened connection this many times in a row:
# the relay has dropped our endpoint.
MAX_CONSECUTIVE_DROPS = 5
RECONNECT_DELAY = 1.0


def validate_subdomain(subdomain: str) -> str:
    """Return ``subdomain`` if it is 4-63 lowercase alphanumerics/hyphens."""
    if not SUBDOMAIN_RE.match(subdomain):
        raise ProviderRejectedError(
            f"Invalid subdomain {subdomain!r}: use 4-63 lowercase letters, "
            "digits or hyphens, not starting or ending with a hyphen",
            provider=PROVIDER,
        )
    return subdomain


async def pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    """Copy bytes until EOF, then close the writing side."""
    try:
        while True:
            data = await reader.read(CHUNK_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except OSError as e:
        logger.debug("Pipe closed: %s", e)
    finally:
        writer.close()


class RelayTunnel(TunnelHandle):
    """A pool of relay connections spliced to the local listener."""

    provider = PROVIDER

    def __init__(
        self,
        public_url: str,
        remote_host: str,
        remote_port: int,
        local_port: int,
        max_connections: int,
        local_host: str = "127.0.0.1",
        tunnel_id: str = "",
    ) -> None:
        super().__init__(public_url)
        self.tunnel_id = tunnel_id
        self._remote_host = remote_host
        self._remote_port = remote_port
        self._local_host = local_host
        self._local_port = local_port
        self._max_connections = max_connections
        self._consecutive_drops = 0
        self._workers: list[asyncio.Task] = []

    @property
    def connection_count(self) -> int:
        return self._max_connections

    def start(self) -> None:
        for i in range(self._max_connections):
            self._workers.append(
                asyncio.create_task(self._run_connection(i), name=f"relay-conn-{i}")
            )
            self._workers[-1].add_done_callback(self._worker_done)
        logger.info(
            "Relay tunnel %s -> %s:%d with %d connections",
            self.public_url,
            self._remote_host,
            self._remote_port,
            self._max_connections,
        )

    async def _run_connection(self, index: int) -> None:
        while not self.is_closed:
            try:
                remote_reader, remote_writer = await asyncio.open_connection(
                    self._remote_host, self._remote_port
                )
            except ConnectionRefusedError:
                self._emit(
                    TunnelEventKind.ERROR,
                    f"Relay refused connection to {self._remote_host}:{self._remote_port}; "
                    "check your firewall settings",
                )
                return
            except OSError as e:
                self._emit(TunnelEventKind.ERROR, f"Relay connection failed: {e}")
                return

            first = await _read_first(remote_reader)
            if not first:
                remote_writer.close()
                self._consecutive_drops += 1
                if self._consecutive_drops >= MAX_CONSECUTIVE_DROPS:
                    self._emit(TunnelEventKind.CLOSED, "Relay released the tunnel")
                    return
                await asyncio.sleep(RECONNECT_DELAY)
                continue
            self._consecutive_drops = 0

            try:
                local_reader, local_writer = await asyncio.open_connection(
                    self._local_host, self._local_port
                )
            except OSError as e:
                logger.warning(
                    "Connection %d: local listener %s:%d unavailable: %s",
                    index, self._local_host, self._local_port, e,
                )
                remote_writer.close()
                continue

            try:
                local_writer.write(first)
                await local_writer.drain()
                await asyncio.gather(
                    pipe(remote_reader, local_writer),
                    pipe(local_reader, remote_writer),
                )
            except OSError as e:
                logger.debug("Connection %d: splice ended: %s", index, e)
                local_writer.close()
                remote_writer.close()

    def _worker_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or self.is_closed:
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Relay %s stopped: %r", task.get_name(), exc)
        if all(worker.done() for worker in self._workers):
            self._emit(TunnelEventKind.ERROR, "All relay connections have stopped")

    async def _teardown(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()


async def _read_first(reader: asyncio.StreamReader) -> bytes:
    try:
        return await reader.read(CHUNK_SIZE)
    except OSError:
        return b""


class RelayTunnelManager(TunnelManager):
    """Requests endpoints from a localtunnel-compatible relay server."""

    provider = PROVIDER

    def __init__(
        self,
        host: str = DEFAULT_RELAY_HOST,
        subdomain: str | None = None,
        max_connections: int = 10,
        open_timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._host = host.rstrip("/")
        self._subdomain = validate_subdomain(subdomain) if subdomain else None
        self._max_connections = max_connections
        self._open_timeout = open_timeout
        self._transport = transport

    def endpoint_url(self) -> str:
        if self._subdomain:
            return f"{self._host}/{self._subdomain}"
        return f"{self._host}/?new"

    async def request_endpoint(self) -> dict:
        """Ask the relay for an endpoint and return its JSON description."""
        url = self.endpoint_url()
        try:
            async with httpx.AsyncClient(
                timeout=self._open_timeout, transport=self._transport
            ) as client:
                resp = await client.get(url)
        except httpx.TimeoutException as e:
            raise ProviderRejectedError(
                f"Timed out after {self._open_timeout}s waiting for relay {self._host}",
                provider=PROVIDER,
            ) from e
        except httpx.HTTPError as e:
            raise ProviderRejectedError(
                f"Relay {self._host} unreachable: {e}", provider=PROVIDER
            ) from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if not resp.is_success or "port" not in body:
            message = body.get("message") or f"HTTP {resp.status_code}"
            raise ProviderRejectedError(
                f"Relay rejected tunnel request: {message}", provider=PROVIDER
            )
        if not body.get("url"):
            raise ProviderRejectedError(
                "Relay response is missing the public url", provider=PROVIDER
            )
        try:
            body["port"] = int(body["port"])
            body["max_conn_count"] = int(body.get("max_conn_count") or 1)
        except (TypeError, ValueError):
            raise ProviderRejectedError(
                f"Relay returned an invalid endpoint: port={body.get('port')!r}", provider=PROVIDER
            ) from None
        if not 0 < body["port"] < 65536:
            raise ProviderRejectedError(
                f"Relay returned an invalid endpoint: port={body['port']}", provider=PROVIDER
            )
        return body

    async def open(self, local_port: int) -> RelayTunnel:
        body = await self.request_endpoint()
        remote_host = body.get("ip") or urlsplit(self._host).hostname
        max_conn = max(1, min(body["max_conn_count"], self._max_connections))

        tunnel = RelayTunnel(
            public_url=body["url"],
            remote_host=remote_host,
            remote_port=body["port"],
            local_port=local_port,
            max_connections=max_conn,
            tunnel_id=str(body.get("id", "")),
        )
        tunnel.start()
        return tunnel
