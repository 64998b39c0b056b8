"""Managed tunnel backed by an authenticated ngrok agent (via pyngrok).

pyngrok drives the agent with blocking calls, so each one runs in a
worker thread. A monitor task polls the agent and turns a dead process
or a vanished tunnel into an event on the handle.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from typing import Iterable
from urllib.parse import urlsplit

from pyngrok import conf, ngrok, process
from pyngrok.exception import PyngrokError

from ollama_bridge.config.settings import DEFAULT_ALLOWED_DOMAINS
from ollama_bridge.domain.errors import MissingCredentialError, ProviderRejectedError
from ollama_bridge.domain.models import TunnelEventKind
from ollama_bridge.tunnel.base import TunnelHandle, TunnelManager

logger = logging.getLogger(__name__)

PROVIDER = "managed"
SKIP_WARNING_HEADER = "ngrok-skip-browser-warning"


def domain_allowed(hostname: str, patterns: Iterable[str]) -> bool:
    """Whether ``hostname`` matches any of the fnmatch ``patterns``."""
    hostname = hostname.lower()
    return any(fnmatch.fnmatch(hostname, p.lower()) for p in patterns)


class ManagedTunnel(TunnelHandle):
    """A tunnel held open by the local ngrok agent."""

    provider = PROVIDER

    def __init__(
        self,
        public_url: str,
        pyngrok_config: conf.PyngrokConfig,
        poll_interval: float = 5.0,
    ) -> None:
        super().__init__(public_url)
        self._config = pyngrok_config
        self._poll_interval = poll_interval
        self._monitor: asyncio.Task | None = None

    def start(self) -> None:
        self._monitor = asyncio.create_task(self._watch_agent(), name="ngrok-monitor")

    async def _watch_agent(self) -> None:
        while not self.is_closed:
            await asyncio.sleep(self._poll_interval)
            if not process.is_process_running(self._config.ngrok_path):
                self._emit(TunnelEventKind.ERROR, "ngrok agent process exited")
                return
            try:
                tunnels = await asyncio.to_thread(ngrok.get_tunnels, self._config)
            except PyngrokError as e:
                self._emit(TunnelEventKind.ERROR, f"ngrok agent unavailable: {e}")
                return
            if not any(t.public_url == self.public_url for t in tunnels):
                self._emit(TunnelEventKind.CLOSED, "Tunnel no longer listed by the ngrok agent")
                return

    async def _teardown(self) -> None:
        if self._monitor is not None:
            self._monitor.cancel()
            await asyncio.gather(self._monitor, return_exceptions=True)
        try:
            await asyncio.to_thread(ngrok.disconnect, self.public_url, self._config)
        except PyngrokError as e:
            logger.warning("ngrok disconnect failed: %s", e)
        await _kill_agent(self._config)


async def _kill_agent(pyngrok_config: conf.PyngrokConfig) -> None:
    try:
        await asyncio.to_thread(ngrok.kill, pyngrok_config)
    except PyngrokError as e:
        logger.warning("Failed to stop ngrok agent: %s", e)


class ManagedTunnelManager(TunnelManager):
    """Opens HTTPS-only ngrok tunnels restricted to an allow-list of domains."""

    provider = PROVIDER

    def __init__(
        self,
        authtoken: str | None,
        domain: str | None = None,
        region: str | None = None,
        allowed_domains: Iterable[str] = DEFAULT_ALLOWED_DOMAINS,
        strip_request_headers: Iterable[str] = (SKIP_WARNING_HEADER,),
        open_timeout: float = 15.0,
        poll_interval: float = 5.0,
    ) -> None:
        self._authtoken = authtoken
        self._domain = domain
        self._region = region
        self._allowed_domains = list(allowed_domains)
        self._strip_request_headers = list(strip_request_headers)
        self._open_timeout = open_timeout
        self._poll_interval = poll_interval

    def is_allowed(self, hostname: str) -> bool:
        return domain_allowed(hostname, self._allowed_domains)

    def tunnel_options(self) -> dict:
        """Tunnel definition passed through to the ngrok agent."""
        options: dict = {"schemes": ["https"]}
        if self._strip_request_headers:
            options["request_header"] = {"remove": list(self._strip_request_headers)}
        if self._domain:
            options["domain"] = self._domain
        return options

    def pyngrok_config(self) -> conf.PyngrokConfig:
        return conf.PyngrokConfig(auth_token=self._authtoken, region=self._region)

    async def open(self, local_port: int) -> ManagedTunnel:
        if not self._authtoken:
            raise MissingCredentialError(
                "No ngrok authtoken configured. "
                "Run `ollama-bridge credential set <token>` or set NGROK_AUTHTOKEN.",
                provider=PROVIDER,
            )
        if self._domain and not self.is_allowed(self._domain):
            raise ProviderRejectedError(
                f"Domain {self._domain} is not in the allowed domain list",
                provider=PROVIDER,
            )

        cfg = self.pyngrok_config()
        try:
            tunnel = await asyncio.wait_for(
                asyncio.to_thread(
                    ngrok.connect,
                    addr=f"127.0.0.1:{local_port}",
                    proto="http",
                    pyngrok_config=cfg,
                    **self.tunnel_options(),
                ),
                timeout=self._open_timeout,
            )
        except asyncio.TimeoutError as e:
            await _kill_agent(cfg)
            raise ProviderRejectedError(
                f"Timed out after {self._open_timeout}s waiting for ngrok",
                provider=PROVIDER,
            ) from e
        except PyngrokError as e:
            raise ProviderRejectedError(
                f"ngrok rejected tunnel request: {e}", provider=PROVIDER
            ) from e

        hostname = urlsplit(tunnel.public_url).hostname or ""
        if not self.is_allowed(hostname):
            logger.error("ngrok assigned disallowed domain %s, disconnecting", hostname)
            try:
                await asyncio.to_thread(ngrok.disconnect, tunnel.public_url, cfg)
            except PyngrokError as e:
                logger.warning("ngrok disconnect failed: %s", e)
            await _kill_agent(cfg)
            raise ProviderRejectedError(
                f"Assigned domain {hostname} is not in the allowed domain list",
                provider=PROVIDER,
            )

        handle = ManagedTunnel(tunnel.public_url, cfg, poll_interval=self._poll_interval)
        handle.start()
        logger.info("Managed tunnel open at %s", handle.public_url)
        return handle
