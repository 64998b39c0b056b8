"""Startup reachability check for the upstream inference service.

Sends a lightweight read-only request to a well-known endpoint before
any listener or tunnel is opened, so a dead upstream shows up as a
configuration error instead of a stream of proxy errors.
"""

from __future__ import annotations

import logging

import httpx

from ollama_bridge.domain.models import normalize_loopback

logger = logging.getLogger(__name__)

DEFAULT_PROBE_PATH = "/api/tags"


class UpstreamProbe:
    """Checks that the upstream answers with a success status."""

    def __init__(
        self,
        probe_path: str = DEFAULT_PROBE_PATH,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not probe_path.startswith("/"):
            probe_path = "/" + probe_path
        self._probe_path = probe_path
        self._timeout = timeout
        self._transport = transport

    def probe_url(self, base_url: str) -> str:
        return normalize_loopback(base_url).rstrip("/") + self._probe_path

    async def check(self, base_url: str) -> bool:
        """Return True if the upstream responded with a 2xx status.

        Never raises; network errors and non-success statuses are logged
        and reported as False.
        """
        url = self.probe_url(base_url)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.get(url)
        except httpx.HTTPError as e:
            logger.error("Failed to connect to upstream at %s: %s", url, e)
            return False
        except ValueError as e:
            # Malformed URL
            logger.error("Invalid upstream URL %s: %s", url, e)
            return False

        if not resp.is_success:
            logger.error("Upstream probe %s returned HTTP %d", url, resp.status_code)
            return False

        logger.info("Upstream reachable at %s", url)
        return True
