"""Abstract interface for public tunnel providers.

A :class:`TunnelManager` opens a tunnel to a local port and returns a
:class:`TunnelHandle`. The handle exposes the assigned public URL and an
event queue the lifecycle controller waits on, so provider-specific
failure reporting never reaches past this module boundary.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

from ollama_bridge.domain.models import TunnelEvent, TunnelEventKind

logger = logging.getLogger(__name__)


class TunnelHandle(ABC):
    """An open tunnel.

    Publishes at most one terminal event (``ERROR`` or ``CLOSED``) on
    :attr:`events`. ``close`` is idempotent and never raises for
    provider-side teardown failures.
    """

    provider: str = ""

    def __init__(self, public_url: str) -> None:
        self._public_url = public_url
        self._events: asyncio.Queue[TunnelEvent] = asyncio.Queue()
        self._terminal_sent = False
        self._closed = False

    @property
    def public_url(self) -> str:
        return self._public_url

    @property
    def events(self) -> asyncio.Queue[TunnelEvent]:
        return self._events

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _emit(self, kind: TunnelEventKind, message: str = "") -> None:
        if self._closed or self._terminal_sent:
            return
        self._terminal_sent = True
        level = logging.ERROR if kind is TunnelEventKind.ERROR else logging.INFO
        logger.log(level, "%s tunnel %s: %s", self.provider, kind.value, message)
        self._events.put_nowait(TunnelEvent(kind=kind, message=message))

    async def close(self) -> None:
        """Release the tunnel. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self._teardown()
        logger.info("%s tunnel closed", self.provider)

    @abstractmethod
    async def _teardown(self) -> None:
        """Provider-specific release of the tunnel."""
        ...


class TunnelManager(ABC):
    """Opens tunnels for one provider."""

    provider: str = ""

    @abstractmethod
    async def open(self, local_port: int) -> TunnelHandle:
        """Open a tunnel forwarding to ``127.0.0.1:<local_port>``.

        Raises:
            TunnelError: If the provider rejects the request, the
                credential is missing, or the open times out.
        """
        ...
