"""Local port selection for the bridge listener."""

from __future__ import annotations

import logging
import socket

from ollama_bridge.domain.errors import PortExhaustedError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3535
DEFAULT_MAX_ATTEMPTS = 100
MAX_PORT = 65535


class PortAllocator:
    """Finds the first bindable TCP port at or above a starting point.

    A port counts as available when a transient socket can bind to it
    and be released again. Nothing stays bound after ``allocate``
    returns, so the caller must bind the port itself.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        default_port: int = DEFAULT_PORT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._host = host
        self._default_port = default_port
        self._max_attempts = max_attempts

    def is_available(self, port: int) -> bool:
        """Whether ``port`` can currently be bound on the listen host."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((self._host, port))
            except OSError:
                return False
        return True

    def allocate(self, preferred: int | None = None) -> int:
        """Return the smallest available port >= ``preferred`` (or the default).

        Raises:
            PortExhaustedError: If no port is free within ``max_attempts``
                tries or before running past 65535.
        """
        start = preferred or self._default_port
        port = start
        for _ in range(self._max_attempts):
            if port > MAX_PORT:
                break
            if self.is_available(port):
                if port != start:
                    logger.info("Port %d in use, using %d instead", start, port)
                return port
            logger.debug("Port %d unavailable", port)
            port += 1
        raise PortExhaustedError(start, self._max_attempts)
