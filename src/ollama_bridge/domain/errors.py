"""Exception hierarchy for startup and tunnel failures.

Per-request failures (bad token, unreachable upstream during a proxied
exchange) are answered with HTTP responses and never raised past the
request handler. Everything here is fatal to the bridge process.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for errors that abort the bridge."""

    exit_code: int = 1


class UpstreamUnreachableError(BridgeError):
    """The upstream inference service did not answer the startup probe."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Upstream at {url} is not reachable")
        self.url = url


class PortExhaustedError(BridgeError):
    """No free local port was found within the retry bound."""

    def __init__(self, start: int, attempts: int) -> None:
        super().__init__(
            f"No free port found in {attempts} attempts starting at {start}"
        )
        self.start = start
        self.attempts = attempts


class TunnelError(BridgeError):
    """Raised when a tunnel cannot be opened."""

    def __init__(self, message: str, provider: str = "") -> None:
        super().__init__(message)
        self.provider = provider


class MissingCredentialError(TunnelError):
    """The managed provider needs an authtoken and none is stored."""


class ProviderRejectedError(TunnelError):
    """The tunnel provider refused the request or could not be reached."""
