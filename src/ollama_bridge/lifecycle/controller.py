"""Startup sequencing, serving and shutdown of the bridge.

The controller walks the bridge through its states::

    INIT -> PROBED -> PORTED -> TUNNELED -> SERVING -> CLOSING -> TERMINATED

It owns the process signal handlers (uvicorn's are disabled), waits on
whichever comes first of a signal, a tunnel event or the listener
stopping, and maps the outcome to a process exit code. Every path out of
``run`` releases an opened tunnel and stops the listener.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from contextlib import contextmanager
from typing import Any, Callable, Iterator

import uvicorn
from fastapi import FastAPI

from ollama_bridge.config.settings import Settings
from ollama_bridge.domain.errors import BridgeError, UpstreamUnreachableError
from ollama_bridge.domain.models import BridgeState, Session, UpstreamTarget
from ollama_bridge.gateway.server import create_app
from ollama_bridge.gateway.tokens import TokenIssuer
from ollama_bridge.net.ports import PortAllocator
from ollama_bridge.tunnel.base import TunnelHandle, TunnelManager
from ollama_bridge.upstream.probe import UpstreamProbe
from ollama_bridge.utils.display import ConsoleDisplay

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1

SHUTDOWN_TIMEOUT = 5.0
TUNNEL_CLOSE_TIMEOUT = 10.0
HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class _BridgeServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the controller."""

    def install_signal_handlers(self) -> None:
        pass

    @contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def build_server(app: FastAPI, host: str, port: int) -> uvicorn.Server:
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        access_log=False,
        lifespan="on",
    )
    return _BridgeServer(config)


ServerFactory = Callable[[FastAPI, str, int], Any]


class LifecycleController:
    """Runs one bridge session from probe to teardown.

    All collaborators can be injected; by default they are built from
    ``settings``.
    """

    def __init__(
        self,
        settings: Settings,
        tunnel_manager: TunnelManager,
        display: ConsoleDisplay | None = None,
        probe: UpstreamProbe | None = None,
        allocator: PortAllocator | None = None,
        issuer: TokenIssuer | None = None,
        server_factory: ServerFactory = build_server,
        install_signals: bool = True,
    ) -> None:
        self._settings = settings
        self._tunnel_manager = tunnel_manager
        self._display = display or ConsoleDisplay(show_qr=settings.display.qr)
        self._probe = probe or UpstreamProbe(
            probe_path=settings.upstream.probe_path,
            timeout=settings.upstream.probe_timeout,
        )
        self._allocator = allocator or PortAllocator(
            host=settings.server.host,
            default_port=settings.server.default_port,
            max_attempts=settings.server.max_port_attempts,
        )
        self._issuer = issuer or TokenIssuer()
        self._server_factory = server_factory
        self._install_signals = install_signals

        self.state = BridgeState.INIT
        self.session: Session | None = None
        self._stop = asyncio.Event()
        self._handle: TunnelHandle | None = None
        self._server: Any = None
        self._server_task: asyncio.Task | None = None
        self._previous_handlers: dict[int, Any] = {}
        self._loop_handlers: list[int] = []

    @property
    def tunnel(self) -> TunnelHandle | None:
        return self._handle

    def request_stop(self) -> None:
        """Begin shutdown as if a termination signal had arrived."""
        self._stop.set()

    def _transition(self, state: BridgeState) -> None:
        logger.debug("Bridge state %s -> %s", self.state.value, state.value)
        self.state = state

    # ------------------------------------------------------------------
    # Main entry
    # ------------------------------------------------------------------

    async def run(self) -> int:
        """Start the bridge, serve until told to stop, and return the exit code."""
        loop = asyncio.get_running_loop()
        if self._install_signals:
            self._install_signal_handlers(loop)

        stop_wait = asyncio.create_task(self._stop.wait())
        startup = asyncio.create_task(self._start())
        try:
            done, _ = await asyncio.wait(
                {startup, stop_wait}, return_when=asyncio.FIRST_COMPLETED
            )
            if startup not in done:
                logger.info("Stop requested during startup")
                return EXIT_OK
            startup.result()
            return await self._serve()
        except BridgeError as e:
            logger.error("Bridge failed: %s", e)
            self._display.error(str(e))
            return e.exit_code
        except Exception as e:
            logger.exception("Unexpected error: %s", e)
            self._display.error(f"Unexpected error: {e}")
            return EXIT_FAILURE
        finally:
            for task in (startup, stop_wait):
                task.cancel()
            await asyncio.gather(startup, stop_wait, return_exceptions=True)
            await self._shutdown()
            self._remove_signal_handlers(loop)
            self._transition(BridgeState.TERMINATED)

    async def _start(self) -> None:
        settings = self._settings
        try:
            upstream = UpstreamTarget(base_url=settings.upstream.url)
        except ValueError as e:
            raise BridgeError(f"Invalid Ollama URL: {settings.upstream.url}") from e

        self._display.status(f"Checking Ollama at {upstream.base_url} ...")
        if not await self._probe.check(upstream.base_url):
            raise UpstreamUnreachableError(upstream.base_url)
        self._transition(BridgeState.PROBED)

        port = self._allocator.allocate(settings.server.port)
        self._transition(BridgeState.PORTED)

        self._display.status("Raising bridge ...")
        self._handle = await self._tunnel_manager.open(port)
        self._transition(BridgeState.TUNNELED)

        self.session = Session(
            secret_token=self._issuer.issue(),
            local_port=port,
            public_url=self._handle.public_url,
        )
        app = create_app(
            self.session,
            upstream,
            user_agent=settings.upstream.user_agent,
            connect_timeout=settings.upstream.connect_timeout,
        )
        self._server = self._server_factory(app, settings.server.host, port)
        self._server_task = asyncio.create_task(_serve_listener(self._server))
        try:
            await asyncio.wait_for(
                self._wait_started(settings.server.host, port),
                timeout=settings.server.startup_timeout,
            )
        except asyncio.TimeoutError as e:
            raise BridgeError(
                f"Listener did not start within {settings.server.startup_timeout}s"
            ) from e
        self._transition(BridgeState.SERVING)
        logger.info("Bridge serving %s via %s", self.session.local_url, self.session.public_url)
        self._display.connection_details(self.session)

    async def _wait_started(self, host: str, port: int) -> None:
        while not self._server.started:
            if self._server_task.done():
                # Propagates the bind failure
                self._server_task.result()
                raise BridgeError(f"Listener on {host}:{port} stopped during startup")
            await asyncio.sleep(0.05)

    async def _serve(self) -> int:
        event_wait = asyncio.create_task(self._handle.events.get())
        stop_wait = asyncio.create_task(self._stop.wait())
        try:
            done, _ = await asyncio.wait(
                {event_wait, stop_wait, self._server_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (event_wait, stop_wait):
                if not task.done():
                    task.cancel()

        if stop_wait in done:
            logger.info("Termination signal received, shutting down")
            self._display.status("Shutting down ...")
            return EXIT_OK

        if event_wait in done:
            event = event_wait.result()
            if event.is_error:
                self._display.error(f"Tunnel failed: {event.message}")
                return EXIT_FAILURE
            self._display.status(f"Tunnel closed: {event.message}")
            return EXIT_OK

        exc = self._server_task.exception()
        if exc is not None:
            logger.error("Listener crashed: %s", exc)
        else:
            logger.error("Listener stopped unexpectedly")
        self._display.error("Local listener stopped")
        return EXIT_FAILURE

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def _shutdown(self) -> None:
        self._transition(BridgeState.CLOSING)

        if self._handle is not None:
            try:
                await asyncio.wait_for(self._handle.close(), timeout=TUNNEL_CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Timed out closing tunnel")

        if self._server is not None:
            self._server.should_exit = True
            self._server.force_exit = True

        task = self._server_task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(task, timeout=SHUTDOWN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Listener did not stop within %.0fs", SHUTDOWN_TIMEOUT)
            except Exception as e:
                logger.error("Listener exited with error: %s", e)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in HANDLED_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_stop)
                self._loop_handlers.append(sig)
            except NotImplementedError:
                # Windows: no loop signal support
                self._previous_handlers[sig] = signal.signal(
                    sig, lambda *_: loop.call_soon_threadsafe(self.request_stop)
                )

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self._loop_handlers:
            loop.remove_signal_handler(sig)
        self._loop_handlers.clear()
        for sig, previous in self._previous_handlers.items():
            signal.signal(sig, previous)
        self._previous_handlers.clear()


async def _serve_listener(server: Any) -> None:
    try:
        await server.serve()
    except SystemExit as e:
        # uvicorn exits the process when it cannot bind
        raise BridgeError("Local listener failed to start") from e
