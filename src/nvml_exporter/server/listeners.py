"""
Listener set: one HTTP server per bind address, all serving the same
ExportEndpoint, each with its own shutdown signal.

A process interrupt fires every listener's signal at once; a single
listener can also be stopped on its own. A listener that fails to bind
or crashes is logged and reported, and never takes its siblings down.

Per-listener lifecycle: STARTING -> SERVING -> DRAINING -> STOPPED.
A listener that never gets to serve goes straight to STOPPED.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence

import uvicorn

from nvml_exporter.config import BindAddress, ExporterOptions
from nvml_exporter.errors import ListenerError

log = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ListenerState(Enum):
    STARTING = "starting"
    SERVING = "serving"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass
class ListenerOutcome:
    address: BindAddress
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class _ExporterServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the ListenerSet."""

    def __init__(self, config: uvicorn.Config, on_started: Callable[[], None]):
        super().__init__(config)
        self._on_started = on_started

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass

    async def startup(self, sockets=None) -> None:
        await super().startup(sockets=sockets)
        if self.started:
            self._on_started()


def bind_socket(address: BindAddress) -> socket.socket:
    """Create a listening-ready TCP socket for one bind address.

    IPv6 sockets are v6-only so that "[::]:port" and "0.0.0.0:port" can
    both be bound at once.
    """
    family = socket.AF_INET6 if address.is_ipv6 else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if family == socket.AF_INET6:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        sock.bind((address.host, address.port))
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class Listener:
    """Serves an ASGI app on one address until its shutdown signal fires."""

    def __init__(self, address: BindAddress, app):
        self.address = address
        self.state = ListenerState.STARTING
        self._app = app
        self._shutdown = asyncio.Event()
        self._serving = asyncio.Event()
        self._socket: Optional[socket.socket] = None
        self.bound_port: Optional[int] = None

    def shutdown(self) -> None:
        """Fire this listener's shutdown signal. Must run on the event loop."""
        self._shutdown.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    async def wait_serving(self) -> None:
        await self._serving.wait()

    def _mark_serving(self) -> None:
        self.state = ListenerState.SERVING
        self._serving.set()
        log.info("serving metrics on %s", self.address)

    def _server_config(self) -> uvicorn.Config:
        return uvicorn.Config(
            self._app,
            log_config=None,
            access_log=False,
            lifespan="off",
        )

    async def serve(self) -> None:
        if self._shutdown.is_set():
            self.state = ListenerState.STOPPED
            return

        try:
            self._socket = bind_socket(self.address)
        except OSError as exc:
            self.state = ListenerState.STOPPED
            raise ListenerError(self.address, f"could not bind: {exc}") from exc
        self.bound_port = self._socket.getsockname()[1]

        server = _ExporterServer(self._server_config(), on_started=self._mark_serving)
        watcher = asyncio.create_task(self._drain_on_shutdown(server))
        log.info("starting server on %s", self.address)
        try:
            await server.serve(sockets=[self._socket])
        finally:
            watcher.cancel()
            self._socket.close()
            self.state = ListenerState.STOPPED
            log.info("server on %s stopped", self.address)

    async def _drain_on_shutdown(self, server: uvicorn.Server) -> None:
        await self._shutdown.wait()
        # don't flip should_exit mid-startup; uvicorn would skip its shutdown
        await self._serving.wait()
        self.state = ListenerState.DRAINING
        log.warning("gracefully shutting down exporter on %s", self.address)
        server.should_exit = True


class ListenerSet:
    """Runs a group of listeners and waits for all of them to stop."""

    def __init__(self, listeners: Sequence[Listener]):
        self._listeners = list(listeners)

    @classmethod
    def from_addresses(cls, addresses: Iterable[BindAddress], app) -> "ListenerSet":
        return cls([Listener(address, app) for address in addresses])

    @classmethod
    def from_options(cls, options: ExporterOptions, app) -> "ListenerSet":
        return cls.from_addresses(options.listen, app)

    @property
    def listeners(self) -> List[Listener]:
        return list(self._listeners)

    def shutdown(self, address: Optional[BindAddress] = None) -> None:
        """Fire the shutdown signal of one listener, or of all of them."""
        for listener in self._listeners:
            if address is None or listener.address == address:
                listener.shutdown()

    async def run(self, install_signal_handlers: bool = False) -> List[ListenerOutcome]:
        """Start every listener and return once all have stopped.

        Failures are logged and returned, never raised.
        """
        loop = asyncio.get_running_loop()
        if install_signal_handlers:
            self._install_signal_handlers(loop)

        try:
            tasks = [
                asyncio.create_task(listener.serve(), name=f"listener {listener.address}")
                for listener in self._listeners
            ]
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            if install_signal_handlers:
                self._remove_signal_handlers(loop)

        outcomes = []
        for listener, result in zip(self._listeners, results):
            if isinstance(result, BaseException):
                log.error("error during server shutdown on %s: %s", listener.address, result)
                outcomes.append(ListenerOutcome(listener.address, result))
            else:
                outcomes.append(ListenerOutcome(listener.address))
        return outcomes

    def _on_signal(self, signum: int) -> None:
        log.debug("received signal %d, stopping all listeners", signum)
        self.shutdown()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum in _SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(signum, self._on_signal, signum)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(
                    signum,
                    lambda num, frame: loop.call_soon_threadsafe(self._on_signal, num),
                )

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum in _SHUTDOWN_SIGNALS:
            try:
                loop.remove_signal_handler(signum)
            except NotImplementedError:
                signal.signal(signum, signal.SIG_DFL)
