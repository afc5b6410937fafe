"""TLS listener wiring and a threaded accept loop.

:func:`use_lets_encrypt` registers a TLS endpoint for a
:class:`~acmetls.certs.fetcher.CertificateFetcher` on a
:class:`ServerOptions`.  :class:`TlsServer` then binds every registered
endpoint, accepts on one thread per endpoint, and runs the handshake
plus the request handler for each connection on a bounded worker
pool, so a slow handshake never stalls ``accept()``.

Usage::

    options = use_lets_encrypt(ServerOptions(), fetcher)
    server = TlsServer(options, handler=hello_handler)
    server.start()
    server.wait()           # until stop() / SIGTERM
"""

from __future__ import annotations

import logging
import signal
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from acmetls.errors import ConfigurationError
from acmetls.logging.setup import connection_context
from acmetls.tls.adapter import ConnectionContext, HttpsConnectionAdapter

if TYPE_CHECKING:
    from collections.abc import Callable

    from acmetls.certs.fetcher import CertificateFetcher
    from acmetls.metrics.collector import MetricsCollector
    from acmetls.tls.adapter import AdaptedConnection
    from acmetls.tls.options import HttpsAdapterOptions

    ConnectionHandler = Callable[[AdaptedConnection, ConnectionContext], None]

log = logging.getLogger(__name__)

RESERVED_CHALLENGE_PORT = 80
DEFAULT_HTTPS_PORT = 443


@dataclass(frozen=True)
class ListenBinding:
    """One endpoint: bind address, port, and the adapter for its connections."""

    address: str
    port: int
    adapter: HttpsConnectionAdapter


@dataclass
class ServerOptions:
    """Endpoints the host server should listen on."""

    bindings: list[ListenBinding] = field(default_factory=list)

    def listen(self, address: str, port: int, adapter: HttpsConnectionAdapter) -> ListenBinding:
        binding = ListenBinding(address, port, adapter)
        self.bindings.append(binding)
        log.debug("Registered TLS endpoint %s:%d", address, port)
        return binding


def use_lets_encrypt(
    server_options: ServerOptions,
    fetcher: CertificateFetcher,
    https_options: HttpsAdapterOptions | None = None,
    port: int = DEFAULT_HTTPS_PORT,
    metrics: MetricsCollector | None = None,
) -> ServerOptions:
    """Listen on ``fetcher.address:port`` with certificates from *fetcher*.

    Raises
    ------
    ConfigurationError
        If *port* is 80, which the HTTP-01 challenge responder needs.
        Nothing is registered in that case.

    """
    if port == RESERVED_CHALLENGE_PORT:
        msg = "Port 80 is reserved for Let's Encrypt HTTP-01 challenge checks"
        raise ConfigurationError(msg)
    adapter = HttpsConnectionAdapter(https_options, fetcher, metrics=metrics)
    server_options.listen(fetcher.address, port, adapter)
    return server_options


class TlsServer:
    """Accept TLS connections on every binding of a :class:`ServerOptions`.

    Parameters
    ----------
    options:
        Registered endpoints.
    handler:
        Called with each adapted connection; the connection is closed
        when it returns.
    workers:
        Size of the handshake / handler pool.
    backlog:
        ``listen()`` backlog per endpoint.

    """

    def __init__(
        self,
        options: ServerOptions,
        handler: ConnectionHandler,
        *,
        workers: int = 16,
        backlog: int = 128,
    ) -> None:
        if not options.bindings:
            msg = "No TLS endpoints registered; call use_lets_encrypt() first"
            raise ConfigurationError(msg)
        self._options = options
        self._handler = handler
        self._backlog = backlog
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="acmetls-conn")
        self._sockets: list[tuple[socket.socket, ListenBinding]] = []
        self._threads: list[threading.Thread] = []
        self._stop = threading.Event()

    @property
    def addresses(self) -> list[tuple[str, int]]:
        """Bound ``(host, port)`` pairs, with real ports when 0 was requested."""
        return [sock.getsockname()[:2] for sock, _ in self._sockets]

    def start(self) -> None:
        for binding in self._options.bindings:
            sock = socket.create_server(
                (binding.address, binding.port),
                backlog=self._backlog,
                reuse_port=False,
            )
            sock.settimeout(0.5)
            self._sockets.append((sock, binding))
            thread = threading.Thread(
                target=self._accept_loop,
                args=(sock, binding),
                name=f"acmetls-accept-{binding.port}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
            log.info("TLS listener on %s:%d", *sock.getsockname()[:2])

    def wait(self) -> None:
        """Block until :meth:`stop` is called."""
        while not self._stop.wait(timeout=1.0):
            pass

    def stop(self) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=5)
        for sock, _ in self._sockets:
            sock.close()
        self._executor.shutdown(wait=True, cancel_futures=True)
        log.info("TLS listener stopped")

    def register_signals(self) -> None:
        """Stop on SIGTERM / SIGINT.  Must be called from the main thread."""
        try:
            signal.signal(signal.SIGTERM, self._signal_handler)
            signal.signal(signal.SIGINT, self._signal_handler)
        except (ValueError, OSError):
            log.debug("Could not register signal handlers (not main thread)")

    def _signal_handler(self, signum: int, frame) -> None:  # noqa: ANN001, ARG002
        log.info("Received %s, shutting down", signal.Signals(signum).name)
        threading.Thread(target=self.stop, name="acmetls-shutdown", daemon=True).start()

    # -- connections ----------------------------------------------------

    def _accept_loop(self, listener: socket.socket, binding: ListenBinding) -> None:
        while not self._stop.is_set():
            try:
                sock, addr = listener.accept()
            except TimeoutError:
                continue
            except OSError:
                if self._stop.is_set():
                    return
                log.exception("accept() failed on %s:%d", binding.address, binding.port)
                continue
            try:
                self._executor.submit(self._serve, sock, addr, binding)
            except RuntimeError:
                # executor already shut down
                sock.close()
                return

    def _serve(self, sock: socket.socket, addr: tuple, binding: ListenBinding) -> None:
        context = ConnectionContext(sock=sock, peer=f"{addr[0]}:{addr[1]}")
        with connection_context(context.connection_id, context.peer):
            log.debug("Accepted connection")
            conn = binding.adapter.on_connection(context)
            if conn.closed:
                return
            try:
                self._handler(conn, context)
            except Exception:
                log.exception("Connection handler failed")
            finally:
                conn.close()
