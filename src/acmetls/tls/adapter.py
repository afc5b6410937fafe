"""TLS connection adapter.

Runs the server side of the TLS handshake on an accepted socket using
the fetcher's current certificate, applies the client-certificate
policy from :class:`~acmetls.tls.options.HttpsAdapterOptions`, and
hands back either an :class:`AdaptedConnection` over the encrypted
stream or the shared :data:`CLOSED_CONNECTION` sentinel.  Handshake
failures never propagate to the caller.

OpenSSL's verify callback only records chain errors here and always
lets the handshake continue; the trust decision is taken afterwards so
that a custom validator can see the complete error list.
"""

from __future__ import annotations

import logging
import select
import socket
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from OpenSSL import SSL, crypto

from acmetls.errors import CertificateBundleError, HandshakeError, HandshakeTimeoutError
from acmetls.metrics.collector import HANDSHAKES
from acmetls.tls.options import ChainError, HttpsAdapterOptions, SslProtocol

if TYPE_CHECKING:
    from cryptography import x509

    from acmetls.certs.bundle import CertificateBundle
    from acmetls.certs.fetcher import CertificateFetcher
    from acmetls.metrics.collector import MetricsCollector

log = logging.getLogger(__name__)

_PROTOCOL_VERSIONS = {
    SslProtocol.TLSv1_2: SSL.TLS1_2_VERSION,
    SslProtocol.TLSv1_3: SSL.TLS1_3_VERSION,
}


# ---------------------------------------------------------------------------
# Connection context and features
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TlsConnectionFeature:
    """Negotiated peer identity, set on every successfully adapted connection."""

    client_certificate: x509.Certificate | None


@dataclass
class ConnectionContext:
    """Per-connection state the listener hands to the adapter.

    ``features`` is keyed by feature type, so request processing looks
    up ``context.features[TlsConnectionFeature]``.
    """

    sock: socket.socket
    peer: str | None = None
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    features: dict[type, Any] = field(default_factory=dict)

    def get_feature(self, feature_type: type) -> Any:  # noqa: ANN401
        return self.features.get(feature_type)


# ---------------------------------------------------------------------------
# Adapted connections
# ---------------------------------------------------------------------------


class AdaptedConnection:
    """Blocking read/write over an established TLS session."""

    closed = False

    def __init__(self, tls: SSL.Connection, sock: socket.socket) -> None:
        self._tls = tls
        self._sock = sock
        self._lock = threading.Lock()

    @property
    def protocol(self) -> str:
        return self._tls.get_protocol_version_name()

    @property
    def cipher(self) -> str | None:
        return self._tls.get_cipher_name()

    def read(self, size: int = 65536) -> bytes:
        """Read up to *size* bytes; ``b""`` once the peer has finished."""
        if self.closed:
            return b""
        try:
            return self._tls.recv(size)
        except SSL.ZeroReturnError:
            return b""
        except SSL.SysCallError as exc:
            # (-1, 'Unexpected EOF'): peer closed without close_notify
            if exc.args and exc.args[0] == -1:
                return b""
            raise

    def write(self, data: bytes) -> int:
        """Write all of *data* and return its length."""
        if self.closed:
            return 0
        with self._lock:
            self._tls.sendall(data)
        return len(data)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._tls.shutdown()
        except SSL.Error:
            log.debug("TLS shutdown did not complete cleanly")
        finally:
            self._sock.close()

    def __enter__(self) -> AdaptedConnection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class ClosedAdaptedConnection:
    """End-of-stream sentinel returned for every failed handshake."""

    closed = True
    protocol = None
    cipher = None

    def read(self, size: int = 65536) -> bytes:  # noqa: ARG002
        return b""

    def write(self, data: bytes) -> int:  # noqa: ARG002
        return 0

    def close(self) -> None:
        pass

    def __enter__(self) -> ClosedAdaptedConnection:
        return self

    def __exit__(self, *exc_info: object) -> None:
        pass

    def __repr__(self) -> str:
        return "<ClosedAdaptedConnection>"


CLOSED_CONNECTION = ClosedAdaptedConnection()


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


def _record_chain_error(
    conn: SSL.Connection,
    cert: crypto.X509,  # noqa: ARG001
    errno: int,
    depth: int,
    ok: int,
) -> bool:
    if not ok:
        errors = conn.get_app_data()
        if errors is not None:
            errors.append(ChainError(errno=errno, depth=depth))
    return True


class HttpsConnectionAdapter:
    """Adapt accepted sockets into TLS connections.

    Parameters
    ----------
    options:
        Handshake and client-certificate policy.
    fetcher:
        Source of the current server certificate, read once per
        connection.
    metrics:
        Optional counter sink for handshake results.

    """

    is_https = True

    def __init__(
        self,
        options: HttpsAdapterOptions | None,
        fetcher: CertificateFetcher,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._options = options or HttpsAdapterOptions()
        self._fetcher = fetcher
        self._metrics = metrics
        self._context_lock = threading.Lock()
        self._context_for: tuple[CertificateBundle, SSL.Context] | None = None

        bundle = fetcher.certificate
        if bundle is not None and not bundle.allows_server_auth():
            log.warning(
                "Certificate %s has an Extended Key Usage without serverAuth "
                "(1.3.6.1.5.5.7.3.1); clients may reject it",
                bundle.common_name,
            )

    @property
    def options(self) -> HttpsAdapterOptions:
        return self._options

    # -- per connection -------------------------------------------------

    def on_connection(self, context: ConnectionContext) -> AdaptedConnection | ClosedAdaptedConnection:
        """Handshake on ``context.sock`` and return the adapted connection.

        Never raises for handshake problems; on any failure the socket
        is closed and :data:`CLOSED_CONNECTION` is returned.
        """
        bundle = self._fetcher.certificate
        if bundle is None:
            log.warning("No certificate available for %s, dropping connection", self._fetcher.domain)
            return self._fail(context, "no_certificate")

        try:
            tls = SSL.Connection(self._ssl_context(bundle), context.sock)
        except (SSL.Error, ValueError, CertificateBundleError):
            log.exception("Cannot build TLS context for %s", bundle.common_name)
            return self._fail(context, "error")

        errors: list[ChainError] = []
        tls.set_app_data(errors)
        tls.set_accept_state()

        try:
            self._handshake(tls, context.sock)
            peer_cert, chain = self._peer_certificates(tls)
            try:
                accepted = self._options.accepts(peer_cert, chain, errors)
            except Exception:
                log.exception("Client certificate validator failed, rejecting connection")
                return self._fail(context, "rejected")
            if not accepted:
                reasons = ", ".join(str(e) for e in errors) or "no certificate presented"
                msg = f"Client certificate rejected: {reasons}"
                raise HandshakeError(msg)
        except HandshakeTimeoutError as exc:
            log.info("TLS handshake timed out: %s", exc)
            return self._fail(context, "timeout")
        except HandshakeError as exc:
            log.info("TLS handshake failed: %s", exc)
            return self._fail(context, "rejected")
        except (SSL.Error, OSError) as exc:
            log.info("TLS handshake failed: %s", exc or type(exc).__name__)
            return self._fail(context, "failed")

        context.sock.settimeout(None)
        context.features[TlsConnectionFeature] = TlsConnectionFeature(client_certificate=peer_cert)
        if self._metrics:
            self._metrics.increment(HANDSHAKES, labels={"result": "ok"})
        log.debug(
            "TLS established (%s, %s, client certificate: %s)",
            tls.get_protocol_version_name(),
            tls.get_cipher_name(),
            peer_cert.subject.rfc4514_string() if peer_cert is not None else "none",
        )
        return AdaptedConnection(tls, context.sock)

    def _handshake(self, tls: SSL.Connection, sock: socket.socket) -> None:
        """Drive a non-blocking handshake until done or the deadline passes."""
        sock.setblocking(False)
        deadline = time.monotonic() + self._options.handshake_timeout
        while True:
            try:
                tls.do_handshake()
            except SSL.WantReadError:
                wait_read = True
            except SSL.WantWriteError:
                wait_read = False
            else:
                sock.setblocking(True)
                return

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                msg = f"no handshake after {self._options.handshake_timeout:g}s"
                raise HandshakeTimeoutError(msg)
            if wait_read:
                ready, _, _ = select.select([sock], [], [], remaining)
            else:
                _, ready, _ = select.select([], [sock], [], remaining)
            if not ready:
                msg = f"no handshake after {self._options.handshake_timeout:g}s"
                raise HandshakeTimeoutError(msg)

    @staticmethod
    def _peer_certificates(
        tls: SSL.Connection,
    ) -> tuple[x509.Certificate | None, list[x509.Certificate]]:
        peer = tls.get_peer_certificate()
        if peer is None:
            return None, []
        leaf = peer.to_cryptography()
        # Server side: OpenSSL's peer chain excludes the leaf
        chain = [c.to_cryptography() for c in tls.get_peer_cert_chain() or []]
        return leaf, [c for c in chain if c != leaf]

    def _fail(self, context: ConnectionContext, result: str) -> ClosedAdaptedConnection:
        try:
            context.sock.close()
        except OSError:
            log.debug("Closing failed connection socket raised", exc_info=True)
        if self._metrics:
            self._metrics.increment(HANDSHAKES, labels={"result": result})
        return CLOSED_CONNECTION

    # -- context --------------------------------------------------------

    def _ssl_context(self, bundle: CertificateBundle) -> SSL.Context:
        """Return the OpenSSL context for *bundle*, rebuilding after a renewal."""
        with self._context_lock:
            cached = self._context_for
            if cached is not None and cached[0] is bundle:
                return cached[1]
            ctx = self._build_context(bundle)
            self._context_for = (bundle, ctx)
            return ctx

    def _build_context(self, bundle: CertificateBundle) -> SSL.Context:
        options = self._options
        ctx = SSL.Context(SSL.TLS_SERVER_METHOD)
        versions = [_PROTOCOL_VERSIONS[p] for p in options.ssl_protocols]
        ctx.set_min_proto_version(min(versions))
        ctx.set_max_proto_version(max(versions))
        ctx.set_options(SSL.OP_NO_COMPRESSION)

        ctx.use_certificate(crypto.X509.from_cryptography(bundle.certificate))
        ctx.use_privatekey(crypto.PKey.from_cryptography_key(bundle.private_key))
        for intermediate in bundle.chain:
            ctx.add_extra_chain_cert(crypto.X509.from_cryptography(intermediate))
        ctx.check_privatekey()

        if options.requests_client_certificate:
            if options.ca_file:
                ctx.load_verify_locations(options.ca_file)
            else:
                ctx.set_default_verify_paths()
            if options.check_certificate_revocation:
                ctx.get_cert_store().set_flags(
                    crypto.X509StoreFlags.CRL_CHECK | crypto.X509StoreFlags.CRL_CHECK_ALL,
                )
            # VERIFY_PEER without FAIL_IF_NO_PEER_CERT: the policy decides later
            ctx.set_verify(SSL.VERIFY_PEER, _record_chain_error)
            ctx.set_session_id(bundle.fingerprint[:32].encode("ascii"))
        else:
            ctx.set_verify(SSL.VERIFY_NONE)

        log.debug("Built TLS context for %r", bundle)
        return ctx
