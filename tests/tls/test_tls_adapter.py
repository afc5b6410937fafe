"""Tests for acmetls.tls.adapter.HttpsConnectionAdapter.

Each test runs a real handshake over ``socket.socketpair()`` with a
standard-library TLS client on a helper thread.
"""

from __future__ import annotations

import logging
import socket
import ssl
import threading
from unittest.mock import MagicMock

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import ExtendedKeyUsageOID

from acmetls.certs.bundle import CertificateBundle
from acmetls.metrics.collector import HANDSHAKES, MetricsCollector
from acmetls.tls.adapter import (
    CLOSED_CONNECTION,
    AdaptedConnection,
    ConnectionContext,
    HttpsConnectionAdapter,
    TlsConnectionFeature,
)
from acmetls.tls.options import HttpsAdapterOptions

DOMAIN = "www.example.org"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_fetcher(bundle: CertificateBundle | None) -> MagicMock:
    fetcher = MagicMock()
    fetcher.domain = DOMAIN
    fetcher.certificate = bundle
    return fetcher


def _write_pem(directory, name, cert, key=None) -> tuple[str, str | None]:
    cert_path = directory / f"{name}.crt"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    if key is None:
        return str(cert_path), None
    key_path = directory / f"{name}.key"
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ),
    )
    return str(cert_path), str(key_path)


def _client_context(certfile=None, keyfile=None, maximum=None) -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    if maximum is not None:
        ctx.maximum_version = maximum
    if certfile:
        ctx.load_cert_chain(certfile, keyfile)
    return ctx


def _handshake(adapter: HttpsConnectionAdapter, client_ctx: ssl.SSLContext | None = None):
    """Run one connection through *adapter*; echo ``ping`` → ``pong`` on success."""
    server_sock, client_sock = socket.socketpair()
    client_ctx = client_ctx or _client_context()
    outcome: dict = {}

    def _client() -> None:
        client_sock.settimeout(5)
        try:
            with client_ctx.wrap_socket(client_sock, server_hostname=DOMAIN) as tls:
                outcome["version"] = tls.version()
                tls.sendall(b"ping")
                outcome["reply"] = tls.recv(1024)
        except (ssl.SSLError, OSError) as exc:
            outcome["error"] = exc

    thread = threading.Thread(target=_client, daemon=True)
    thread.start()
    context = ConnectionContext(sock=server_sock, peer="unix:test")
    conn = adapter.on_connection(context)
    if not conn.closed:
        outcome["received"] = conn.read()
        conn.write(b"pong")
        conn.close()
    thread.join(timeout=5)
    client_sock.close()
    return conn, context, outcome


@pytest.fixture()
def server_bundle(make_bundle) -> CertificateBundle:
    return make_bundle(cn=DOMAIN)


@pytest.fixture()
def client_pki(tmp_path, ca_pair, issue_cert):
    """CA file plus a client certificate issued by that CA, as PEM paths."""
    ca_cert, ca_key = ca_pair
    client_cert, client_key = issue_cert("client.example.org", issuer_cert=ca_cert, issuer_key=ca_key)
    ca_file, _ = _write_pem(tmp_path, "ca", ca_cert)
    certfile, keyfile = _write_pem(tmp_path, "client", client_cert, client_key)
    return {"ca_file": ca_file, "certfile": certfile, "keyfile": keyfile, "cert": client_cert}


@pytest.fixture()
def rogue_client(tmp_path, issue_cert):
    cert, key = issue_cert("rogue.example.org")
    certfile, keyfile = _write_pem(tmp_path, "rogue", cert, key)
    return {"certfile": certfile, "keyfile": keyfile}


# ---------------------------------------------------------------------------
# TestHandshake
# ---------------------------------------------------------------------------


class TestHandshake:
    def test_established(self, server_bundle):
        metrics = MetricsCollector()
        adapter = HttpsConnectionAdapter(None, _make_fetcher(server_bundle), metrics=metrics)

        conn, context, outcome = _handshake(adapter)

        assert isinstance(conn, AdaptedConnection)
        assert outcome["received"] == b"ping"
        assert outcome["reply"] == b"pong"
        assert context.get_feature(TlsConnectionFeature) == TlsConnectionFeature(client_certificate=None)
        assert metrics.get(HANDSHAKES, labels={"result": "ok"}) == 1

    def test_protocol_bounds(self, server_bundle):
        options = HttpsAdapterOptions(ssl_protocols=("TLSv1.2",))
        adapter = HttpsConnectionAdapter(options, _make_fetcher(server_bundle))
        _, _, outcome = _handshake(adapter)
        assert outcome["version"] == "TLSv1.2"

    def test_no_certificate_available(self):
        metrics = MetricsCollector()
        adapter = HttpsConnectionAdapter(None, _make_fetcher(None), metrics=metrics)
        server_sock, client_sock = socket.socketpair()
        try:
            conn = adapter.on_connection(ConnectionContext(sock=server_sock))
        finally:
            client_sock.close()
        assert conn is CLOSED_CONNECTION
        assert metrics.get(HANDSHAKES, labels={"result": "no_certificate"}) == 1

    def test_timeout(self, server_bundle):
        metrics = MetricsCollector()
        options = HttpsAdapterOptions(handshake_timeout=0.2)
        adapter = HttpsConnectionAdapter(options, _make_fetcher(server_bundle), metrics=metrics)
        server_sock, client_sock = socket.socketpair()
        try:
            conn = adapter.on_connection(ConnectionContext(sock=server_sock))
        finally:
            client_sock.close()
        assert conn is CLOSED_CONNECTION
        assert metrics.get(HANDSHAKES, labels={"result": "timeout"}) == 1

    def test_garbage(self, server_bundle):
        metrics = MetricsCollector()
        adapter = HttpsConnectionAdapter(None, _make_fetcher(server_bundle), metrics=metrics)
        server_sock, client_sock = socket.socketpair()
        client_sock.sendall(b"GET / HTTP/1.1\r\nHost: example.org\r\n\r\n")
        try:
            conn = adapter.on_connection(ConnectionContext(sock=server_sock))
        finally:
            client_sock.close()
        assert conn is CLOSED_CONNECTION
        assert metrics.get(HANDSHAKES, labels={"result": "failed"}) == 1

    def test_disposed_bundle(self, server_bundle):
        metrics = MetricsCollector()
        adapter = HttpsConnectionAdapter(None, _make_fetcher(server_bundle), metrics=metrics)
        server_bundle.dispose()

        conn, context, outcome = _handshake(adapter)

        assert conn is CLOSED_CONNECTION
        assert context.sock.fileno() == -1
        assert "error" in outcome
        assert metrics.get(HANDSHAKES, labels={"result": "error"}) == 1

    def test_closed_sentinel_behaviour(self):
        assert CLOSED_CONNECTION.closed
        assert CLOSED_CONNECTION.read() == b""
        assert CLOSED_CONNECTION.write(b"data") == 0


# ---------------------------------------------------------------------------
# TestClientCertificates
# ---------------------------------------------------------------------------


class TestClientCertificates:
    def test_require_without_certificate(self, server_bundle):
        metrics = MetricsCollector()
        options = HttpsAdapterOptions(client_certificate_mode="require")
        adapter = HttpsConnectionAdapter(options, _make_fetcher(server_bundle), metrics=metrics)

        conn, context, _ = _handshake(adapter)

        assert conn is CLOSED_CONNECTION
        assert context.get_feature(TlsConnectionFeature) is None
        assert metrics.get(HANDSHAKES, labels={"result": "rejected"}) == 1

    def test_allow_without_certificate(self, server_bundle):
        options = HttpsAdapterOptions(client_certificate_mode="allow")
        adapter = HttpsConnectionAdapter(options, _make_fetcher(server_bundle))

        conn, context, outcome = _handshake(adapter)

        assert not conn.closed
        assert outcome["reply"] == b"pong"
        assert context.get_feature(TlsConnectionFeature).client_certificate is None

    def test_require_with_trusted_certificate(self, server_bundle, client_pki):
        options = HttpsAdapterOptions(client_certificate_mode="require", ca_file=client_pki["ca_file"])
        adapter = HttpsConnectionAdapter(options, _make_fetcher(server_bundle))

        conn, context, outcome = _handshake(
            adapter,
            _client_context(client_pki["certfile"], client_pki["keyfile"]),
        )

        assert not conn.closed
        assert outcome["reply"] == b"pong"
        assert context.get_feature(TlsConnectionFeature).client_certificate == client_pki["cert"]

    def test_untrusted_certificate_rejected(self, server_bundle, client_pki, rogue_client):
        options = HttpsAdapterOptions(client_certificate_mode="allow", ca_file=client_pki["ca_file"])
        adapter = HttpsConnectionAdapter(options, _make_fetcher(server_bundle))

        conn, _, _ = _handshake(adapter, _client_context(rogue_client["certfile"], rogue_client["keyfile"]))

        assert conn is CLOSED_CONNECTION

    def test_custom_validator_sees_errors(self, server_bundle, client_pki, rogue_client):
        seen = {}

        def _validate(cert, chain, errors):
            seen["errors"] = list(errors)
            return True

        options = HttpsAdapterOptions(
            client_certificate_mode="require",
            client_certificate_validation=_validate,
            ca_file=client_pki["ca_file"],
        )
        adapter = HttpsConnectionAdapter(options, _make_fetcher(server_bundle))

        conn, _, outcome = _handshake(adapter, _client_context(rogue_client["certfile"], rogue_client["keyfile"]))

        assert not conn.closed
        assert outcome["reply"] == b"pong"
        assert seen["errors"]

    def test_raising_validator_rejects(self, server_bundle, client_pki, caplog):
        def _validate(cert, chain, errors):
            msg = "validator bug"
            raise ValueError(msg)

        metrics = MetricsCollector()
        options = HttpsAdapterOptions(
            client_certificate_mode="allow",
            client_certificate_validation=_validate,
            ca_file=client_pki["ca_file"],
        )
        adapter = HttpsConnectionAdapter(options, _make_fetcher(server_bundle), metrics=metrics)

        with caplog.at_level(logging.ERROR, logger="acmetls.tls.adapter"):
            conn, context, _ = _handshake(
                adapter,
                _client_context(client_pki["certfile"], client_pki["keyfile"]),
            )

        assert conn is CLOSED_CONNECTION
        assert context.sock.fileno() == -1
        assert context.get_feature(TlsConnectionFeature) is None
        assert metrics.get(HANDSHAKES, labels={"result": "rejected"}) == 1
        assert "validator bug" in caplog.text

    def test_none_mode_ignores_client_certificate(self, server_bundle, rogue_client):
        adapter = HttpsConnectionAdapter(None, _make_fetcher(server_bundle))
        conn, context, _ = _handshake(adapter, _client_context(rogue_client["certfile"], rogue_client["keyfile"]))
        assert not conn.closed
        assert context.get_feature(TlsConnectionFeature).client_certificate is None


# ---------------------------------------------------------------------------
# TestContextCache
# ---------------------------------------------------------------------------


class TestContextCache:
    def test_reused_for_same_bundle(self, server_bundle):
        adapter = HttpsConnectionAdapter(None, _make_fetcher(server_bundle))
        assert adapter._ssl_context(server_bundle) is adapter._ssl_context(server_bundle)

    def test_rebuilt_after_renewal(self, server_bundle, make_bundle):
        fetcher = _make_fetcher(server_bundle)
        adapter = HttpsConnectionAdapter(None, fetcher)
        first = adapter._ssl_context(server_bundle)

        renewed = make_bundle(cn=DOMAIN)
        fetcher.certificate = renewed
        _, _, outcome = _handshake(adapter)

        assert outcome["reply"] == b"pong"
        assert adapter._ssl_context(renewed) is not first

    def test_warns_without_server_auth(self, make_bundle, caplog):
        bundle = make_bundle(cn=DOMAIN, eku=[ExtendedKeyUsageOID.CLIENT_AUTH])
        with caplog.at_level(logging.WARNING, logger="acmetls.tls.adapter"):
            HttpsConnectionAdapter(None, _make_fetcher(bundle))
        assert "without serverAuth" in caplog.text
