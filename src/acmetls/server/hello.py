"""Demo handler: answer one HTTP/1.1 request with ``Hello World via https``.

Enough HTTP to check a deployment from a browser or ``curl``; not a
web server.  The response names the client certificate subject when
one was presented.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from acmetls.tls.adapter import TlsConnectionFeature

if TYPE_CHECKING:
    from acmetls.tls.adapter import AdaptedConnection, ConnectionContext

log = logging.getLogger(__name__)

MAX_REQUEST_HEAD = 16384

_REASONS = {200: "OK", 400: "Bad Request", 405: "Method Not Allowed"}


def read_request_head(conn: AdaptedConnection, limit: int = MAX_REQUEST_HEAD) -> bytes | None:
    """Read up to the blank line ending the request head.

    Returns ``None`` if the peer closes first or *limit* is exceeded.
    """
    # Minimal on purpose: headers and bodies are never parsed, only the
    # request line is inspected. Real request processing belongs to the host.
    buf = b""
    while b"\r\n\r\n" not in buf:
        if len(buf) > limit:
            return None
        chunk = conn.read(4096)
        if not chunk:
            return None
        buf += chunk
    return buf.split(b"\r\n\r\n", 1)[0]


def build_response(status: int, body: str) -> bytes:
    payload = body.encode("utf-8")
    head = (
        f"HTTP/1.1 {status} {_REASONS.get(status, '')}\r\n"
        "Content-Type: text/plain; charset=utf-8\r\n"
        f"Content-Length: {len(payload)}\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode("ascii") + payload


def hello_handler(conn: AdaptedConnection, context: ConnectionContext) -> None:
    """Reply ``Hello World via https`` to a ``GET``/``HEAD`` request."""
    head = read_request_head(conn)
    if head is None:
        log.debug("No complete request head received")
        return

    request_line = head.split(b"\r\n", 1)[0].decode("latin-1")
    parts = request_line.split(" ")
    if len(parts) != 3 or not parts[2].startswith("HTTP/"):  # noqa: PLR2004
        conn.write(build_response(400, "Bad request\n"))
        return
    method, target, _ = parts
    log.info("%s %s", method, target)
    if method not in ("GET", "HEAD"):
        conn.write(build_response(405, "Method not allowed\n"))
        return

    body = "Hello World via https"
    feature = context.get_feature(TlsConnectionFeature)
    if feature is not None and feature.client_certificate is not None:
        body += f" (client: {feature.client_certificate.subject.rfc4514_string()})"
    response = build_response(200, body + "\n")
    if method == "HEAD":
        response = response.split(b"\r\n\r\n", 1)[0] + b"\r\n\r\n"
    conn.write(response)
