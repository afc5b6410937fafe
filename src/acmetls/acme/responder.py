"""HTTP-01 challenge responder (RFC 8555 §8.3).

Serves the current key authorization as ``text/plain`` for any
``GET /.well-known/acme-challenge/<token>``; everything else is a 404.
The responder holds a single key authorization because one fetcher
runs at most one authorization attempt at a time.

Usage::

    responder = ChallengeResponder()
    with ChallengeServer(responder, host="0.0.0.0"):
        responder.install(token, key_auth)
        ...  # let the ACME server validate
        responder.retire()
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from flask import Flask, Response, abort
from werkzeug.serving import make_server

from acmetls.acme.types import WELL_KNOWN_CHALLENGE_PREFIX

if TYPE_CHECKING:
    from types import TracebackType

    from werkzeug.serving import BaseWSGIServer

log = logging.getLogger(__name__)

CHALLENGE_PORT = 80
"""HTTP-01 validation always connects to cleartext port 80."""


class ChallengeResponder:
    """Holds the key authorization for the attempt in progress."""

    def __init__(self) -> None:
        self.key_authorization: str | None = None
        self.token: str | None = None
        self.app = self._create_app()

    def install(self, token: str, key_authorization: str) -> None:
        """Start answering challenge requests with *key_authorization*."""
        self.token = token
        self.key_authorization = key_authorization
        log.debug("Installed HTTP-01 response for token %s", token)

    def retire(self) -> None:
        """Stop answering; later challenge requests get a 404."""
        if self.token is not None:
            log.debug("Retired HTTP-01 response for token %s", self.token)
        self.token = None
        self.key_authorization = None

    def _create_app(self) -> Flask:
        app = Flask(__name__)

        @app.get(WELL_KNOWN_CHALLENGE_PREFIX + "<path:token>")
        def acme_challenge(token: str) -> Response:
            key_auth = self.key_authorization
            if key_auth is None:
                abort(404)
            if token != self.token:
                log.debug("Challenge request for unexpected token %s", token)
            return Response(key_auth, status=200, mimetype="text/plain")

        return app


class ChallengeServer:
    """Run a :class:`ChallengeResponder` on a background werkzeug server.

    Parameters
    ----------
    responder:
        The responder whose Flask app is served.
    host:
        Address to bind.
    port:
        Port to bind; ``0`` picks a free port (tests only, ACME servers
        always validate on port 80).

    """

    def __init__(
        self,
        responder: ChallengeResponder,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = CHALLENGE_PORT,
    ) -> None:
        self._responder = responder
        self._host = host
        self._port = port
        self._server: BaseWSGIServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int:
        """Port actually bound (differs from the requested one when 0)."""
        if self._server is not None:
            return self._server.server_port
        return self._port

    def start(self) -> None:
        """Bind the listener and serve on a daemon thread."""
        if self._server is not None:
            return
        self._server = make_server(
            self._host,
            self._port,
            self._responder.app,
            threaded=True,
        )
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="acme-challenge-server",
            daemon=True,
        )
        self._thread.start()
        log.info("HTTP-01 challenge server listening on %s:%d", self._host, self.port)

    def stop(self) -> None:
        """Shut the listener down and release the port."""
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        log.info("HTTP-01 challenge server stopped")
        self._server = None
        self._thread = None

    def __enter__(self) -> ChallengeServer:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()
