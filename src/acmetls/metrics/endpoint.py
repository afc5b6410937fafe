"""Prometheus-compatible metrics endpoint.

``GET /metrics`` returns the collector's counters in text format.  The
endpoint runs on its own cleartext listener, separate from the TLS
port, and is enabled with ``metrics.enabled`` in the configuration.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from flask import Flask, make_response
from werkzeug.serving import make_server

if TYPE_CHECKING:
    from types import TracebackType

    from flask import Response
    from werkzeug.serving import BaseWSGIServer

    from acmetls.metrics.collector import MetricsCollector

log = logging.getLogger(__name__)

METRICS_PATH = "/metrics"
_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


def create_metrics_app(collector: MetricsCollector) -> Flask:
    """Flask app exposing *collector* at :data:`METRICS_PATH`."""
    app = Flask(__name__)

    @app.get(METRICS_PATH)
    def get_metrics() -> Response:
        response = make_response(collector.export())
        response.headers["Content-Type"] = _CONTENT_TYPE
        return response

    return app


class MetricsServer:
    """Serve :func:`create_metrics_app` on a background werkzeug server."""

    def __init__(self, collector: MetricsCollector, host: str = "127.0.0.1", port: int = 9100) -> None:
        self.app = create_metrics_app(collector)
        self._host = host
        self._port = port
        self._server: BaseWSGIServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int:
        if self._server is not None:
            return self._server.server_port
        return self._port

    def start(self) -> None:
        if self._server is not None:
            return
        self._server = make_server(self._host, self._port, self.app, threaded=True)
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="acmetls-metrics",
            daemon=True,
        )
        self._thread.start()
        log.info("Metrics endpoint listening on http://%s:%d%s", self._host, self.port, METRICS_PATH)

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None

    def __enter__(self) -> MetricsServer:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()
