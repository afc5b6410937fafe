"""Tests for acmetls.metrics.endpoint: the Prometheus text endpoint."""

from __future__ import annotations

import urllib.request

import pytest

from acmetls.metrics.collector import HANDSHAKES, MetricsCollector
from acmetls.metrics.endpoint import MetricsServer, create_metrics_app


@pytest.fixture()
def collector() -> MetricsCollector:
    m = MetricsCollector()
    m.increment(HANDSHAKES, labels={"result": "ok"})
    return m


class TestMetricsApp:
    def test_exports_counters(self, collector):
        resp = create_metrics_app(collector).test_client().get("/metrics")
        assert resp.status_code == 200
        assert resp.headers["Content-Type"].startswith("text/plain; version=0.0.4")
        assert 'acmetls_handshakes_total{result="ok"} 1' in resp.get_data(as_text=True)

    def test_reflects_later_increments(self, collector):
        client = create_metrics_app(collector).test_client()
        collector.increment(HANDSHAKES, labels={"result": "ok"})
        assert 'acmetls_handshakes_total{result="ok"} 2' in client.get("/metrics").get_data(as_text=True)

    def test_other_paths(self, collector):
        assert create_metrics_app(collector).test_client().get("/").status_code == 404


class TestMetricsServer:
    def test_serves_over_http(self, collector):
        with MetricsServer(collector, host="127.0.0.1", port=0) as server:
            url = f"http://127.0.0.1:{server.port}/metrics"
            with urllib.request.urlopen(url, timeout=5) as resp:  # noqa: S310
                body = resp.read().decode()
        assert "# TYPE acmetls_handshakes_total counter" in body

    def test_stop_is_idempotent(self, collector):
        server = MetricsServer(collector, host="127.0.0.1", port=0)
        server.start()
        server.stop()
        server.stop()
        assert server.port == 0
