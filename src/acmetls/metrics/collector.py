"""In-process metrics collector.

Counts renewal checks, ACME runs, and handshake results without
external dependencies.  Exports in Prometheus text format.
"""

from __future__ import annotations

import threading
import time

RENEWAL_CHECKS = "acmetls_renewal_checks_total"
RENEWALS = "acmetls_renewals_total"
ACME_RUNS = "acmetls_acme_runs_total"
HANDSHAKES = "acmetls_handshakes_total"

_HELP = {
    RENEWAL_CHECKS: "Renewal timer firings",
    RENEWALS: "Renewal checks by outcome",
    ACME_RUNS: "Complete ACME issuance flows started",
    HANDSHAKES: "TLS handshakes by result",
}


class MetricsCollector:
    """Thread-safe in-process counter store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._start_time = time.time()

    def increment(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        """Increment a counter."""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount

    def get(self, name: str, labels: dict | None = None) -> int:
        """Get the current value of a counter."""
        key = self._make_key(name, labels)
        with self._lock:
            return self._counters.get(key, 0)

    def snapshot(self) -> dict[str, int]:
        """Return a copy of every counter keyed by its exposition name."""
        with self._lock:
            return dict(self._counters)

    def export(self) -> str:
        """Export all metrics in Prometheus text format."""
        lines = [
            "# HELP acmetls_uptime_seconds Time since process start",
            "# TYPE acmetls_uptime_seconds gauge",
            f"acmetls_uptime_seconds {time.time() - self._start_time:.1f}",
            "",
        ]

        grouped: dict[str, list[tuple[str, int]]] = {}
        for key, value in sorted(self.snapshot().items()):
            grouped.setdefault(key.split("{")[0], []).append((key, value))

        for name, entries in sorted(grouped.items()):
            if name in _HELP:
                lines.append(f"# HELP {name} {_HELP[name]}")
            lines.append(f"# TYPE {name} counter")
            lines.extend(f"{key} {value}" for key, value in entries)
            lines.append("")

        return "\n".join(lines) + "\n"

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"
