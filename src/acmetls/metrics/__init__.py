"""In-process metrics for ACMETLS."""

from acmetls.metrics.collector import (
    ACME_RUNS,
    HANDSHAKES,
    RENEWAL_CHECKS,
    RENEWALS,
    MetricsCollector,
)

__all__ = ["ACME_RUNS", "HANDSHAKES", "RENEWALS", "RENEWAL_CHECKS", "MetricsCollector"]
