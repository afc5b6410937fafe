"""Logging subsystem for ACMETLS.

Public API::

    from acmetls.logging import configure_logging

    configure_logging(settings.logging)
"""

from acmetls.logging.sanitize import sanitize_for_logs
from acmetls.logging.setup import configure_logging, connection_context

__all__ = ["configure_logging", "connection_context", "sanitize_for_logs"]
