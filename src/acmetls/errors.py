"""Exception taxonomy for ACMETLS.

Configuration problems are fatal at setup time.  ACME failures
propagate from the driver to the certificate fetcher, which decides
whether they are fatal (initial fetch) or merely logged (scheduled
renewal).  Handshake failures never leave the TLS adapter.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(Exception):
    """Raised for invalid setup: reserved ports, missing options, bad values."""


class ConfigValidationError(ConfigurationError):
    """Raised when config validation finds one or more problems."""

    def __init__(self, errors: list[str]) -> None:
        """Store *errors* and build a human-readable message."""
        self.errors = errors
        body = "\n".join(f"  - {e}" for e in errors)
        super().__init__(f"Configuration validation failed:\n{body}")


# ---------------------------------------------------------------------------
# ACME
# ---------------------------------------------------------------------------


class AcmeError(Exception):
    """Raised on any ACME network, protocol, or validation failure.

    Parameters
    ----------
    detail:
        Human-readable description of the failure.
    problem_type:
        RFC 8555 error URN from the server's problem document, if any.
    status:
        HTTP status of the failing response, if any.
    retryable:
        Whether the failure looks transient.  Informational only: the
        driver never retries, the fetcher's schedule does.

    """

    def __init__(
        self,
        detail: str,
        *,
        problem_type: str | None = None,
        status: int | None = None,
        retryable: bool = False,
    ) -> None:
        self.detail = detail
        self.problem_type = problem_type
        self.status = status
        self.retryable = retryable
        super().__init__(detail)


class AuthorizationFailedError(AcmeError):
    """The authorization reached a terminal state other than ``valid``."""

    def __init__(self, status: str, detail: str | None = None) -> None:
        self.authorization_status = status
        super().__init__(detail or f"Failed to authorize certificate: {status}")


class AcmeTimeoutError(AcmeError):
    """A polled ACME resource did not reach a terminal state in time."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, retryable=True)


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------


class CertificateBundleError(Exception):
    """Raised when certificate bundle bytes cannot be parsed or built."""


# ---------------------------------------------------------------------------
# TLS
# ---------------------------------------------------------------------------


class HandshakeError(Exception):
    """The TLS server handshake failed or the peer was rejected."""


class HandshakeTimeoutError(HandshakeError):
    """The TLS server handshake did not complete within its timeout."""
