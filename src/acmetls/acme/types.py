"""Enumerated ACME protocol values used by the client side.

:class:`AuthorizationStatus` inherits from :class:`enum.StrEnum` so it
compares equal to the status names the ``acme`` library parses out of
server responses.
"""

from __future__ import annotations

from enum import StrEnum

# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class AuthorizationStatus(StrEnum):
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    REVOKED = "revoked"


WELL_KNOWN_CHALLENGE_PREFIX = "/.well-known/acme-challenge/"
"""Path prefix under which HTTP-01 key authorizations are served."""
