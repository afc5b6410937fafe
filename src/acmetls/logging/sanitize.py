"""Redaction of key material before ACME traffic is logged.

The ACME client logs request payloads and response bodies at DEBUG.
Those can carry JWK coordinates, base64url CSRs, and PEM certificate
chains; :func:`sanitize_for_logs` replaces the sensitive parts with a
short marker while keeping enough shape (key type, PEM labels, field
names) to debug a failing exchange.
"""

from __future__ import annotations

import re
from typing import Any

REDACTED = "[REDACTED]"

# JWK members holding key numbers (public or private)
_JWK_KEY_MEMBERS = frozenset({"n", "e", "x", "y", "d", "p", "q", "dp", "dq", "qi", "k"})

# Payload fields whose value is an encoded blob rather than metadata
_BLOB_FIELDS = frozenset({"csr", "signature", "protected", "payload"})

_PEM_BLOCK_RE = re.compile(
    r"(-----BEGIN (?P<label>[A-Z0-9 ]+)-----)"
    r"[\s\S]*?"
    r"(-----END (?P=label)-----)",
)


def sanitize_jwk(jwk: dict[str, Any]) -> dict[str, Any]:
    """Copy *jwk*, blanking every member that holds key numbers."""
    return {k: (REDACTED if k in _JWK_KEY_MEMBERS else v) for k, v in jwk.items()}


def sanitize_pem(text: str) -> str:
    """Keep PEM ``BEGIN`` / ``END`` lines, drop the base64 in between."""
    return _PEM_BLOCK_RE.sub(lambda m: f"{m.group(1)}\n{REDACTED}\n{m.group(3)}", text)


def sanitize_for_logs(data: Any) -> Any:  # noqa: ANN401
    """Return a log-safe copy of *data*.

    Dicts with a ``kty`` member are treated as JWKs.  Values of the
    blob fields (``csr``, JWS parts) are shortened to their length.
    PEM blocks inside strings are collapsed.  Anything else passes
    through unchanged.
    """
    if isinstance(data, dict):
        if "kty" in data:
            return sanitize_jwk(data)
        result: dict[Any, Any] = {}
        for key, value in data.items():
            if key in _BLOB_FIELDS and isinstance(value, str):
                result[key] = f"{REDACTED} ({len(value)} chars)"
            else:
                result[key] = sanitize_for_logs(value)
        return result

    if isinstance(data, (list, tuple)):
        return type(data)(sanitize_for_logs(item) for item in data)

    if isinstance(data, str) and "-----BEGIN " in data:
        return sanitize_pem(data)

    return data
