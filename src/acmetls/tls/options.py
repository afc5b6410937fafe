"""Handshake options and client-certificate trust policy.

The policy is decided in one place, :meth:`HttpsAdapterOptions.accepts`,
after the handshake has collected the peer certificate, its chain, and
every chain-verification error OpenSSL reported:

===================  ==============  =====================
mode                 no client cert  client cert presented
===================  ==============  =====================
NO_CERTIFICATE       accept          (never requested)
ALLOW_CERTIFICATE    accept          validator decides
REQUIRE_CERTIFICATE  reject          validator decides
===================  ==============  =====================

Without a custom validator the :class:`ChainValidValidator` applies:
accept iff the chain verified without errors.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from cryptography import x509

    from acmetls.config.settings import TlsSettings

DEFAULT_HANDSHAKE_TIMEOUT = 10.0

# OpenSSL X509_V_ERR_* codes worth naming in logs
_VERIFY_ERROR_NAMES = {
    2: "unable to get issuer certificate",
    3: "unable to get certificate CRL",
    7: "certificate signature failure",
    9: "certificate is not yet valid",
    10: "certificate has expired",
    18: "self-signed certificate",
    19: "self-signed certificate in certificate chain",
    20: "unable to get local issuer certificate",
    21: "unable to verify the first certificate",
    23: "certificate revoked",
    24: "invalid CA certificate",
    26: "unsupported certificate purpose",
}


class ClientCertificateMode(StrEnum):
    NO_CERTIFICATE = "none"
    ALLOW_CERTIFICATE = "allow"
    REQUIRE_CERTIFICATE = "require"


class SslProtocol(StrEnum):
    TLSv1_2 = "TLSv1.2"
    TLSv1_3 = "TLSv1.3"


@dataclass(frozen=True)
class ChainError:
    """One chain-verification error: OpenSSL error code at a chain depth."""

    errno: int
    depth: int

    @property
    def reason(self) -> str:
        return _VERIFY_ERROR_NAMES.get(self.errno, f"verify error {self.errno}")

    def __str__(self) -> str:
        return f"{self.reason} (depth {self.depth})"


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


class ClientCertificateValidator(abc.ABC):
    """Decides whether a presented client certificate is trusted."""

    @abc.abstractmethod
    def accept(
        self,
        certificate: x509.Certificate,
        chain: Sequence[x509.Certificate],
        errors: Sequence[ChainError],
    ) -> bool:
        """Return True to accept *certificate* despite or given *errors*."""


class ChainValidValidator(ClientCertificateValidator):
    """Accept iff the chain verified cleanly."""

    def accept(self, certificate, chain, errors) -> bool:  # noqa: ANN001, ARG002
        return not errors


class AcceptAllValidator(ClientCertificateValidator):
    """Accept any presented certificate."""

    def accept(self, certificate, chain, errors) -> bool:  # noqa: ANN001, ARG002
        return True


class CallableValidator(ClientCertificateValidator):
    """Wrap a plain ``fn(certificate, chain, errors) -> bool``."""

    def __init__(
        self,
        fn: Callable[[x509.Certificate, Sequence[x509.Certificate], Sequence[ChainError]], bool],
    ) -> None:
        self._fn = fn

    def accept(self, certificate, chain, errors) -> bool:  # noqa: ANN001
        return bool(self._fn(certificate, chain, errors))


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HttpsAdapterOptions:
    """Per-listener TLS options.

    Attributes
    ----------
    client_certificate_mode:
        Whether client certificates are requested and/or required.
    client_certificate_validation:
        Custom trust decision; ``None`` means "chain must verify".
        Plain callables are wrapped in :class:`CallableValidator`.
    ssl_protocols:
        Allowed protocol versions; the handshake uses the lowest and
        highest of them as its bounds.
    check_certificate_revocation:
        Ask OpenSSL for CRL checks on the client chain.
    handshake_timeout:
        Seconds a handshake may take before the connection is dropped.
    ca_file:
        PEM bundle of trust anchors for client chains; the system
        store is used when unset.

    """

    client_certificate_mode: ClientCertificateMode = ClientCertificateMode.NO_CERTIFICATE
    client_certificate_validation: ClientCertificateValidator | None = None
    ssl_protocols: tuple[SslProtocol, ...] = field(
        default=(SslProtocol.TLSv1_2, SslProtocol.TLSv1_3),
    )
    check_certificate_revocation: bool = False
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
    ca_file: str | None = None

    def __post_init__(self) -> None:
        validation = self.client_certificate_validation
        if validation is not None and not isinstance(validation, ClientCertificateValidator):
            if not callable(validation):
                msg = "client_certificate_validation must be a validator or a callable"
                raise TypeError(msg)
            object.__setattr__(self, "client_certificate_validation", CallableValidator(validation))
        object.__setattr__(self, "client_certificate_mode", ClientCertificateMode(self.client_certificate_mode))
        object.__setattr__(self, "ssl_protocols", tuple(SslProtocol(p) for p in self.ssl_protocols))
        if not self.ssl_protocols:
            msg = "ssl_protocols must name at least one protocol version"
            raise ValueError(msg)
        if self.handshake_timeout <= 0:
            msg = f"handshake_timeout must be > 0 (got {self.handshake_timeout})"
            raise ValueError(msg)

    @classmethod
    def from_settings(
        cls,
        settings: TlsSettings,
        validator: ClientCertificateValidator | None = None,
    ) -> HttpsAdapterOptions:
        return cls(
            client_certificate_mode=ClientCertificateMode(settings.client_certificate_mode),
            client_certificate_validation=validator,
            ssl_protocols=tuple(SslProtocol(p) for p in settings.ssl_protocols),
            check_certificate_revocation=settings.check_certificate_revocation,
            handshake_timeout=settings.handshake_timeout_seconds,
            ca_file=settings.ca_file,
        )

    @property
    def requests_client_certificate(self) -> bool:
        return self.client_certificate_mode != ClientCertificateMode.NO_CERTIFICATE

    @property
    def validator(self) -> ClientCertificateValidator:
        """The validator actually applied to presented certificates."""
        if not self.requests_client_certificate:
            return AcceptAllValidator()
        return self.client_certificate_validation or ChainValidValidator()

    def accepts(
        self,
        certificate: x509.Certificate | None,
        chain: Sequence[x509.Certificate] = (),
        errors: Sequence[ChainError] = (),
    ) -> bool:
        """Apply the client-certificate policy to a finished handshake."""
        if certificate is None:
            return self.client_certificate_mode != ClientCertificateMode.REQUIRE_CERTIFICATE
        return self.validator.accept(certificate, chain, errors)
