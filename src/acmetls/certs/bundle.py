"""Certificate bundle: an issued certificate, its chain, and its private key.

A bundle is exported to and imported from a single PKCS#12 archive,
which is what the certificate cache stores.  Bundles are never
modified after creation; renewal builds a new one and the fetcher
swaps references.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from acmetls.errors import CertificateBundleError

if TYPE_CHECKING:
    from collections.abc import Sequence

log = logging.getLogger(__name__)

PrivateKey = ec.EllipticCurvePrivateKey | rsa.RSAPrivateKey


class CertificateBundle:
    """An issued leaf certificate with its private key and issuer chain.

    Parameters
    ----------
    certificate:
        The leaf certificate.
    private_key:
        Private key matching the leaf's public key.
    chain:
        Intermediate certificates, leaf-issuer first.
    friendly_name:
        PKCS#12 friendly name; defaults to ``"<common name> cert"``.

    """

    def __init__(
        self,
        certificate: x509.Certificate,
        private_key: PrivateKey,
        chain: Sequence[x509.Certificate] = (),
        friendly_name: str | None = None,
    ) -> None:
        self._certificate = certificate
        self._private_key: PrivateKey | None = private_key
        self._chain = tuple(chain)
        self._friendly_name = friendly_name or f"{self.common_name} cert"

    # -- construction ---------------------------------------------------

    @classmethod
    def from_pem_chain(cls, pem_chain: str | bytes, private_key: PrivateKey) -> CertificateBundle:
        """Build a bundle from a PEM chain (leaf first) and its key."""
        data = pem_chain.encode("ascii") if isinstance(pem_chain, str) else pem_chain
        try:
            certs = x509.load_pem_x509_certificates(data)
        except ValueError as exc:
            msg = f"Invalid PEM certificate chain: {exc}"
            raise CertificateBundleError(msg) from exc
        if not certs:
            msg = "PEM certificate chain is empty"
            raise CertificateBundleError(msg)
        return cls(certs[0], private_key, certs[1:])

    @classmethod
    def from_pkcs12(cls, data: bytes, password: str | None = None) -> CertificateBundle:
        """Load a bundle from PKCS#12 bytes.

        Raises
        ------
        CertificateBundleError
            If the archive is corrupt, the password is wrong, or the
            archive lacks a certificate or key.

        """
        try:
            key, cert, extra = pkcs12.load_key_and_certificates(
                data,
                password.encode("utf-8") if password else None,
            )
        except (ValueError, TypeError) as exc:
            msg = f"Cannot parse PKCS#12 certificate bundle: {exc}"
            raise CertificateBundleError(msg) from exc
        if cert is None or key is None:
            msg = "PKCS#12 bundle must contain both a certificate and a private key"
            raise CertificateBundleError(msg)
        if not isinstance(key, (ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey)):
            msg = f"Unsupported private key type in bundle: {type(key).__name__}"
            raise CertificateBundleError(msg)
        return cls(cert, key, extra)

    def to_pkcs12(self, password: str | None = None) -> bytes:
        """Export certificate, chain, and key as one PKCS#12 archive."""
        encryption: serialization.KeySerializationEncryption
        if password:
            encryption = serialization.BestAvailableEncryption(password.encode("utf-8"))
        else:
            encryption = serialization.NoEncryption()
        return pkcs12.serialize_key_and_certificates(
            self._friendly_name.encode("utf-8"),
            self.private_key,
            self._certificate,
            list(self._chain) or None,
            encryption,
        )

    # -- accessors ------------------------------------------------------

    @property
    def certificate(self) -> x509.Certificate:
        return self._certificate

    @property
    def chain(self) -> tuple[x509.Certificate, ...]:
        return self._chain

    @property
    def private_key(self) -> PrivateKey:
        if self._private_key is None:
            msg = "Certificate bundle has been disposed"
            raise CertificateBundleError(msg)
        return self._private_key

    @property
    def disposed(self) -> bool:
        return self._private_key is None

    @property
    def not_after(self) -> datetime:
        return self._certificate.not_valid_after_utc

    @property
    def common_name(self) -> str:
        attrs = self._certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        if not attrs:
            return ""
        value = attrs[0].value
        return value if isinstance(value, str) else value.decode("utf-8")

    @property
    def fingerprint(self) -> str:
        """SHA-256 hex digest of the leaf's DER encoding."""
        der = self._certificate.public_bytes(serialization.Encoding.DER)
        return hashlib.sha256(der).hexdigest()

    def expires_within(self, window: timedelta, now: datetime | None = None) -> bool:
        """True when ``not_after`` is at most *window* away from *now*."""
        now = now or datetime.now(UTC)
        return self.not_after - now <= window

    def allows_server_auth(self) -> bool:
        """False only when an EKU extension is present without ``serverAuth``."""
        try:
            eku = self._certificate.extensions.get_extension_for_class(x509.ExtendedKeyUsage)
        except x509.ExtensionNotFound:
            return True
        return ExtendedKeyUsageOID.SERVER_AUTH in eku.value

    def dispose(self) -> None:
        """Drop the reference to the private key."""
        self._private_key = None

    def __repr__(self) -> str:
        return (
            f"<CertificateBundle cn={self.common_name!r} "
            f"not_after={self.not_after.isoformat()} "
            f"fingerprint={self.fingerprint[:16]}>"
        )
