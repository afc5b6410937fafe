"""Certificate bundles and their caches.

The fetcher lives in :mod:`acmetls.certs.fetcher`; it is not re-exported
here because it depends on the ACME and config packages.
"""

from acmetls.certs.bundle import CertificateBundle
from acmetls.certs.cache import (
    CallbackCertificateCache,
    CertificateCache,
    FileCertificateCache,
    NullCertificateCache,
)

__all__ = [
    "CallbackCertificateCache",
    "CertificateBundle",
    "CertificateCache",
    "FileCertificateCache",
    "NullCertificateCache",
]
