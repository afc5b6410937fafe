"""Certificate cache: opaque bytes keyed by domain name.

The fetcher reads the cache once at startup and writes it after every
successful issuance.  The bytes are a PKCS#12 bundle, but caches never
look inside them.  Embedders either pass two callables through
:class:`CallbackCertificateCache` or use the on-disk
:class:`FileCertificateCache`.
"""

from __future__ import annotations

import abc
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

log = logging.getLogger(__name__)

_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9.-]+$")


class CertificateCache(abc.ABC):
    """Read/write interface for cached certificate bundles."""

    @abc.abstractmethod
    def read(self, domain: str) -> bytes | None:
        """Return the cached bytes for *domain*, or ``None`` on a miss."""

    @abc.abstractmethod
    def write(self, domain: str, data: bytes) -> None:
        """Store *data* for *domain*, replacing any previous entry."""


class NullCertificateCache(CertificateCache):
    """Cache that never hits and discards writes."""

    def read(self, domain: str) -> bytes | None:  # noqa: ARG002
        return None

    def write(self, domain: str, data: bytes) -> None:
        pass


class CallbackCertificateCache(CertificateCache):
    """Adapt a pair of embedder-supplied callables to :class:`CertificateCache`.

    Either callable may be ``None``: a missing reader always misses, a
    missing writer drops writes.
    """

    def __init__(
        self,
        reader: Callable[[str], bytes | None] | None,
        writer: Callable[[str, bytes], None] | None,
    ) -> None:
        self._reader = reader
        self._writer = writer

    def read(self, domain: str) -> bytes | None:
        if self._reader is None:
            return None
        return self._reader(domain)

    def write(self, domain: str, data: bytes) -> None:
        if self._writer is not None:
            self._writer(domain, data)


class FileCertificateCache(CertificateCache):
    """Store one ``<domain>.pfx`` file per domain under *directory*.

    Writes go to a temporary file in the same directory and are renamed
    into place, so a crash never leaves a truncated bundle behind.
    Files are created ``0600`` since they hold private keys.
    """

    suffix = ".pfx"

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def path_for(self, domain: str) -> Path:
        if not _SAFE_NAME_RE.match(domain) or domain.startswith("."):
            msg = f"Refusing to build a cache path from domain {domain!r}"
            raise ValueError(msg)
        return self.directory / f"{domain}{self.suffix}"

    def read(self, domain: str) -> bytes | None:
        path = self.path_for(domain)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def write(self, domain: str, data: bytes) -> None:
        path = self.path_for(domain)
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{domain}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        log.info("Cached certificate bundle for %s at %s", domain, path)
