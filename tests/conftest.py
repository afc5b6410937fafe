"""Root conftest for the ACMETLS test suite."""

from __future__ import annotations

import logging
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

# ---------------------------------------------------------------------------
# Make ``src/`` importable without installing the package
# ---------------------------------------------------------------------------
_SRC = str(Path(__file__).resolve().parent.parent / "src")
if _SRC not in sys.path:
    sys.path.insert(0, _SRC)

from acmetls.certs.bundle import CertificateBundle  # noqa: E402

# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------


def _issue(
    cn: str,
    *,
    days: float = 90,
    key=None,
    issuer_cert: x509.Certificate | None = None,
    issuer_key=None,
    is_ca: bool = False,
    eku: list | None = None,
    now: datetime | None = None,
) -> tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
    key = key or ec.generate_private_key(ec.SECP256R1())
    now = now or datetime.now(UTC)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_cert.subject if issuer_cert else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
    )
    if not is_ca:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(cn)]),
            critical=False,
        )
    if eku is not None:
        builder = builder.add_extension(x509.ExtendedKeyUsage(eku), critical=False)
    cert = builder.sign(issuer_key or key, hashes.SHA256())
    return cert, key


@pytest.fixture()
def issue_cert():
    """Factory: ``issue_cert(cn, days=..., issuer_cert=..., issuer_key=...)``."""
    return _issue


@pytest.fixture()
def make_bundle():
    """Factory building a self-signed :class:`CertificateBundle`.

    ``make_bundle(days=2)`` expires two days from now.
    """

    def _make(cn: str = "example.org", days: float = 90, eku: list | None = None) -> CertificateBundle:
        cert, key = _issue(cn, days=days, eku=eku)
        return CertificateBundle(cert, key)

    return _make


@pytest.fixture()
def ca_pair():
    """A throwaway CA certificate and key."""
    return _issue("ACMETLS Test CA", days=365, is_ca=True)


@pytest.fixture()
def server_auth_eku() -> list:
    return [ExtendedKeyUsageOID.SERVER_AUTH]


# ---------------------------------------------------------------------------
# Config data shared by multiple test modules
# ---------------------------------------------------------------------------


@pytest.fixture()
def minimal_config_data() -> dict:
    """Return a dict containing the minimum required config fields."""
    return {
        "domain": "www.example.org",
        "email": "ops@example.org",
    }


@pytest.fixture()
def tmp_config_file(tmp_path: Path, minimal_config_data: dict) -> Path:
    """Write *minimal_config_data* to a temp YAML file and return its path."""
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        yaml.safe_dump(minimal_config_data, default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
    return cfg


# ---------------------------------------------------------------------------
# Logging isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _restore_acmetls_logger():
    """Undo ``configure_logging`` so later tests still reach ``caplog``."""
    logger = logging.getLogger("acmetls")
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]
