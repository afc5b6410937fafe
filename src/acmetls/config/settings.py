"""Typed, frozen dataclasses for every configuration section.

This module is the **single source of truth** for default values.
The loader validates raw YAML; these builders are what the
application actually reads.

Access pattern::

    from acmetls.config import load_config

    cfg = load_config("acmetls.yaml")
    print(cfg.settings.renewal.renew_before)   # typed, IDE-autocompleted
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from acmetls.acme.client import LETS_ENCRYPT_DIRECTORY

# ---------------------------------------------------------------------------
# ACME
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AcmeSettings:
    """ACME directory, account, and polling configuration."""

    directory_url: str = LETS_ENCRYPT_DIRECTORY
    account_key_path: str | None = None
    account_key_type: str = "ec"
    certificate_key_type: str = "ec"
    timeout_seconds: int = 30
    poll_interval_seconds: float = 0.25
    poll_timeout_seconds: float = 120.0
    verify_ssl: bool = True
    challenge_bind: str = "0.0.0.0"  # noqa: S104
    challenge_port: int = 80


def _build_acme(data: dict | None) -> AcmeSettings:
    d = data or {}
    return AcmeSettings(
        directory_url=d.get("directory_url", LETS_ENCRYPT_DIRECTORY),
        account_key_path=d.get("account_key_path"),
        account_key_type=d.get("account_key_type", "ec"),
        certificate_key_type=d.get("certificate_key_type", "ec"),
        timeout_seconds=d.get("timeout_seconds", 30),
        poll_interval_seconds=d.get("poll_interval_seconds", 0.25),
        poll_timeout_seconds=d.get("poll_timeout_seconds", 120.0),
        verify_ssl=d.get("verify_ssl", True),
        challenge_bind=d.get("challenge_bind", "0.0.0.0"),  # noqa: S104
        challenge_port=d.get("challenge_port", 80),
    )


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServerSettings:
    """TLS listener configuration (bind address, port, handler threads)."""

    bind: str = "0.0.0.0"  # noqa: S104
    port: int = 443
    workers: int = 16
    backlog: int = 128


def _build_server(data: dict | None) -> ServerSettings:
    d = data or {}
    return ServerSettings(
        bind=d.get("bind", "0.0.0.0"),  # noqa: S104
        port=d.get("port", 443),
        workers=d.get("workers", 16),
        backlog=d.get("backlog", 128),
    )


# ---------------------------------------------------------------------------
# TLS
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TlsSettings:
    """Per-connection handshake policy."""

    client_certificate_mode: str = "none"
    ssl_protocols: tuple[str, ...] = ("TLSv1.2", "TLSv1.3")
    check_certificate_revocation: bool = False
    handshake_timeout_seconds: float = 10.0
    ca_file: str | None = None


def _build_tls(data: dict | None) -> TlsSettings:
    d = data or {}
    return TlsSettings(
        client_certificate_mode=d.get("client_certificate_mode", "none"),
        ssl_protocols=tuple(d.get("ssl_protocols", ["TLSv1.2", "TLSv1.3"])),
        check_certificate_revocation=d.get("check_certificate_revocation", False),
        handshake_timeout_seconds=d.get("handshake_timeout_seconds", 10.0),
        ca_file=d.get("ca_file"),
    )


# ---------------------------------------------------------------------------
# Renewal
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RenewalSettings:
    """Thresholds and timer intervals of the renewal scheduler.

    Attributes
    ----------
    fresh_threshold:
        A cached bundle is adopted at startup only if it is valid for
        longer than this.
    renew_before:
        A timer firing renews once the active bundle expires within
        this window.
    initial_check_delay:
        Delay of the first check after adopting a cached bundle.
    check_interval:
        Delay between checks after an issuance or a previous check.

    """

    fresh_threshold: timedelta = field(default_factory=lambda: timedelta(days=1))
    renew_before: timedelta = field(default_factory=lambda: timedelta(days=14))
    initial_check_delay: timedelta = field(default_factory=lambda: timedelta(minutes=1))
    check_interval: timedelta = field(default_factory=lambda: timedelta(days=1))


def _build_renewal(data: dict | None) -> RenewalSettings:
    d = data or {}
    return RenewalSettings(
        fresh_threshold=timedelta(seconds=d.get("fresh_threshold_seconds", 86400)),
        renew_before=timedelta(seconds=d.get("renew_before_seconds", 14 * 86400)),
        initial_check_delay=timedelta(seconds=d.get("initial_check_delay_seconds", 60)),
        check_interval=timedelta(seconds=d.get("check_interval_seconds", 86400)),
    )


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CacheSettings:
    """Where issued bundles are persisted (``None`` disables caching)."""

    directory: str | None = None
    password: str | None = None


def _build_cache(data: dict | None) -> CacheSettings:
    d = data or {}
    return CacheSettings(
        directory=d.get("directory"),
        password=d.get("password"),
    )


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoggingSettings:
    """Application logging configuration (level, format)."""

    level: str = "INFO"
    format: str = "text"


def _build_logging(data: dict | None) -> LoggingSettings:
    d = data or {}
    return LoggingSettings(
        level=d.get("level", "INFO"),
        format=d.get("format", "text"),
    )


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricsSettings:
    """Optional cleartext listener serving the Prometheus endpoint."""

    enabled: bool = False
    bind: str = "127.0.0.1"
    port: int = 9100


def _build_metrics(data: dict | None) -> MetricsSettings:
    d = data or {}
    return MetricsSettings(
        enabled=d.get("enabled", False),
        bind=d.get("bind", "127.0.0.1"),
        port=d.get("port", 9100),
    )


# ---------------------------------------------------------------------------
# Root settings aggregate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AcmetlsSettings:
    domain: str
    email: str
    acme: AcmeSettings
    server: ServerSettings
    tls: TlsSettings
    renewal: RenewalSettings
    cache: CacheSettings
    logging: LoggingSettings
    metrics: MetricsSettings = field(default_factory=MetricsSettings)


def build_settings(data: dict) -> AcmetlsSettings:
    """Build the full typed settings tree from raw config data.

    Called by :func:`acmetls.config.loader.load_config` after
    environment-variable resolution and validation.
    """
    return AcmetlsSettings(
        domain=data["domain"],
        email=data["email"],
        acme=_build_acme(data.get("acme")),
        server=_build_server(data.get("server")),
        tls=_build_tls(data.get("tls")),
        renewal=_build_renewal(data.get("renewal")),
        cache=_build_cache(data.get("cache")),
        logging=_build_logging(data.get("logging")),
        metrics=_build_metrics(data.get("metrics")),
    )
