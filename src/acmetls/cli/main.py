"""ACMETLS command-line entry point.

Usage::

    acmetls -c /etc/acmetls/config.yaml
    acmetls -c config.yaml --validate-only
    acmetls -c config.yaml serve
    acmetls -c config.yaml fetch
    acmetls -c config.yaml inspect
    python -m acmetls -c config.yaml
"""

from __future__ import annotations

import argparse
import contextlib
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

log = logging.getLogger(__name__)


def _get_version() -> str:
    from acmetls import __version__

    return __version__


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="acmetls",
        description="ACMETLS: TLS listener with automatic ACME certificates",
    )
    parser.add_argument(
        "-c",
        "--config",
        required=True,
        metavar="PATH",
        help="Path to the YAML configuration file.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=False,
        help="Enable debug output (full tracebacks, verbose logging).",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        default=False,
        help="Validate the configuration file and exit.",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("serve", help="Obtain a certificate and serve TLS (default)")
    subparsers.add_parser("fetch", help="Obtain a certificate once and write the cache")
    subparsers.add_parser("inspect", help="Show the cached certificate")

    return parser


def _print_error(message: str) -> None:
    """Print a user-facing error to stderr."""
    sys.stderr.write(f"acmetls: error: {message}\n")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point.  Parses arguments, loads config, dispatches."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    config_path = Path(args.config)
    if not config_path.is_file():
        _print_error(f"configuration file not found: {config_path}")
        sys.exit(1)

    # -- bootstrap logging early (basic stderr until config is loaded) ---
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    from acmetls.errors import ConfigurationError

    try:
        from acmetls.config import load_config

        config = load_config(config_path)
    except ConfigurationError as exc:
        _print_error(str(exc))
        sys.exit(1)
    except Exception as exc:
        if args.debug:
            raise
        _print_error(f"failed to load configuration: {exc}")
        sys.exit(1)

    from acmetls.logging import configure_logging

    configure_logging(config.settings.logging)
    if args.debug:
        logging.getLogger("acmetls").setLevel(logging.DEBUG)

    if args.validate_only:
        _print_settings_summary(config)
        sys.exit(0)

    command = args.command or "serve"
    try:
        if command == "fetch":
            _run_fetch(config)
        elif command == "inspect":
            _run_inspect(config)
        else:
            _run_serve(config)
    except ConfigurationError as exc:
        _print_error(str(exc))
        sys.exit(1)
    except Exception as exc:
        if args.debug:
            raise
        _print_error(f"{command} failed: {exc}")
        sys.exit(1)


def _run_serve(config) -> None:  # noqa: ANN001
    from acmetls.certs.fetcher import build_fetcher
    from acmetls.metrics import MetricsCollector
    from acmetls.metrics.endpoint import MetricsServer
    from acmetls.server.hello import hello_handler
    from acmetls.server.listener import ServerOptions, TlsServer, use_lets_encrypt
    from acmetls.tls.options import HttpsAdapterOptions

    settings = config.settings
    metrics = MetricsCollector()
    metrics_server = contextlib.nullcontext()
    if settings.metrics.enabled:
        metrics_server = MetricsServer(metrics, settings.metrics.bind, settings.metrics.port)
    with build_fetcher(settings, metrics) as fetcher, metrics_server:
        fetcher.initialize()
        options = use_lets_encrypt(
            ServerOptions(),
            fetcher,
            HttpsAdapterOptions.from_settings(settings.tls),
            port=settings.server.port,
            metrics=metrics,
        )
        server = TlsServer(
            options,
            hello_handler,
            workers=settings.server.workers,
            backlog=settings.server.backlog,
        )
        server.register_signals()
        server.start()
        try:
            server.wait()
        finally:
            server.stop()


def _run_fetch(config) -> None:  # noqa: ANN001
    from acmetls.certs.fetcher import build_fetcher

    settings = config.settings
    if not settings.cache.directory:
        log.warning("cache.directory is not set; the certificate will not be persisted")
    with build_fetcher(settings) as fetcher:
        fetcher.initialize()
        bundle = fetcher.certificate
        sys.stdout.write(f"{bundle.common_name}: valid until {bundle.not_after.isoformat()}\n")


def _run_inspect(config) -> None:  # noqa: ANN001
    from acmetls.certs.bundle import CertificateBundle
    from acmetls.certs.cache import FileCertificateCache
    from acmetls.errors import ConfigurationError

    settings = config.settings
    if not settings.cache.directory:
        msg = "cache.directory is not set; nothing to inspect"
        raise ConfigurationError(msg)
    data = FileCertificateCache(settings.cache.directory).read(settings.domain)
    if data is None:
        _print_error(f"no cached certificate for {settings.domain}")
        sys.exit(1)

    bundle = CertificateBundle.from_pkcs12(data, settings.cache.password)
    remaining = bundle.not_after - datetime.now(UTC)
    lines = [
        f"Subject:     {bundle.certificate.subject.rfc4514_string()}",
        f"Issuer:      {bundle.certificate.issuer.rfc4514_string()}",
        f"Not after:   {bundle.not_after.isoformat()} ({remaining.days} days left)",
        f"Chain:       {len(bundle.chain)} intermediate(s)",
        f"SHA-256:     {bundle.fingerprint}",
        f"Renewal due: {'yes' if bundle.expires_within(settings.renewal.renew_before) else 'no'}",
    ]
    sys.stdout.write("\n".join(lines) + "\n")


def _print_settings_summary(config) -> None:  # noqa: ANN001
    """Print a short summary of the loaded configuration."""
    s = config.settings
    lines = [
        f"Configuration OK: {config.source}",
        f"  domain:      {s.domain}",
        f"  directory:   {s.acme.directory_url}",
        f"  listen:      {s.server.bind}:{s.server.port}",
        f"  client cert: {s.tls.client_certificate_mode}",
        f"  protocols:   {', '.join(s.tls.ssl_protocols)}",
        f"  cache:       {s.cache.directory or 'disabled'}",
        f"  metrics:     {f'{s.metrics.bind}:{s.metrics.port}' if s.metrics.enabled else 'disabled'}",
    ]
    sys.stdout.write("\n".join(lines) + "\n")
