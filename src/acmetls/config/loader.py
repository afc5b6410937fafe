"""ACMETLS configuration loader.

Lifecycle::

    cfg = load_config("/etc/acmetls/config.yaml")
    cfg.settings.server.port          # typed access
    cfg.get("acme.directory_url")     # dotted access to the raw data

Loading happens in three passes: YAML parsing, ``${VAR}`` /
``${VAR:-default}`` resolution, then cross-field validation that
collects every problem before raising a single
:class:`ConfigValidationError`.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

from acmetls.config.settings import AcmetlsSettings, build_settings
from acmetls.errors import ConfigurationError, ConfigValidationError

log = logging.getLogger(__name__)

_ENV_RE = re.compile(
    r"^\$\{([^}:]+?)(?::-(.*))?\}$",
    re.DOTALL,
)

_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z]{2,63}$",
)

_CLIENT_CERTIFICATE_MODES = frozenset({"none", "allow", "require"})
_SSL_PROTOCOLS = frozenset({"TLSv1.2", "TLSv1.3"})
_KEY_TYPES = frozenset({"ec", "rsa"})
_LOG_FORMATS = frozenset({"json", "text"})
_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

_RESERVED_TLS_PORT = 80
_MAX_PORT = 65535


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def _resolve_value(value: str, path: str) -> str:
    """Replace ``${VAR}`` or ``${VAR:-default}`` with env var value."""
    match = _ENV_RE.match(value)
    if match is None:
        return value
    var_name = match.group(1)
    fallback = match.group(2)
    resolved = os.environ.get(var_name)
    if resolved is not None:
        return resolved
    if fallback is not None:
        return fallback
    raise ConfigValidationError(
        [
            f"Environment variable '${{{var_name}}}' referenced "
            f"at '{path}' is not set and has no default",
        ],
    )


def resolve_env_vars(
    data: Any,  # noqa: ANN401
    path: str = "",
) -> None:
    """Walk *data* in-place and resolve ``${VAR}``/``${VAR:-default}`` strings."""
    if isinstance(data, dict):
        for key in data:
            child_path = f"{path}.{key}" if path else key
            if isinstance(data[key], str):
                data[key] = _resolve_value(data[key], child_path)
            elif isinstance(data[key], (dict, list)):
                resolve_env_vars(data[key], child_path)
    elif isinstance(data, list):
        for idx, item in enumerate(data):
            child_path = f"{path}[{idx}]"
            if isinstance(item, str):
                data[idx] = _resolve_value(item, child_path)
            elif isinstance(item, (dict, list)):
                resolve_env_vars(item, child_path)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _number(section: dict, key: str, default: float) -> float | None:
    """Return ``section[key]`` if numeric, else ``None`` (reported by caller)."""
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _positive(errors: list[str], section: dict, prefix: str, key: str, default: float) -> float:
    value = _number(section, key, default)
    if value is None:
        errors.append(f"{prefix}.{key} must be a number (got {section.get(key)!r})")
        return default
    if value <= 0:
        errors.append(f"{prefix}.{key} must be > 0 (got {value})")
    return value


def validate(data: dict) -> None:  # noqa: C901, PLR0912
    """Semantic & cross-field validation of resolved config data.

    Raises
    ------
    ConfigValidationError
        Listing every problem found.  Warnings are logged only.

    """
    errors: list[str] = []
    warnings: list[str] = []

    # -- identity --
    domain = data.get("domain")
    if not domain:
        errors.append("domain is required")
    elif isinstance(domain, str) and domain.startswith("*."):
        errors.append("domain must not be a wildcard name (HTTP-01 cannot validate it)")
    elif not isinstance(domain, str) or not _HOSTNAME_RE.match(domain):
        errors.append(f"domain must be a DNS host name (got {domain!r})")

    email = data.get("email")
    if not email:
        errors.append("email is required (used as the ACME account contact)")
    elif not isinstance(email, str) or "@" not in email:
        errors.append(f"email must be an e-mail address (got {email!r})")

    # -- acme --
    acme = data.get("acme") or {}
    directory_url = acme.get("directory_url", "https://")
    if not str(directory_url).startswith("https://"):
        warnings.append(
            f"acme.directory_url ({directory_url}) is not HTTPS; "
            "only use plain HTTP against a local test CA",
        )
    for key in ("account_key_type", "certificate_key_type"):
        key_type = acme.get(key, "ec")
        if key_type not in _KEY_TYPES:
            errors.append(f"acme.{key} must be one of {sorted(_KEY_TYPES)} (got {key_type!r})")
    poll_interval = _positive(errors, acme, "acme", "poll_interval_seconds", 0.25)
    poll_timeout = _positive(errors, acme, "acme", "poll_timeout_seconds", 120.0)
    _positive(errors, acme, "acme", "timeout_seconds", 30)
    if poll_timeout < poll_interval:
        errors.append(
            f"acme.poll_timeout_seconds ({poll_timeout}) must be >= "
            f"acme.poll_interval_seconds ({poll_interval})",
        )
    if acme.get("challenge_port", 80) != _RESERVED_TLS_PORT:
        warnings.append(
            f"acme.challenge_port is {acme.get('challenge_port')}; ACME servers "
            "validate HTTP-01 on port 80, so something must forward it",
        )

    # -- server --
    server = data.get("server") or {}
    port = server.get("port", 443)
    if not isinstance(port, int) or not 0 < port <= _MAX_PORT:
        errors.append(f"server.port must be in 1..{_MAX_PORT} (got {port!r})")
    elif port == _RESERVED_TLS_PORT:
        errors.append("server.port must not be 80: it is reserved for the HTTP-01 challenge")
    _positive(errors, server, "server", "workers", 16)

    # -- tls --
    tls = data.get("tls") or {}
    mode = tls.get("client_certificate_mode", "none")
    if mode not in _CLIENT_CERTIFICATE_MODES:
        errors.append(
            f"tls.client_certificate_mode must be one of "
            f"{sorted(_CLIENT_CERTIFICATE_MODES)} (got {mode!r})",
        )
    protocols = tls.get("ssl_protocols", ["TLSv1.2", "TLSv1.3"])
    if not protocols:
        errors.append("tls.ssl_protocols must not be empty")
    else:
        unknown = sorted(set(protocols) - _SSL_PROTOCOLS)
        if unknown:
            errors.append(
                f"tls.ssl_protocols contains unsupported {unknown}; "
                f"supported: {sorted(_SSL_PROTOCOLS)}",
            )
    _positive(errors, tls, "tls", "handshake_timeout_seconds", 10.0)
    ca_file = tls.get("ca_file")
    if ca_file and not Path(ca_file).is_file():
        errors.append(f"tls.ca_file {ca_file} does not exist")
    if mode == "require" and not ca_file:
        warnings.append(
            "tls.client_certificate_mode is 'require' without tls.ca_file; "
            "client chains are checked against the system trust store only",
        )

    # -- renewal --
    renewal = data.get("renewal") or {}
    fresh = _positive(errors, renewal, "renewal", "fresh_threshold_seconds", 86400)
    renew_before = _positive(errors, renewal, "renewal", "renew_before_seconds", 14 * 86400)
    _positive(errors, renewal, "renewal", "check_interval_seconds", 86400)
    _positive(errors, renewal, "renewal", "initial_check_delay_seconds", 60)
    if fresh > renew_before:
        warnings.append(
            f"renewal.fresh_threshold_seconds ({fresh}) exceeds "
            f"renewal.renew_before_seconds ({renew_before}); a cached "
            "certificate may be re-issued at startup without ever being renewed",
        )

    # -- metrics --
    metrics = data.get("metrics") or {}
    if not isinstance(metrics.get("enabled", False), bool):
        errors.append(f"metrics.enabled must be true or false (got {metrics.get('enabled')!r})")
    metrics_port = metrics.get("port", 9100)
    if not isinstance(metrics_port, int) or not 0 < metrics_port <= _MAX_PORT:
        errors.append(f"metrics.port must be in 1..{_MAX_PORT} (got {metrics_port!r})")
    elif metrics.get("enabled") and metrics_port in (port, acme.get("challenge_port", _RESERVED_TLS_PORT)):
        errors.append(f"metrics.port {metrics_port} collides with the TLS or HTTP-01 port")

    # -- logging --
    logging_cfg = data.get("logging") or {}
    level = str(logging_cfg.get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        errors.append(f"logging.level must be one of {sorted(_LOG_LEVELS)} (got {level!r})")
    fmt = logging_cfg.get("format", "text")
    if fmt not in _LOG_FORMATS:
        errors.append(f"logging.format must be one of {sorted(_LOG_FORMATS)} (got {fmt!r})")

    for w in warnings:
        log.warning("Config warning: %s", w)

    if errors:
        raise ConfigValidationError(errors)


# ---------------------------------------------------------------------------
# Config object
# ---------------------------------------------------------------------------


class AcmetlsConfig:
    """Validated configuration: the typed settings tree plus the raw data."""

    def __init__(self, data: dict, source: str | None = None) -> None:
        resolve_env_vars(data)
        validate(data)
        self._data = data
        self._source = source
        self._settings = build_settings(data)

    @property
    def settings(self) -> AcmetlsSettings:
        """Fully-typed, frozen settings tree."""
        return self._settings

    @property
    def data(self) -> dict:
        return self._data

    @property
    def source(self) -> str | None:
        return self._source

    def get(self, path: str, default: Any = None) -> Any:  # noqa: ANN401
        """Look up a dotted *path* (``"acme.directory_url"``) in the raw data."""
        node: Any = self._data
        for part in path.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def __repr__(self) -> str:
        return f"<AcmetlsConfig config_file={self._source or '?'}>"


def load_config(config_file: str | Path) -> AcmetlsConfig:
    """Read, resolve, and validate the YAML file at *config_file*.

    Raises
    ------
    ConfigurationError
        If the file is missing or not a YAML mapping.
    ConfigValidationError
        If any value is invalid.

    """
    path = Path(config_file)
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as exc:
        msg = f"Config file not found: {path}"
        raise ConfigurationError(msg) from exc
    except yaml.YAMLError as exc:
        msg = f"Config file {path} is not valid YAML: {exc}"
        raise ConfigurationError(msg) from exc

    if not isinstance(data, dict):
        msg = f"Config file {path} must contain a mapping at the top level"
        raise ConfigurationError(msg)

    log.debug("Loaded configuration from %s", path)
    return AcmetlsConfig(data, source=str(path))
