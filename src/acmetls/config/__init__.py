"""Configuration subsystem for ACMETLS.

Public API::

    from acmetls.config import load_config

    cfg = load_config("config.yaml")
    port = cfg.settings.server.port        # typed access
    url = cfg.get("acme.directory_url")    # dynamic dot-path
"""

from acmetls.config.loader import AcmetlsConfig, load_config
from acmetls.config.settings import (
    AcmeSettings,
    AcmetlsSettings,
    CacheSettings,
    LoggingSettings,
    RenewalSettings,
    ServerSettings,
    TlsSettings,
    build_settings,
)
from acmetls.errors import ConfigValidationError

__all__ = [
    "AcmeSettings",
    "AcmetlsConfig",
    "AcmetlsSettings",
    "CacheSettings",
    "ConfigValidationError",
    "LoggingSettings",
    "RenewalSettings",
    "ServerSettings",
    "TlsSettings",
    "build_settings",
    "load_config",
]
