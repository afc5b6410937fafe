"""ACMETLS -- automatic ACME certificates for a TLS listener."""

__version__ = "1.0.0"
