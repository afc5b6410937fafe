"""ACME (RFC 8555) client side: wire client, protocol driver, HTTP-01 responder."""

from acmetls.acme.client import LETS_ENCRYPT_DIRECTORY, LETS_ENCRYPT_STAGING_DIRECTORY, AcmeClient
from acmetls.acme.driver import AcmeDriver
from acmetls.acme.responder import ChallengeResponder, ChallengeServer

__all__ = [
    "LETS_ENCRYPT_DIRECTORY",
    "LETS_ENCRYPT_STAGING_DIRECTORY",
    "AcmeClient",
    "AcmeDriver",
    "ChallengeResponder",
    "ChallengeServer",
]
