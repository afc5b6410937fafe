"""ACME protocol driver: one certificate per call, HTTP-01 only.

Sequence for :meth:`AcmeDriver.obtain_certificate`:

1. register (or reuse) the account, agreeing to the terms of service
2. build a CSR (CN = domain) around a fresh private key and open an
   order for it, which yields the domain's authorization
3. install the HTTP-01 key authorization into the challenge responder
4. answer the challenge and poll the authorization until it leaves
   ``pending``
5. fail with :class:`AuthorizationFailedError` unless it became ``valid``
6. finalize the order and collect the issued chain
7. package chain and key as a :class:`CertificateBundle`

Any failure aborts the run and propagates; the driver never retries.
Retry scheduling belongs to :class:`acmetls.certs.fetcher.CertificateFetcher`.
"""

from __future__ import annotations

import logging
import time
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any

from acme import challenges
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import NameOID

from acmetls.acme.client import generate_private_key
from acmetls.acme.responder import CHALLENGE_PORT, ChallengeResponder, ChallengeServer
from acmetls.acme.types import AuthorizationStatus
from acmetls.certs.bundle import CertificateBundle
from acmetls.errors import AcmeError, AcmeTimeoutError, AuthorizationFailedError

if TYPE_CHECKING:
    from collections.abc import Callable

    from acme import messages

    from acmetls.acme.client import AcmeClient, PrivateKey

log = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.25
DEFAULT_POLL_TIMEOUT = 120.0


def build_csr(domain: str, key: PrivateKey) -> x509.CertificateSigningRequest:
    """Build a CSR with CN = *domain* and a matching single SAN entry."""
    return (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(domain)]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )


def select_http01_challenge(authzr: messages.AuthorizationResource) -> messages.ChallengeBody:
    """Return the ``http-01`` entry of an authorization's challenge list."""
    for challb in authzr.body.challenges:
        if isinstance(challb.chall, challenges.HTTP01):
            return challb
    offered = sorted(challb.chall.typ for challb in authzr.body.challenges)
    msg = f"ACME server did not offer an http-01 challenge (offered: {offered})"
    raise AcmeError(msg)


def authorization_status(authzr: messages.AuthorizationResource) -> AuthorizationStatus:
    """Status of *authzr*; servers may omit it while the authorization is new."""
    status = authzr.body.status
    if status is None:
        return AuthorizationStatus.PENDING
    try:
        return AuthorizationStatus(status.name)
    except ValueError:
        msg = f"Authorization {authzr.uri} has unexpected status {status.name!r}"
        raise AcmeError(msg) from None


def _authorization_for(domain: str, orderr: messages.OrderResource) -> messages.AuthorizationResource:
    if not orderr.authorizations:
        msg = f"ACME order {orderr.uri} lists no authorizations"
        raise AcmeError(msg)
    for authzr in orderr.authorizations:
        if authzr.body.identifier.value == domain:
            return authzr
    return orderr.authorizations[0]


def _challenge_error_detail(authzr: messages.AuthorizationResource) -> str | None:
    for challb in authzr.body.challenges:
        if challb.error is not None and challb.error.detail:
            return challb.error.detail
    return None


class AcmeDriver:
    """Run the registration → authorization → issuance sequence.

    Parameters
    ----------
    client:
        Wire client bound to the ACME directory and account key.
    responder:
        Challenge responder to install key authorizations into.  A new
        one is created when omitted.
    challenge_address:
        Address the HTTP-01 listener binds.
    challenge_port:
        Port the HTTP-01 listener binds (80 outside of tests).
    poll_interval:
        Seconds between authorization polls.
    poll_timeout:
        Upper bound on the authorization poll and on order finalization.
    certificate_key_type:
        ``"ec"`` or ``"rsa"`` for the certificate's private key.
    server_factory:
        Builds the context manager that serves *responder* for the
        duration of a run.  Defaults to a :class:`ChallengeServer`.
    sleep, clock:
        Injected for tests.

    """

    def __init__(  # noqa: PLR0913
        self,
        client: AcmeClient,
        *,
        responder: ChallengeResponder | None = None,
        challenge_address: str = "0.0.0.0",  # noqa: S104
        challenge_port: int = CHALLENGE_PORT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
        certificate_key_type: str = "ec",
        server_factory: Callable[[ChallengeResponder], AbstractContextManager[Any]] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.responder = responder or ChallengeResponder()
        self._challenge_address = challenge_address
        self._challenge_port = challenge_port
        self._poll_interval = poll_interval
        self._poll_timeout = poll_timeout
        self._key_type = certificate_key_type
        self._server_factory = server_factory or self._default_server
        self._sleep = sleep
        self._clock = clock

    def _default_server(self, responder: ChallengeResponder) -> ChallengeServer:
        return ChallengeServer(responder, self._challenge_address, self._challenge_port)


    # -- public API -----------------------------------------------------

    def obtain_certificate(self, domain: str, email: str) -> CertificateBundle:
        """Run the full ACME flow for *domain* and return the new bundle.

        Raises
        ------
        AuthorizationFailedError
            If the authorization ends in any state but ``valid``.
        AcmeTimeoutError
            If the authorization or the order stays non-terminal past
            the timeout.
        AcmeError
            On any other protocol or network failure.

        """
        log.info("Requesting certificate for %s from %s", domain, self.client.directory_url)
        key = generate_private_key(self._key_type)
        csr = build_csr(domain, key)
        with self._server_factory(self.responder):
            self.client.register(email)
            orderr = self.client.new_order(csr.public_bytes(serialization.Encoding.PEM))
            self._authorize(domain, orderr)

        pem_chain = self.client.finalize(orderr, self._poll_timeout)
        bundle = CertificateBundle.from_pem_chain(pem_chain, key)
        log.info(
            "Certificate issued for %s (expires %s)",
            domain,
            bundle.not_after.isoformat(),
        )
        return bundle

    # -- steps ----------------------------------------------------------

    def _authorize(self, domain: str, orderr: messages.OrderResource) -> None:
        """Steps 3-5 for the order's authorization of *domain*."""
        authzr = _authorization_for(domain, orderr)
        if authorization_status(authzr) == AuthorizationStatus.VALID:
            log.info("Authorization for %s is already valid", domain)
            return

        challb = select_http01_challenge(authzr)
        self.responder.install(challb.chall.encode("token"), self.client.key_authorization(challb))
        try:
            self.client.answer_challenge(challb)
            authzr = self._poll(authzr)
        finally:
            self.responder.retire()

        status = authorization_status(authzr)
        if status != AuthorizationStatus.VALID:
            detail = _challenge_error_detail(authzr)
            log.warning(
                "Authorization for %s ended %s%s",
                domain,
                status,
                f": {detail}" if detail else "",
            )
            raise AuthorizationFailedError(
                status,
                f"Failed to authorize certificate: {status}" + (f" ({detail})" if detail else ""),
            )
        log.info("Authorization for %s is valid", domain)

    def _poll(self, authzr: messages.AuthorizationResource) -> messages.AuthorizationResource:
        """Poll *authzr* every ``poll_interval`` while it is ``pending``."""
        deadline = self._clock() + self._poll_timeout
        authzr = self.client.poll(authzr)
        while authorization_status(authzr) == AuthorizationStatus.PENDING:
            if self._clock() >= deadline:
                msg = f"Authorization {authzr.uri} still pending after {self._poll_timeout:g}s"
                raise AcmeTimeoutError(msg)
            self._sleep(self._poll_interval)
            authzr = self.client.poll(authzr)
        return authzr
