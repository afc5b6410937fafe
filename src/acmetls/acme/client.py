"""ACME wire client on top of certbot's ``acme`` library.

:class:`AcmeClient` narrows :class:`acme.client.ClientV2` to the calls
the driver makes: account registration (reusing an existing account),
CSR-keyed orders, single authorization polls, and order finalization.
Replay nonces, JWS signing and the one-shot ``badNonce`` resend are the
library's job.  Every library failure is re-raised as
:class:`~acmetls.errors.AcmeError`.
"""

from __future__ import annotations

import contextlib
import datetime
import logging
from pathlib import Path
from typing import TYPE_CHECKING

import josepy as jose
from acme import client as acme_client
from acme import errors as acme_errors
from acme import messages
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from acmetls import __version__
from acmetls.errors import AcmeError, AcmeTimeoutError
from acmetls.logging.sanitize import sanitize_for_logs

if TYPE_CHECKING:
    from collections.abc import Iterator

log = logging.getLogger(__name__)

LETS_ENCRYPT_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"
LETS_ENCRYPT_STAGING_DIRECTORY = "https://acme-staging-v02.api.letsencrypt.org/directory"

PrivateKey = ec.EllipticCurvePrivateKey | rsa.RSAPrivateKey

_RSA_KEY_SIZE = 2048
_RETRYABLE_CODES = frozenset({"rateLimited", "serverInternal", "badNonce"})


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def generate_private_key(key_type: str = "ec") -> PrivateKey:
    """Generate a P-256 (``"ec"``) or RSA-2048 (``"rsa"``) private key."""
    if key_type == "rsa":
        return rsa.generate_private_key(public_exponent=65537, key_size=_RSA_KEY_SIZE)
    if key_type == "ec":
        return ec.generate_private_key(ec.SECP256R1())
    msg = f"Unsupported key type '{key_type}' (expected 'ec' or 'rsa')"
    raise AcmeError(msg)


def load_or_create_account_key(path: str | Path | None, key_type: str = "ec") -> PrivateKey:
    """Load the PEM account key at *path*, creating it on first use.

    With *path* ``None`` a throwaway key is generated; the ACME account
    then lives only as long as the fetcher does.
    """
    if path is None:
        return generate_private_key(key_type)

    key_path = Path(path)
    if key_path.is_file():
        key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
        if not isinstance(key, (ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey)):
            msg = f"Account key at {key_path} is neither EC nor RSA"
            raise AcmeError(msg)
        log.debug("Loaded ACME account key from %s", key_path)
        return key

    key = generate_private_key(key_type)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ),
    )
    key_path.chmod(0o600)
    log.info("Created ACME account key at %s", key_path)
    return key


def to_jwk(key: PrivateKey) -> jose.JWK:
    """Wrap *key* as the josepy JWK the library signs with."""
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return jose.JWKEC(key=key)
    return jose.JWKRSA(key=key)


def _signature_algorithm(key: PrivateKey) -> jose.JWASignature:
    return jose.ES256 if isinstance(key, ec.EllipticCurvePrivateKey) else jose.RS256


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def _library_errors(action: str) -> Iterator[None]:
    """Re-raise ``acme`` / ``josepy`` / transport failures as :class:`AcmeError`."""
    try:
        yield
    except acme_errors.TimeoutError as exc:
        msg = f"{action} timed out"
        raise AcmeTimeoutError(msg) from exc
    except messages.Error as exc:
        msg = f"{action} failed: {exc.detail or exc.description or exc.typ}"
        raise AcmeError(
            msg,
            problem_type=exc.typ,
            retryable=exc.code in _RETRYABLE_CODES,
        ) from exc
    except acme_errors.IssuanceError as exc:
        msg = f"{action} failed: {exc.error.detail or exc.error.typ}"
        raise AcmeError(msg, problem_type=exc.error.typ) from exc
    except (acme_errors.Error, jose.DeserializationError) as exc:
        msg = f"{action} failed: {exc}"
        raise AcmeError(msg) from exc
    except OSError as exc:
        # requests' exceptions derive from OSError
        msg = f"{action} failed: {exc}"
        raise AcmeError(msg, retryable=True) from exc


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class AcmeClient:
    """ACME client bound to one directory and one account key.

    Not thread-safe.  The certificate fetcher guarantees that at most
    one ACME run is in flight, so no locking is done here.

    Parameters
    ----------
    directory_url:
        URL of the ACME directory resource.
    account_key:
        Private key used to sign every request.
    timeout_seconds:
        Socket timeout for each HTTP request.
    verify_ssl:
        Verify the ACME server's certificate.  Disable only for local
        test CAs such as Pebble.

    """

    def __init__(
        self,
        directory_url: str,
        account_key: PrivateKey,
        *,
        timeout_seconds: float = 30,
        verify_ssl: bool = True,
    ) -> None:
        self.directory_url = directory_url
        self.account_key = account_key
        self.jwk = to_jwk(account_key)
        self.account_url: str | None = None
        self._net = acme_client.ClientNetwork(
            self.jwk,
            alg=_signature_algorithm(account_key),
            verify_ssl=verify_ssl,
            user_agent=f"acmetls/{__version__}",
            timeout=timeout_seconds,
        )
        self._acme: acme_client.ClientV2 | None = None

    @property
    def acme(self) -> acme_client.ClientV2:
        """Library client, created when the directory is first needed."""
        if self._acme is None:
            with _library_errors(f"Fetching the ACME directory {self.directory_url}"):
                directory = acme_client.ClientV2.get_directory(self.directory_url, self._net)
            self._acme = acme_client.ClientV2(directory, net=self._net)
            log.debug("Fetched ACME directory from %s", self.directory_url)
        return self._acme

    def register(self, email: str) -> str:
        """Create or look up the account, agreeing to the terms of service.

        Returns the account URL.  An existing account for the same key is
        reported by the server as a conflict and reused.
        """
        registration = messages.NewRegistration.from_data(
            email=email or None,
            terms_of_service_agreed=True,
        )
        with _library_errors("ACME account registration"):
            try:
                regr = self.acme.new_account(registration)
                reused = False
            except acme_errors.ConflictError as exc:
                regr = self.acme.query_registration(
                    messages.RegistrationResource(uri=exc.location, body=messages.Registration()),
                )
                reused = True
        self.account_url = regr.uri
        log.info("ACME account %s (%s)", "reused" if reused else "registered", self.account_url)
        return self.account_url

    def new_order(self, csr_pem: bytes) -> messages.OrderResource:
        """Create an order for the names in *csr_pem*, authorizations included."""
        with _library_errors("ACME order creation"):
            orderr = self.acme.new_order(csr_pem)
        log.debug("ACME order %s: %s", orderr.uri, sanitize_for_logs(orderr.body.to_json()))
        return orderr

    def key_authorization(self, challb: messages.ChallengeBody) -> str:
        """Key authorization to serve for *challb* (``token.thumbprint``)."""
        return challb.chall.validation(self.jwk)

    def answer_challenge(self, challb: messages.ChallengeBody) -> None:
        """Tell the server the challenge response is ready to be checked."""
        with _library_errors(f"Answering challenge {challb.uri}"):
            self.acme.answer_challenge(challb, challb.response(self.jwk))

    def poll(self, authzr: messages.AuthorizationResource) -> messages.AuthorizationResource:
        """Fetch the current state of one authorization."""
        with _library_errors(f"Polling authorization {authzr.uri}"):
            updated, _ = self.acme.poll(authzr)
        return updated

    def finalize(self, orderr: messages.OrderResource, timeout: float) -> str:
        """Submit the order's CSR and wait up to *timeout* seconds for the chain.

        Returns the PEM certificate chain, leaf first.
        """
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=timeout)  # noqa: DTZ005
        with _library_errors(f"Finalizing ACME order {orderr.uri}"):
            finalized = self.acme.finalize_order(orderr, deadline)
        if not finalized.fullchain_pem:
            msg = f"ACME order {orderr.uri} finalized without a certificate"
            raise AcmeError(msg)
        log.debug("ACME order %s issued: %s", orderr.uri, sanitize_for_logs(finalized.fullchain_pem))
        return finalized.fullchain_pem
