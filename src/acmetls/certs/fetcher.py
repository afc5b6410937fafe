"""Certificate fetcher and renewal scheduler.

Owns the active :class:`CertificateBundle` for one domain.  At startup
it adopts a fresh cached bundle or runs the ACME driver synchronously;
afterwards a single :class:`threading.Timer` re-checks expiry and
renews in the background.  A failed renewal is logged and counted but
never replaces the bundle that is currently serving.

Usage::

    fetcher = CertificateFetcher("example.org", "ops@example.org", driver,
                                 cache=FileCertificateCache("/var/lib/acmetls"))
    fetcher.initialize()         # raises if no certificate could be obtained
    ...
    bundle = fetcher.certificate  # snapshot for one handshake
    ...
    fetcher.dispose()
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

from acmetls.certs.bundle import CertificateBundle
from acmetls.certs.cache import CertificateCache, NullCertificateCache
from acmetls.config.settings import RenewalSettings
from acmetls.errors import CertificateBundleError
from acmetls.metrics.collector import ACME_RUNS, RENEWAL_CHECKS, RENEWALS

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from acmetls.acme.driver import AcmeDriver
    from acmetls.config.settings import AcmetlsSettings
    from acmetls.metrics.collector import MetricsCollector

log = logging.getLogger(__name__)


class RenewalOutcome(StrEnum):
    """What a single renewal check did."""

    SKIPPED = "skipped"
    RENEWED = "renewed"
    FAILED = "failed"


@dataclass(frozen=True)
class RenewalResult:
    """Outcome of one renewal check, plus the error when it failed."""

    outcome: RenewalOutcome
    error: Exception | None = None


class ActiveCertificate:
    """Reference cell holding the bundle currently used for handshakes.

    Reads are a single attribute load; writers swap under a lock so
    that two writers never interleave their bookkeeping.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._bundle: CertificateBundle | None = None

    def get(self) -> CertificateBundle | None:
        return self._bundle

    def swap(self, bundle: CertificateBundle | None) -> CertificateBundle | None:
        """Install *bundle* and return the one it replaced."""
        with self._lock:
            previous, self._bundle = self._bundle, bundle
        return previous


class CertificateFetcher:
    """Keep a valid certificate for *domain* available and renewed.

    Parameters
    ----------
    domain:
        DNS name the certificate is issued for.
    email:
        ACME account contact address.
    driver:
        Runs one complete ACME issuance per call.
    address:
        Address the TLS listener binds for this certificate.
    cache:
        Bundle persistence; defaults to no caching.
    cache_password:
        PKCS#12 password for cached bundles.
    settings:
        Renewal thresholds and intervals.
    metrics:
        Optional counter sink.
    now:
        Clock returning an aware UTC datetime; injected for tests.

    """

    def __init__(  # noqa: PLR0913
        self,
        domain: str,
        email: str,
        driver: AcmeDriver,
        *,
        address: str = "0.0.0.0",  # noqa: S104
        cache: CertificateCache | None = None,
        cache_password: str | None = None,
        settings: RenewalSettings | None = None,
        metrics: MetricsCollector | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._domain = domain
        self._email = email
        self._driver = driver
        self._address = address
        self._cache = cache or NullCertificateCache()
        self._cache_password = cache_password
        self._settings = settings or RenewalSettings()
        self._metrics = metrics
        self._now = now or (lambda: datetime.now(UTC))

        self._active = ActiveCertificate()
        self._renew_lock = threading.Lock()
        self._timer_lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._disposed = False

    # -- accessors ------------------------------------------------------

    @property
    def domain(self) -> str:
        return self._domain

    @property
    def address(self) -> str:
        return self._address

    @property
    def certificate(self) -> CertificateBundle | None:
        """The active bundle, or ``None`` before a successful initialize."""
        return self._active.get()

    @property
    def settings(self) -> RenewalSettings:
        return self._settings

    @property
    def timer_pending(self) -> bool:
        """True while a renewal check is scheduled."""
        with self._timer_lock:
            return self._timer is not None

    # -- lifecycle ------------------------------------------------------

    def initialize(self) -> None:
        """Adopt a fresh cached bundle or obtain one from the ACME server.

        Raises
        ------
        AcmeError
            When no usable cached bundle exists and the ACME run fails.
            No bundle is active and no timer is armed afterwards.

        """
        cached = self._read_cache()
        if cached is not None and cached.not_after - self._now() > self._settings.fresh_threshold:
            self._active.swap(cached)
            log.info(
                "Using cached certificate for %s (expires %s)",
                self._domain,
                cached.not_after.isoformat(),
            )
            self._schedule(self._settings.initial_check_delay)
            return

        if cached is not None:
            log.info(
                "Cached certificate for %s expires %s, requesting a new one",
                self._domain,
                cached.not_after.isoformat(),
            )
            cached.dispose()

        self._install(self._obtain())
        self._schedule(self._settings.check_interval)

    def renew_now(self) -> RenewalResult:
        """Run one renewal check synchronously.

        Renews only when the active bundle expires within
        ``renew_before`` (or there is none).  Concurrent calls do not
        queue: a check that finds another one in flight is skipped.
        """
        if not self._renew_lock.acquire(blocking=False):
            log.debug("Renewal check for %s already in progress", self._domain)
            return RenewalResult(RenewalOutcome.SKIPPED)
        try:
            return self._check()
        finally:
            self._renew_lock.release()

    def dispose(self) -> None:
        """Cancel the timer and drop the active bundle's key material."""
        with self._timer_lock:
            self._disposed = True
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        previous = self._active.swap(None)
        if previous is not None:
            previous.dispose()
        log.debug("Certificate fetcher for %s disposed", self._domain)

    def __enter__(self) -> CertificateFetcher:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.dispose()

    # -- renewal --------------------------------------------------------

    def _check(self) -> RenewalResult:
        if self._metrics:
            self._metrics.increment(RENEWAL_CHECKS)

        current = self._active.get()
        if current is not None and not current.expires_within(self._settings.renew_before, self._now()):
            log.debug(
                "Certificate for %s valid until %s, no renewal needed",
                self._domain,
                current.not_after.isoformat(),
            )
            return self._count(RenewalResult(RenewalOutcome.SKIPPED))

        log.info("Renewing certificate for %s", self._domain)
        try:
            bundle = self._obtain()
        except Exception as exc:  # noqa: BLE001
            log.error(  # noqa: TRY400
                "Renewal of certificate for %s failed, keeping the current one: %s",
                self._domain,
                exc,
            )
            return self._count(RenewalResult(RenewalOutcome.FAILED, exc))

        if not self._install(bundle):
            return self._count(RenewalResult(RenewalOutcome.SKIPPED))
        return self._count(RenewalResult(RenewalOutcome.RENEWED))

    def _on_timer(self) -> None:
        with self._timer_lock:
            if self._disposed:
                return
            self._timer = None
        try:
            self.renew_now()
        except Exception:
            # renew_now already contains driver failures; this guards the timer
            log.exception("Unexpected error in renewal check for %s", self._domain)
        finally:
            self._schedule(self._settings.check_interval)

    def _schedule(self, delay: timedelta) -> None:
        with self._timer_lock:
            if self._disposed:
                return
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(delay.total_seconds(), self._on_timer)
            timer.name = f"acmetls-renewal-{self._domain}"
            timer.daemon = True
            self._timer = timer
            timer.start()
        log.debug("Next renewal check for %s in %s", self._domain, delay)

    def _count(self, result: RenewalResult) -> RenewalResult:
        if self._metrics:
            self._metrics.increment(RENEWALS, labels={"outcome": result.outcome.value})
        return result

    # -- issuance & cache -----------------------------------------------

    def _obtain(self) -> CertificateBundle:
        if self._metrics:
            self._metrics.increment(ACME_RUNS)
        return self._driver.obtain_certificate(self._domain, self._email)

    def _install(self, bundle: CertificateBundle) -> bool:
        """Make *bundle* active, then persist it; a cache failure is logged only.

        Returns ``False`` (and disposes *bundle*) when the fetcher was
        disposed while the bundle was being obtained.
        """
        with self._timer_lock:
            if self._disposed:
                log.info("Fetcher for %s disposed during issuance, discarding %r", self._domain, bundle)
                bundle.dispose()
                return False
            previous = self._active.swap(bundle)
            data = bundle.to_pkcs12(self._cache_password)
        if previous is not None:
            # not disposed: in-flight handshakes may still hold it
            log.debug("Replaced certificate %r with %r", previous, bundle)
        try:
            self._cache.write(self._domain, data)
        except Exception:
            log.exception("Failed to cache certificate for %s", self._domain)
        return True

    def _read_cache(self) -> CertificateBundle | None:
        try:
            data = self._cache.read(self._domain)
        except Exception:  # noqa: BLE001
            log.warning("Reading cached certificate for %s failed", self._domain, exc_info=True)
            return None
        if not data:
            return None
        try:
            return CertificateBundle.from_pkcs12(data, self._cache_password)
        except CertificateBundleError as exc:
            log.warning("Ignoring unreadable cached certificate for %s: %s", self._domain, exc)
            return None


def build_fetcher(
    settings: AcmetlsSettings,
    metrics: MetricsCollector | None = None,
) -> CertificateFetcher:
    """Wire client, driver, cache, and fetcher from the settings tree."""
    from acmetls.acme.client import AcmeClient, load_or_create_account_key  # noqa: PLC0415
    from acmetls.acme.driver import AcmeDriver  # noqa: PLC0415
    from acmetls.certs.cache import FileCertificateCache  # noqa: PLC0415

    acme = settings.acme
    client = AcmeClient(
        acme.directory_url,
        load_or_create_account_key(acme.account_key_path, acme.account_key_type),
        timeout_seconds=acme.timeout_seconds,
        verify_ssl=acme.verify_ssl,
    )
    driver = AcmeDriver(
        client,
        challenge_address=acme.challenge_bind,
        challenge_port=acme.challenge_port,
        poll_interval=acme.poll_interval_seconds,
        poll_timeout=acme.poll_timeout_seconds,
        certificate_key_type=acme.certificate_key_type,
    )
    cache: CertificateCache | None = None
    if settings.cache.directory:
        cache = FileCertificateCache(settings.cache.directory)
    return CertificateFetcher(
        settings.domain,
        settings.email,
        driver,
        address=settings.server.bind,
        cache=cache,
        cache_password=settings.cache.password,
        settings=settings.renewal,
        metrics=metrics,
    )
