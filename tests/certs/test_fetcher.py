"""Tests for acmetls.certs.fetcher.CertificateFetcher."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from acmetls.certs.bundle import CertificateBundle
from acmetls.certs.cache import CallbackCertificateCache, FileCertificateCache
from acmetls.certs.fetcher import (
    ActiveCertificate,
    CertificateFetcher,
    RenewalOutcome,
    build_fetcher,
)
from acmetls.config.settings import RenewalSettings, build_settings
from acmetls.errors import AcmeError
from acmetls.metrics.collector import ACME_RUNS, RENEWAL_CHECKS, RENEWALS, MetricsCollector

DOMAIN = "www.example.org"
EMAIL = "ops@example.org"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_driver(*results) -> MagicMock:
    driver = MagicMock()
    driver.obtain_certificate.side_effect = list(results)
    return driver


def _make_cache(initial: CertificateBundle | None = None) -> tuple[CallbackCertificateCache, dict]:
    store: dict[str, bytes] = {}
    if initial is not None:
        store[DOMAIN] = initial.to_pkcs12()
    return CallbackCertificateCache(store.get, store.__setitem__), store


@pytest.fixture()
def fetchers():
    """Collect fetchers built by a test and dispose them afterwards."""
    created: list[CertificateFetcher] = []

    def _make(driver, **kwargs) -> CertificateFetcher:
        fetcher = CertificateFetcher(DOMAIN, EMAIL, driver, **kwargs)
        created.append(fetcher)
        return fetcher

    yield _make
    for fetcher in created:
        fetcher.dispose()


# ---------------------------------------------------------------------------
# TestActiveCertificate
# ---------------------------------------------------------------------------


class TestActiveCertificate:
    def test_swap_returns_previous(self, make_bundle):
        cell = ActiveCertificate()
        first, second = make_bundle(), make_bundle()
        assert cell.get() is None
        assert cell.swap(first) is None
        assert cell.swap(second) is first
        assert cell.get() is second


# ---------------------------------------------------------------------------
# TestInitialize
# ---------------------------------------------------------------------------


class TestInitialize:
    def test_fresh_cached_bundle_adopted(self, make_bundle, fetchers):
        cached = make_bundle(cn=DOMAIN, days=90)
        cache, _ = _make_cache(cached)
        driver = _make_driver()
        fetcher = fetchers(driver, cache=cache)

        fetcher.initialize()

        driver.obtain_certificate.assert_not_called()
        assert fetcher.certificate.fingerprint == cached.fingerprint
        assert fetcher.timer_pending

    def test_no_cache_runs_acme(self, make_bundle, fetchers):
        issued = make_bundle(cn=DOMAIN)
        cache, store = _make_cache()
        driver = _make_driver(issued)
        fetcher = fetchers(driver, cache=cache)

        fetcher.initialize()

        driver.obtain_certificate.assert_called_once_with(DOMAIN, EMAIL)
        assert fetcher.certificate is issued
        assert CertificateBundle.from_pkcs12(store[DOMAIN]).fingerprint == issued.fingerprint
        assert fetcher.timer_pending

    def test_stale_cached_bundle_replaced(self, make_bundle, fetchers):
        stale = make_bundle(cn=DOMAIN, days=0.5)
        issued = make_bundle(cn=DOMAIN)
        cache, _ = _make_cache(stale)
        driver = _make_driver(issued)
        fetcher = fetchers(driver, cache=cache)

        fetcher.initialize()

        driver.obtain_certificate.assert_called_once()
        assert fetcher.certificate is issued

    def test_cached_password_used(self, make_bundle, fetchers):
        cached = make_bundle(cn=DOMAIN)
        store = {DOMAIN: cached.to_pkcs12("pw")}
        cache = CallbackCertificateCache(store.get, store.__setitem__)
        driver = _make_driver()
        fetcher = fetchers(driver, cache=cache, cache_password="pw")
        fetcher.initialize()
        driver.obtain_certificate.assert_not_called()

    def test_corrupt_cache_is_a_miss(self, make_bundle, fetchers):
        store = {DOMAIN: b"not pkcs12"}
        issued = make_bundle(cn=DOMAIN)
        driver = _make_driver(issued)
        fetcher = fetchers(driver, cache=CallbackCertificateCache(store.get, store.__setitem__))

        fetcher.initialize()

        assert fetcher.certificate is issued
        assert store[DOMAIN] != b"not pkcs12"

    def test_cache_read_error_is_a_miss(self, make_bundle, fetchers):
        def _reader(domain):
            raise OSError("disk gone")

        issued = make_bundle(cn=DOMAIN)
        fetcher = fetchers(_make_driver(issued), cache=CallbackCertificateCache(_reader, None))
        fetcher.initialize()
        assert fetcher.certificate is issued

    def test_cache_write_failure_logged(self, make_bundle, fetchers, caplog):
        def _writer(domain, data):
            raise OSError("read-only filesystem")

        issued = make_bundle(cn=DOMAIN)
        fetcher = fetchers(_make_driver(issued), cache=CallbackCertificateCache(None, _writer))

        with caplog.at_level(logging.ERROR, logger="acmetls.certs.fetcher"):
            fetcher.initialize()

        assert fetcher.certificate is issued
        assert "Failed to cache certificate" in caplog.text

    def test_acme_failure_propagates(self, fetchers):
        driver = _make_driver(AcmeError("Failed to authorize certificate: invalid"))
        fetcher = fetchers(driver)

        with pytest.raises(AcmeError, match="invalid"):
            fetcher.initialize()

        assert fetcher.certificate is None
        assert not fetcher.timer_pending


# ---------------------------------------------------------------------------
# TestRenewNow
# ---------------------------------------------------------------------------


class TestRenewNow:
    def _adopted(self, fetchers, make_bundle, days, *results, metrics=None):
        cache, _ = _make_cache(make_bundle(cn=DOMAIN, days=days))
        driver = _make_driver(*results)
        fetcher = fetchers(driver, cache=cache, metrics=metrics)
        fetcher.initialize()
        return fetcher, driver

    def test_not_due_is_skipped(self, fetchers, make_bundle):
        fetcher, driver = self._adopted(fetchers, make_bundle, 60)
        result = fetcher.renew_now()
        assert result.outcome == RenewalOutcome.SKIPPED
        driver.obtain_certificate.assert_not_called()

    def test_due_renews_once(self, fetchers, make_bundle):
        issued = make_bundle(cn=DOMAIN)
        fetcher, driver = self._adopted(fetchers, make_bundle, 2, issued)
        old = fetcher.certificate

        result = fetcher.renew_now()

        assert result.outcome == RenewalOutcome.RENEWED
        assert result.error is None
        assert fetcher.certificate is issued
        driver.obtain_certificate.assert_called_once_with(DOMAIN, EMAIL)
        # the replaced bundle stays usable for in-flight handshakes
        assert not old.disposed

    def test_failure_keeps_current_bundle(self, fetchers, make_bundle, caplog):
        error = AcmeError("rate limited", retryable=True)
        fetcher, _ = self._adopted(fetchers, make_bundle, 2, error)
        old = fetcher.certificate

        with caplog.at_level(logging.ERROR, logger="acmetls.certs.fetcher"):
            result = fetcher.renew_now()

        assert result.outcome == RenewalOutcome.FAILED
        assert result.error is error
        assert fetcher.certificate is old
        assert "keeping the current one" in caplog.text

    def test_concurrent_check_skipped(self, fetchers, make_bundle):
        fetcher, driver = self._adopted(fetchers, make_bundle, 2)
        fetcher._renew_lock.acquire()
        try:
            assert fetcher.renew_now().outcome == RenewalOutcome.SKIPPED
        finally:
            fetcher._renew_lock.release()
        driver.obtain_certificate.assert_not_called()

    def test_metrics(self, fetchers, make_bundle):
        metrics = MetricsCollector()
        issued = make_bundle(cn=DOMAIN)
        fetcher, _ = self._adopted(
            fetchers,
            make_bundle,
            2,
            AcmeError("boom"),
            issued,
            metrics=metrics,
        )

        fetcher.renew_now()
        fetcher.renew_now()
        fetcher.renew_now()

        assert metrics.get(RENEWAL_CHECKS) == 3
        assert metrics.get(ACME_RUNS) == 2
        assert metrics.get(RENEWALS, labels={"outcome": "failed"}) == 1
        assert metrics.get(RENEWALS, labels={"outcome": "renewed"}) == 1
        assert metrics.get(RENEWALS, labels={"outcome": "skipped"}) == 1


# ---------------------------------------------------------------------------
# TestTimer
# ---------------------------------------------------------------------------


class TestTimer:
    def test_timer_renews_expiring_bundle(self, fetchers, make_bundle):
        issued = make_bundle(cn=DOMAIN)
        fired = threading.Event()

        def _obtain(domain, email):
            fired.set()
            return issued

        cache, _ = _make_cache(make_bundle(cn=DOMAIN, days=2))
        driver = MagicMock()
        driver.obtain_certificate.side_effect = _obtain
        settings = RenewalSettings(initial_check_delay=timedelta(milliseconds=20))
        fetcher = fetchers(driver, cache=cache, settings=settings)

        fetcher.initialize()

        assert fired.wait(timeout=5)
        for _ in range(100):
            if fetcher.certificate is issued and fetcher.timer_pending:
                break
            threading.Event().wait(0.02)
        assert fetcher.certificate is issued
        # re-armed for the next check
        assert fetcher.timer_pending


# ---------------------------------------------------------------------------
# TestDispose
# ---------------------------------------------------------------------------


class TestDispose:
    def test_dispose_cancels_and_clears(self, make_bundle):
        issued = make_bundle(cn=DOMAIN)
        fetcher = CertificateFetcher(DOMAIN, EMAIL, _make_driver(issued))
        fetcher.initialize()

        fetcher.dispose()

        assert fetcher.certificate is None
        assert issued.disposed
        assert not fetcher.timer_pending

    def test_no_schedule_after_dispose(self):
        fetcher = CertificateFetcher(DOMAIN, EMAIL, _make_driver())
        fetcher.dispose()
        fetcher._schedule(timedelta(seconds=1))
        assert not fetcher.timer_pending

    def test_renewal_finishing_after_dispose_is_discarded(self, make_bundle):
        renewed = make_bundle(cn=DOMAIN)
        started, release = threading.Event(), threading.Event()

        def _obtain(domain, email):
            started.set()
            release.wait(5)
            return renewed

        driver = MagicMock()
        driver.obtain_certificate.side_effect = _obtain
        cache, store = _make_cache(make_bundle(cn=DOMAIN, days=2))
        cached_bytes = store[DOMAIN]
        fetcher = CertificateFetcher(DOMAIN, EMAIL, driver, cache=cache)
        fetcher.initialize()

        results = []
        worker = threading.Thread(target=lambda: results.append(fetcher.renew_now()), daemon=True)
        worker.start()
        assert started.wait(5)
        fetcher.dispose()
        release.set()
        worker.join(5)

        assert results[0].outcome is RenewalOutcome.SKIPPED
        assert fetcher.certificate is None
        assert renewed.disposed
        assert store[DOMAIN] is cached_bytes
        assert not fetcher.timer_pending

    def test_context_manager(self, make_bundle):
        issued = make_bundle(cn=DOMAIN)
        with CertificateFetcher(DOMAIN, EMAIL, _make_driver(issued)) as fetcher:
            fetcher.initialize()
        assert issued.disposed


# ---------------------------------------------------------------------------
# TestBuildFetcher
# ---------------------------------------------------------------------------


class TestBuildFetcher:
    def test_wiring(self, tmp_path, minimal_config_data):
        minimal_config_data["cache"] = {"directory": str(tmp_path), "password": "pw"}
        minimal_config_data["server"] = {"bind": "127.0.0.1"}
        settings = build_settings(minimal_config_data)

        fetcher = build_fetcher(settings)

        assert fetcher.domain == "www.example.org"
        assert fetcher.address == "127.0.0.1"
        assert isinstance(fetcher._cache, FileCertificateCache)
        assert fetcher._cache_password == "pw"
        assert fetcher.settings == settings.renewal
        assert fetcher._driver.client.directory_url == settings.acme.directory_url
        fetcher.dispose()
