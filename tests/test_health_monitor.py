#tests/test_health_monitor.py

"""Test health monitor thresholds, repair backoff and certificate checks."""

import time

import pytest

from stack_engine.certs.issuers import SelfSignedIssuer
from stack_engine.core.models import RecordType, ServicePhase
from stack_engine.health_monitor.backoff import BackoffTracker, ExponentialBackoff


def transitions(events, service_id):
    return [
        e.metadata["to_phase"] for e in events.of_type("service.transitioned")
        if e.subject == service_id
    ]


def broken_issue(self, hostname, now):
    raise RuntimeError("issuer offline")


class TestBackoff:

    def test_delays(self):
        backoff = ExponentialBackoff(10, 3, 600)

        assert [backoff.delay(n) for n in range(1, 7)] == [10, 30, 90, 270, 600, 600]
        assert backoff.delay(0) == 0

    def test_invalid_parameters(self):
        with pytest.raises(ValueError):
            ExponentialBackoff(base_seconds=0)
        with pytest.raises(ValueError):
            ExponentialBackoff(base_seconds=10, cap_seconds=5)

    def test_tracker(self, clock):
        tracker = BackoffTracker(ExponentialBackoff(10, 3, 600))
        now = clock()

        assert tracker.ready("ozone", now)
        assert tracker.record_attempt("ozone", now) == 10
        assert not tracker.ready("ozone", clock.advance(seconds=9))
        assert tracker.ready("ozone", clock.advance(seconds=1))
        assert tracker.record_attempt("ozone", clock()) == 30
        assert tracker.attempts("ozone") == 2

        tracker.reset("ozone")
        assert tracker.attempts("ozone") == 0
        assert tracker.next_attempt_at("ozone") is None


class TestProbeThresholds:
    """Test HEALTHY -> DEGRADED -> FAILED boundaries."""

    def test_exact_boundaries(self, orchestrator, monitor, spec, driver, events):
        orchestrator.apply(spec)
        store = orchestrator.store
        driver.unhealthy.add("ozone")

        monitor.tick()
        monitor.tick()
        assert store.phase("ozone") == ServicePhase.HEALTHY
        assert store.get("ozone").consecutive_failures == 2

        monitor.tick()
        assert store.phase("ozone") == ServicePhase.DEGRADED
        assert store.get("ozone").degraded_failures == 0

        monitor.tick()
        monitor.tick()
        assert store.phase("ozone") == ServicePhase.DEGRADED
        assert store.get("ozone").degraded_failures == 2

        # third failure while degraded fails the service and repairs it at once
        monitor.tick()
        assert transitions(events, "ozone")[-5:] == [
            "DEGRADED", "FAILED", "PROVISIONING", "VERIFYING", "HEALTHY",
        ]
        assert driver.calls_for("apply").count("ozone") == 2

    def test_single_success_resets_counter(self, orchestrator, monitor, spec, driver):
        orchestrator.apply(spec)
        driver.unhealthy.add("ozone")
        monitor.tick()
        monitor.tick()

        driver.unhealthy.discard("ozone")
        monitor.tick()
        driver.unhealthy.add("ozone")
        monitor.tick()
        monitor.tick()

        assert orchestrator.store.phase("ozone") == ServicePhase.HEALTHY
        assert orchestrator.store.get("ozone").consecutive_failures == 2

    def test_passing_probe_restarts_degraded_count(self, orchestrator, monitor, spec, driver, resolver):
        orchestrator.apply(spec)
        store = orchestrator.store
        driver.unhealthy.add("feed")
        for _ in range(5):
            monitor.tick()
        assert store.phase("feed") == ServicePhase.DEGRADED
        assert store.get("feed").degraded_failures == 2

        # answers again but cannot be promoted while its CNAME is gone
        driver.unhealthy.discard("feed")
        resolver.clear("feed.example.test", RecordType.CNAME)
        monitor.tick()
        assert store.phase("feed") == ServicePhase.DEGRADED
        assert store.get("feed").degraded_failures == 0

        driver.unhealthy.add("feed")
        monitor.tick()
        monitor.tick()
        assert store.phase("feed") == ServicePhase.DEGRADED

        monitor.tick()
        assert store.phase("feed") == ServicePhase.FAILED

    def test_other_services_unaffected(self, orchestrator, monitor, spec, driver):
        orchestrator.apply(spec)
        driver.unhealthy.add("pds")

        for _ in range(3):
            monitor.tick()

        assert orchestrator.store.phase("pds") == ServicePhase.DEGRADED
        # probe degradation does not cascade to dependents
        assert orchestrator.store.phase("jetstream") == ServicePhase.HEALTHY

    def test_busy_service_is_skipped(self, orchestrator, monitor, spec, driver):
        orchestrator.apply(spec)
        store = orchestrator.store

        assert store.try_acquire("pds")
        try:
            monitor.tick()
        finally:
            store.release("pds")

        assert "pds" not in driver.calls_for("probe")
        assert "ozone" in driver.calls_for("probe")

    def test_nothing_applied(self, monitor, driver):
        monitor.tick()

        assert driver.calls == []


class TestRepairBackoff:

    def test_repair_attempts_back_off(self, orchestrator, monitor, spec, driver, clock):
        driver.fail_apply["ozone"] = "crash loop"
        orchestrator.apply(spec)

        def repairs():
            return driver.calls_for("apply").count("ozone") - 1

        monitor.tick()
        assert repairs() == 1

        monitor.tick()
        clock.advance(seconds=9)
        monitor.tick()
        assert repairs() == 1

        clock.advance(seconds=1)
        monitor.tick()
        assert repairs() == 2

        clock.advance(seconds=29)
        monitor.tick()
        assert repairs() == 2

        clock.advance(seconds=1)
        monitor.tick()
        assert repairs() == 3
        assert monitor.repair_backoff.attempts("ozone") == 3

        del driver.fail_apply["ozone"]
        clock.advance(seconds=90)
        monitor.tick()

        assert orchestrator.store.phase("ozone") == ServicePhase.HEALTHY
        assert monitor.repair_backoff.attempts("ozone") == 0

    def test_failed_service_recovers_without_repair(self, orchestrator, monitor, spec, driver):
        driver.fail_verify["ozone"] = "slow start"
        orchestrator.apply(spec)
        # the container came up after verify gave up
        del driver.fail_verify["ozone"]

        monitor.tick()

        assert orchestrator.store.phase("ozone") == ServicePhase.HEALTHY
        assert driver.calls_for("apply").count("ozone") == 1


class TestPreconditionReconfirmation:

    def test_missing_dns_repaired_once_record_appears(self, orchestrator, monitor, spec, driver, resolver, clock):
        resolver.clear("feed.example.test", RecordType.CNAME)
        report = orchestrator.apply(spec)
        assert report.outcome("feed").phase == ServicePhase.FAILED

        monitor.tick()
        assert orchestrator.store.phase("feed") == ServicePhase.FAILED
        assert "feed" not in driver.calls_for("apply")

        resolver.set("feed.example.test", RecordType.CNAME, ["pds.example.test."])
        clock.advance(seconds=10)
        monitor.tick()

        assert orchestrator.store.phase("feed") == ServicePhase.HEALTHY
        assert driver.calls_for("apply").count("feed") == 1

    def test_promotion_waits_for_dns(self, orchestrator, monitor, spec, driver, resolver):
        orchestrator.apply(spec)
        driver.unhealthy.add("feed")
        for _ in range(3):
            monitor.tick()
        assert orchestrator.store.phase("feed") == ServicePhase.DEGRADED

        driver.unhealthy.discard("feed")
        resolver.clear("feed.example.test", RecordType.CNAME)
        monitor.tick()

        state = orchestrator.store.get("feed")
        assert state.phase == ServicePhase.DEGRADED
        assert "DNS precondition failed for feed.example.test" in state.last_error

        resolver.set("feed.example.test", RecordType.CNAME, ["pds.example.test."])
        monitor.tick()

        assert orchestrator.store.phase("feed") == ServicePhase.HEALTHY


class TestCertificateChecks:

    def test_transparent_renewal(self, orchestrator, monitor, spec, cert_manager, events, clock):
        orchestrator.apply(spec)
        before = cert_manager.current("pds.example.test")

        clock.advance(days=81)
        monitor.tick()

        after = cert_manager.current("pds.example.test")
        assert after.serial != before.serial
        assert sorted(e.subject for e in events.of_type("certificate.renewed")) == [
            "feed.example.test", "pds.example.test",
        ]
        assert {s.phase for s in orchestrator.store.snapshots()} == {ServicePhase.HEALTHY}

    def test_checked_once_per_interval(self, orchestrator, monitor, spec, cert_manager, clock, monkeypatch):
        orchestrator.apply(spec)
        calls = []
        revalidate = cert_manager.revalidate
        monkeypatch.setattr(cert_manager, "revalidate", lambda domain: calls.append(domain) or revalidate(domain))

        monitor.tick()
        clock.advance(seconds=60)
        monitor.tick()
        assert sorted(calls) == ["feed.example.test", "pds.example.test"]

        clock.advance(seconds=3600)
        monitor.tick()
        assert len(calls) == 4

    def test_renewal_failure_degrades_bound_services(
        self, orchestrator, monitor, spec, cert_manager, events, clock, monkeypatch
    ):
        orchestrator.apply(spec)
        monkeypatch.setattr(SelfSignedIssuer, "issue", broken_issue)

        clock.advance(days=81)
        monitor.tick()

        store = orchestrator.store
        assert store.phase("pds") == ServicePhase.DEGRADED
        assert store.phase("jetstream") == ServicePhase.DEGRADED
        assert store.phase("feed") == ServicePhase.DEGRADED
        assert store.phase("ozone") == ServicePhase.HEALTHY
        assert "certificate renewal failed for pds.example.test" in store.get("pds").causes[0]

        failed = events.of_type("certificate.renewal_failed")
        assert sorted(e.subject for e in failed) == ["feed.example.test", "pds.example.test"]
        assert failed[0].metadata["retry_in_seconds"] == 10

        # still inside the retry delay: no promotion even though probes pass
        clock.advance(seconds=5)
        monitor.tick()
        assert store.phase("pds") == ServicePhase.DEGRADED

        monkeypatch.undo()
        clock.advance(seconds=5)
        monitor.tick()

        assert {s.phase for s in store.snapshots()} == {ServicePhase.HEALTHY}
        assert len(events.of_type("certificate.renewed")) == 2

    def test_renewal_kept_by_apply_is_retried_next_tick(
        self, orchestrator, monitor, spec, cert_manager, events, clock, monkeypatch
    ):
        monitor.cert_check_seconds = 365 * 86400
        orchestrator.apply(spec)
        monitor.tick()

        clock.advance(days=81)
        monkeypatch.setattr(SelfSignedIssuer, "issue", broken_issue)
        report = orchestrator.apply(spec)
        assert report.successful

        # not due for a year, but the failed renewal is picked up at once
        monitor.tick()

        store = orchestrator.store
        assert store.phase("pds") == ServicePhase.DEGRADED
        assert store.phase("feed") == ServicePhase.DEGRADED
        assert store.phase("ozone") == ServicePhase.HEALTHY

        monkeypatch.undo()
        clock.advance(seconds=10)
        monitor.tick()

        assert {s.phase for s in store.snapshots()} == {ServicePhase.HEALTHY}
        assert cert_manager.renewal_error("pds.example.test") is None


class TestMonitorThread:

    def test_start_and_stop(self, orchestrator, monitor, spec, driver):
        orchestrator.apply(spec)

        monitor.start()
        try:
            assert monitor.running
            deadline = time.monotonic() + 5
            while not driver.calls_for("probe") and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            monitor.stop(timeout=5)

        assert driver.calls_for("probe")
        assert not monitor.running
