#tests/test_integration.py

"""Integration test - full workflow with SQL persistence."""

import pytest
import yaml

from stack_engine.config import EngineSettings
from stack_engine.container import build_container
from stack_engine.core.models import RecordType, ServiceKind, ServicePhase


@pytest.fixture
def container(tmp_path, document, resolver, driver, clock):
    spec_file = tmp_path / "stack.yaml"
    spec_file.write_text(yaml.safe_dump(document))
    settings = EngineSettings(
        spec_path=str(spec_file),
        database_url=f"sqlite:///{tmp_path / 'engine.db'}",
        monitor_tick_seconds=0.05,
        driver_timeout_seconds=5,
        cert_timeout_seconds=10,
    )
    return build_container(
        settings,
        drivers={kind: driver for kind in ServiceKind},
        resolver=resolver,
        clock=clock,
    )


class TestIntegrationWorkflow:
    """Test the apply -> monitor -> repair workflow end to end."""

    def test_apply_persists_report_and_events(self, container):
        """Test: load spec file -> apply -> report and events in the database."""

        report = container.apply()

        assert report.successful
        stored = container.reports.latest()
        assert stored.report_id == report.report_id
        assert [o.phase for o in stored.outcomes] == [ServicePhase.HEALTHY] * 4

        history = container.events.recent(subject="feed")
        assert [e.metadata["to_phase"] for e in reversed(history)] == [
            "PROVISIONING", "VERIFYING", "HEALTHY",
        ]
        assert container.events.recent(subject="pds.example.test")[0].event_type == "certificate.issued"

    def test_missing_cname_recovers_after_record_appears(self, container, resolver, driver, clock):
        """Test: DNS not ready -> feed FAILED -> record appears -> monitor repairs feed."""

        # 1. Apply before the CNAME exists
        resolver.clear("feed.example.test", RecordType.CNAME)
        report = container.apply()

        assert not report.successful
        assert report.outcome("feed").phase == ServicePhase.FAILED
        assert "DNS precondition failed" in report.outcome("feed").causes[0]
        assert report.outcome("jetstream").healthy

        # 2. Monitor keeps it FAILED while the record is missing
        container.monitor.tick()
        assert container.orchestrator.store.phase("feed") == ServicePhase.FAILED

        # 3. Record appears, next repair attempt after the backoff delay succeeds
        resolver.set("feed.example.test", RecordType.CNAME, ["pds.example.test."])
        clock.advance(seconds=10)
        container.monitor.tick()

        assert container.orchestrator.store.phase("feed") == ServicePhase.HEALTHY
        assert driver.calls_for("apply").count("feed") == 1

        # The report of the apply itself is unchanged
        assert not container.reports.latest().successful

    def test_feed_missing_a_record_while_pds_healthy(self, container, document, resolver, driver, clock):
        """Test: feed domain requires an A record nobody published -> only feed FAILED -> record appears."""

        document["domains"][1]["records"] = [{"type": "A", "target": "192.0.2.20"}]

        # 1. Apply: the A record does not resolve
        report = container.apply(document)

        assert report.outcome("pds").phase == ServicePhase.HEALTHY
        feed = report.outcome("feed")
        assert feed.phase == ServicePhase.FAILED
        assert "missing A record feed.example.test -> 192.0.2.20 (no answer)" in feed.causes[0]
        assert report.summary() == "3/4 services healthy"

        stored = container.reports.latest().outcome("feed")
        assert stored.causes == feed.causes

        # 2. Record published, the monitor repairs feed after the backoff delay
        resolver.set("feed.example.test", RecordType.A, ["192.0.2.20"])
        clock.advance(seconds=10)
        container.monitor.tick()

        assert container.orchestrator.store.phase("feed") == ServicePhase.HEALTHY
        assert driver.calls_for("apply").count("feed") == 1

    def test_reapply_removes_dropped_service(self, container, document, driver):
        """Test: apply -> drop ozone from the document -> apply again."""
        container.apply()

        document["services"] = [s for s in document["services"] if s["id"] != "ozone"]
        report = container.apply(document)

        assert report.generation == 2
        assert report.removed == ["ozone"]
        assert container.reports.get(report.report_id).removed == ["ozone"]
        assert [r.generation for r in container.reports.list_recent()] == [2, 1]
        assert driver.calls_for("remove") == ["ozone"]
