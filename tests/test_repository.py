"""Test apply report repositories and the SQL event log."""

import pytest
from uuid import uuid4
from datetime import datetime, timedelta, timezone

from stack_engine.core.events_model import StackEvent
from stack_engine.core.models import ApplyReport, ServiceOutcome, ServicePhase
from stack_engine.infrastructure.memory.repository import InMemoryApplyReportRepository
from stack_engine.infrastructure.sql.database import create_db_engine, get_session_factory, init_db
from stack_engine.infrastructure.sql.repository import SqlApplyReportRepository, SqlEventEmitter


T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def session_factory(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'stack.db'}", echo=False)
    init_db(engine)
    yield get_session_factory(engine)
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def repository(request, session_factory):
    if request.param == "memory":
        return InMemoryApplyReportRepository()
    return SqlApplyReportRepository(session_factory)


def make_report(generation=1, started_at=T0, **kwargs):
    return ApplyReport(
        generation=generation,
        started_at=started_at,
        finished_at=started_at + timedelta(seconds=42),
        outcomes=[
            ServiceOutcome("pds", ServicePhase.HEALTHY),
            ServiceOutcome(
                "feed",
                ServicePhase.FAILED,
                ["upstream dependency unhealthy: pds", "pds: driver apply failed: boom"],
            ),
        ],
        **kwargs,
    )


class TestApplyReportRepository:
    """Test repository operations against both backends."""

    # -------------------------
    # SAVE / GET TESTS
    # -------------------------

    def test_save_and_get(self, repository):
        """Test a saved report comes back unchanged."""
        report = make_report(removed=["ozone"])
        repository.save(report)

        retrieved = repository.get(report.report_id)

        assert retrieved is not None
        assert retrieved.report_id == report.report_id
        assert retrieved.generation == 1
        assert retrieved.started_at == T0
        assert retrieved.finished_at == T0 + timedelta(seconds=42)
        assert retrieved.removed == ["ozone"]
        assert retrieved.outcome("feed").causes == report.outcome("feed").causes
        assert retrieved.outcome("feed").phase == ServicePhase.FAILED
        assert not retrieved.successful

    def test_get_nonexistent_report(self, repository):
        """Test getting a report that doesn't exist."""
        assert repository.get(uuid4()) is None

    def test_save_twice_replaces(self, repository):
        report = make_report()
        repository.save(report)

        report.cancelled = True
        report.outcomes[1].cancelled = True
        repository.save(report)

        retrieved = repository.get(report.report_id)
        assert retrieved.cancelled
        assert retrieved.outcome("feed").cancelled
        assert len(repository.list_recent()) == 1

    def test_returned_copies_are_detached(self, repository):
        report = make_report()
        repository.save(report)

        repository.get(report.report_id).outcomes.clear()

        assert len(repository.get(report.report_id).outcomes) == 2

    # -------------------------
    # LIST TESTS
    # -------------------------

    def test_latest_empty(self, repository):
        assert repository.latest() is None
        assert repository.list_recent() == []

    def test_list_recent_newest_first(self, repository):
        reports = [make_report(generation=n, started_at=T0 + timedelta(minutes=n)) for n in range(1, 6)]
        for report in reports:
            repository.save(report)

        recent = repository.list_recent(limit=3)

        assert [r.generation for r in recent] == [5, 4, 3]
        assert repository.latest().report_id == reports[-1].report_id


class TestSqlEventEmitter:

    def test_events_are_recorded(self, session_factory):
        emitter = SqlEventEmitter(session_factory)
        emitter.emit([
            StackEvent("service.transitioned", "feed", T0, {"to_phase": "FAILED", "cause": "DNS precondition failed"}),
            StackEvent("certificate.renewal_failed", "pds.example.test", T0, {"error_message": "issuer offline"}),
            StackEvent("service.transitioned", "pds", T0, {"to_phase": "HEALTHY", "cause": None}),
        ])

        recent = emitter.recent()

        assert [e.subject for e in recent] == ["pds", "pds.example.test", "feed"]
        assert recent[-1].metadata["cause"] == "DNS precondition failed"
        assert recent[-1].timestamp == T0

    def test_filter_by_subject(self, session_factory):
        emitter = SqlEventEmitter(session_factory)
        emitter.emit([
            StackEvent("service.transitioned", "feed", T0, {"to_phase": "PROVISIONING"}),
            StackEvent("service.transitioned", "pds", T0, {"to_phase": "PROVISIONING"}),
        ])

        assert [e.subject for e in emitter.recent(subject="feed")] == ["feed"]

    def test_invalid_event_rejected(self, session_factory):
        emitter = SqlEventEmitter(session_factory)

        with pytest.raises(ValueError):
            emitter.emit([StackEvent("service.exploded", "pds", T0, {})])

        assert emitter.recent() == []
