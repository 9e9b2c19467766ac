#stack_engine/infrastructure/sql/repository.py

"""SQL repository for apply reports and the event log, using SQLAlchemy."""

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from stack_engine.core.errors import StackError
from stack_engine.core.events import EventEmitter, _validate
from stack_engine.core.events_model import StackEvent
from stack_engine.core.models import ApplyReport, ServiceOutcome, ServicePhase
from stack_engine.core.repository import ApplyReportRepository
from stack_engine.infrastructure.sql.database import session_scope
from stack_engine.infrastructure.sql.models import ApplyReportORM, StackEventORM

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything here is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================
# Mapping Functions
# ============================================

def orm_to_domain(orm: ApplyReportORM) -> ApplyReport:
    """Convert ORM model to domain model."""
    return ApplyReport(
        report_id=orm.report_id,
        generation=orm.generation,
        started_at=_aware(orm.started_at),
        finished_at=_aware(orm.finished_at),
        cancelled=orm.cancelled,
        outcomes=[
            ServiceOutcome(
                service_id=item["service_id"],
                phase=ServicePhase(item["phase"]),
                causes=list(item.get("causes", [])),
                cancelled=item.get("cancelled", False),
            )
            for item in orm.outcomes
        ],
        removed=list(orm.removed or []),
    )


def domain_to_orm(report: ApplyReport) -> ApplyReportORM:
    """Convert domain model to ORM model."""
    return ApplyReportORM(
        report_id=report.report_id,
        generation=report.generation,
        started_at=report.started_at,
        finished_at=report.finished_at,
        cancelled=report.cancelled,
        successful=report.successful,
        outcomes=[
            {
                "service_id": o.service_id,
                "phase": o.phase.value,
                "causes": list(o.causes),
                "cancelled": o.cancelled,
            }
            for o in report.outcomes
        ],
        removed=list(report.removed),
    )


# ============================================
# Repository Implementation
# ============================================

class SqlApplyReportRepository(ApplyReportRepository):
    """SQLAlchemy implementation with an injected session factory."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def save(self, report: ApplyReport) -> None:
        try:
            with session_scope(self._session_factory) as session:
                session.merge(domain_to_orm(report))
        except SQLAlchemyError as e:
            raise StackError(f"Failed to save apply report {report.report_id}: {e}") from e
        logger.debug(f"[sql] saved report {report.report_id} (generation {report.generation})")

    def get(self, report_id: UUID) -> Optional[ApplyReport]:
        with session_scope(self._session_factory) as session:
            orm = session.get(ApplyReportORM, report_id)
            return orm_to_domain(orm) if orm is not None else None

    def latest(self) -> Optional[ApplyReport]:
        reports = self.list_recent(limit=1)
        return reports[0] if reports else None

    def list_recent(self, limit: int = 20) -> List[ApplyReport]:
        with session_scope(self._session_factory) as session:
            rows = (
                session.query(ApplyReportORM)
                .order_by(ApplyReportORM.started_at.desc(), ApplyReportORM.generation.desc())
                .limit(limit)
                .all()
            )
            return [orm_to_domain(orm) for orm in rows]


class SqlEventEmitter(EventEmitter):
    """Appends every event to the stack_events table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def emit(self, events: Iterable[StackEvent]) -> None:
        rows = []
        for event in events:
            _validate(event)
            rows.append(
                StackEventORM(
                    event_type=event.event_type,
                    subject=event.subject,
                    timestamp=event.timestamp,
                    event_metadata=event.metadata,
                    cause=event.metadata.get("cause") or event.metadata.get("error_message"),
                )
            )
        if not rows:
            return
        try:
            with session_scope(self._session_factory) as session:
                session.add_all(rows)
        except SQLAlchemyError as e:
            # The event log must never break a state transition
            logger.error(f"[sql] failed to record {len(rows)} event(s): {e}")

    def recent(self, subject: Optional[str] = None, limit: int = 50) -> List[StackEvent]:
        with session_scope(self._session_factory) as session:
            query = session.query(StackEventORM)
            if subject:
                query = query.filter(StackEventORM.subject == subject)
            rows = query.order_by(StackEventORM.event_id.desc()).limit(limit).all()
            return [
                StackEvent(
                    event_type=row.event_type,
                    subject=row.subject,
                    timestamp=_aware(row.timestamp),
                    metadata=dict(row.event_metadata),
                )
                for row in rows
            ]
