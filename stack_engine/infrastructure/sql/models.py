#stack_engine/infrastructure/sql/models.py
"""SQLAlchemy ORM models for database tables."""

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text, Uuid

from stack_engine.infrastructure.sql.database import Base


class ApplyReportORM(Base):
    """
    Apply report table - one row per apply pass.

    Per-service outcomes are stored as a JSON list:
    [{"service_id", "phase", "causes", "cancelled"}, ...]
    """

    __tablename__ = "apply_reports"

    report_id = Column(Uuid, primary_key=True, nullable=False)
    generation = Column(Integer, nullable=False, index=True)

    started_at = Column(DateTime(timezone=True), nullable=False, index=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    cancelled = Column(Boolean, nullable=False, default=False)
    successful = Column(Boolean, nullable=False, default=False)

    outcomes = Column(JSON, nullable=False)
    removed = Column(JSON, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ApplyReportORM(report_id={self.report_id}, "
            f"generation={self.generation}, "
            f"successful={self.successful})>"
        )


class StackEventORM(Base):
    """Event log - every emitted StackEvent."""

    __tablename__ = "stack_events"

    event_id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(64), nullable=False)
    subject = Column(String(255), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    event_metadata = Column(JSON, nullable=False)
    cause = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_stack_events_subject_time", "subject", "timestamp"),
        Index("ix_stack_events_type", "event_type"),
    )

    def __repr__(self) -> str:
        return f"<StackEventORM({self.event_type} {self.subject} @ {self.timestamp})>"
