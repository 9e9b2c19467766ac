# stack_engine/infrastructure/memory/repository.py

import copy
from threading import Lock
from typing import Dict, List, Optional
from uuid import UUID

from stack_engine.core.models import ApplyReport
from stack_engine.core.repository import ApplyReportRepository


class InMemoryApplyReportRepository(ApplyReportRepository):
    def __init__(self):
        self._store: Dict[UUID, ApplyReport] = {}
        self._lock = Lock()

    def save(self, report: ApplyReport) -> None:
        with self._lock:
            self._store[report.report_id] = copy.deepcopy(report)

    def get(self, report_id: UUID) -> Optional[ApplyReport]:
        with self._lock:
            report = self._store.get(report_id)
            return copy.deepcopy(report) if report else None

    def latest(self) -> Optional[ApplyReport]:
        reports = self.list_recent(limit=1)
        return reports[0] if reports else None

    def list_recent(self, limit: int = 20) -> List[ApplyReport]:
        with self._lock:
            reports = sorted(
                self._store.values(),
                key=lambda r: (r.started_at, r.generation),
                reverse=True,
            )
            return [copy.deepcopy(r) for r in reports[:limit]]
