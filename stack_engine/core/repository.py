# stack_engine/core/repository.py

from abc import ABC, abstractmethod
from typing import List, Optional
from uuid import UUID

from stack_engine.core.models import ApplyReport


class ApplyReportRepository(ABC):
    """
    Persistence contract for apply reports.
    """

    @abstractmethod
    def save(self, report: ApplyReport) -> None:
        """
        Persist a finished report.
        Saving the same report_id twice replaces the earlier copy.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, report_id: UUID) -> Optional[ApplyReport]:
        """
        Fetch report by ID.
        Returns None if not found.
        """
        raise NotImplementedError

    @abstractmethod
    def latest(self) -> Optional[ApplyReport]:
        """
        Most recently started report, or None when nothing was applied yet.
        """
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, limit: int = 20) -> List[ApplyReport]:
        """
        Reports ordered newest first.
        """
        raise NotImplementedError
