"""Event models for the stack engine."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from stack_engine.core.models import utcnow


@dataclass
class StackEvent:
    """Structured event emitted on every state change."""

    event_type: str
    subject: str
    timestamp: datetime
    metadata: Dict[str, Any]

    @staticmethod
    def service_transitioned(state, from_phase, to_phase, cause: Optional[str] = None):
        """Service phase transition event."""
        return StackEvent(
            event_type="service.transitioned",
            subject=state.service_id,
            timestamp=utcnow(),
            metadata={
                "kind": state.kind.value,
                "from_phase": from_phase.value,
                "to_phase": to_phase.value,
                "cause": cause,
                "consecutive_failures": state.consecutive_failures,
            }
        )

    @staticmethod
    def certificate_issued(certificate, renewed: bool):
        """Certificate issued (first time or renewal)."""
        return StackEvent(
            event_type="certificate.renewed" if renewed else "certificate.issued",
            subject=certificate.domain,
            timestamp=utcnow(),
            metadata={
                "mode": certificate.mode.value,
                "serial": certificate.serial,
                "not_before": certificate.not_before.isoformat(),
                "not_after": certificate.not_after.isoformat(),
            }
        )

    @staticmethod
    def certificate_renewal_failed(domain: str, reason: str, retry_in_seconds: float):
        """Certificate renewal failed, will be retried."""
        return StackEvent(
            event_type="certificate.renewal_failed",
            subject=domain,
            timestamp=utcnow(),
            metadata={
                "error_message": reason,
                "retry_in_seconds": retry_in_seconds,
            }
        )

    @staticmethod
    def apply_started(report):
        return StackEvent(
            event_type="apply.started",
            subject=str(report.report_id),
            timestamp=utcnow(),
            metadata={
                "generation": report.generation,
            }
        )

    @staticmethod
    def apply_finished(report):
        return StackEvent(
            event_type="apply.finished",
            subject=str(report.report_id),
            timestamp=utcnow(),
            metadata={
                "generation": report.generation,
                "successful": report.successful,
                "cancelled": report.cancelled,
                "summary": report.summary(),
            }
        )
