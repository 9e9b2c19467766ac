from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from stack_engine.core.models import ApplyReport, Certificate, ServiceState


class ApplyRequest(BaseModel):
    """Either a path to a spec file or an inline document; neither means the configured spec_path."""
    spec_path: Optional[str] = None
    document: Optional[Dict[str, Any]] = None


class ServiceOutcomeResponse(BaseModel):
    service_id: str
    phase: str
    causes: List[str]
    cancelled: bool


class ApplyReportResponse(BaseModel):
    report_id: UUID
    generation: int
    started_at: datetime
    finished_at: Optional[datetime]
    cancelled: bool
    successful: bool
    summary: str
    outcomes: List[ServiceOutcomeResponse]
    removed: List[str] = Field(default_factory=list)

    @classmethod
    def from_report(cls, report: ApplyReport) -> "ApplyReportResponse":
        return cls(
            report_id=report.report_id,
            generation=report.generation,
            started_at=report.started_at,
            finished_at=report.finished_at,
            cancelled=report.cancelled,
            successful=report.successful,
            summary=report.summary(),
            outcomes=[
                ServiceOutcomeResponse(
                    service_id=o.service_id,
                    phase=o.phase.value,
                    causes=list(o.causes),
                    cancelled=o.cancelled,
                )
                for o in report.outcomes
            ],
            removed=list(report.removed),
        )


class ServiceStateResponse(BaseModel):
    service_id: str
    kind: str
    phase: str
    last_probe_at: Optional[datetime]
    consecutive_failures: int
    degraded_failures: int
    last_error: Optional[str]
    causes: List[str]
    updated_at: datetime

    @classmethod
    def from_state(cls, state: ServiceState) -> "ServiceStateResponse":
        return cls(
            service_id=state.service_id,
            kind=state.kind.value,
            phase=state.phase.value,
            last_probe_at=state.last_probe_at,
            consecutive_failures=state.consecutive_failures,
            degraded_failures=state.degraded_failures,
            last_error=state.last_error,
            causes=state.cause_chain(),
            updated_at=state.updated_at,
        )


class CertificateResponse(BaseModel):
    domain: str
    mode: str
    serial: str
    not_before: datetime
    not_after: datetime
    cert_path: str

    @classmethod
    def from_certificate(cls, certificate: Certificate) -> "CertificateResponse":
        return cls(
            domain=certificate.domain,
            mode=certificate.mode.value,
            serial=certificate.serial,
            not_before=certificate.not_before,
            not_after=certificate.not_after,
            cert_path=str(certificate.cert_path),
        )
