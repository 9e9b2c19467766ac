"""Core domain models for the deployment & reconciliation engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple
from uuid import UUID, uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# ENUMS
# ============================================

class ServiceKind(Enum):
    """The fixed set of deployable service kinds."""
    PDS = "pds"
    RELAY_CONSUMER = "relay-consumer"
    MODERATION = "moderation"
    FEED_GENERATOR = "feed-generator"


class ServicePhase(Enum):
    """Lifecycle phase of a running service instance."""
    PENDING = "PENDING"
    PROVISIONING = "PROVISIONING"
    VERIFYING = "VERIFYING"
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    FAILED = "FAILED"
    REMOVED = "REMOVED"


class EnvironmentTier(Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class CertificateMode(Enum):
    SELF_SIGNED = "self-signed"
    ACME = "acme"


class RecordType(Enum):
    A = "A"
    AAAA = "AAAA"
    CNAME = "CNAME"


class HealthStatus(Enum):
    """Result of a single probe."""
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"


# ============================================
# DESIRED STATE (immutable)
# ============================================

@dataclass(frozen=True)
class DnsRecord:
    """A DNS record a domain must resolve to."""
    record_type: RecordType
    target: str

    def describe(self, hostname: str) -> str:
        return f"{self.record_type.value} record {hostname} -> {self.target}"


@dataclass(frozen=True)
class DomainSpec:
    """Hostname, required DNS records and certificate mode."""
    hostname: str
    records: Tuple[DnsRecord, ...] = ()
    certificate_mode: CertificateMode = CertificateMode.SELF_SIGNED


@dataclass(frozen=True)
class ServiceSpec:
    """One deployable unit."""
    service_id: str
    kind: ServiceKind
    depends_on: Tuple[str, ...] = ()
    domain: Optional[str] = None
    config: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    replicas: int = 1


@dataclass(frozen=True)
class DeploymentSpec:
    """Validated desired state. Never mutated after load."""
    services: Tuple[ServiceSpec, ...]
    domains: Tuple[DomainSpec, ...]
    storage_root: Path
    environment: EnvironmentTier = EnvironmentTier.DEVELOPMENT

    def service(self, service_id: str) -> ServiceSpec:
        for service in self.services:
            if service.service_id == service_id:
                return service
        raise KeyError(service_id)

    def domain(self, hostname: str) -> DomainSpec:
        for domain in self.domains:
            if domain.hostname == hostname:
                return domain
        raise KeyError(hostname)

    def service_ids(self) -> List[str]:
        return [s.service_id for s in self.services]

    def services_for_domain(self, hostname: str) -> List[ServiceSpec]:
        return [s for s in self.services if s.domain == hostname]


# ============================================
# CERTIFICATES
# ============================================

@dataclass(frozen=True)
class Certificate:
    """Issued TLS material for one domain. Superseded, never mutated."""
    domain: str
    mode: CertificateMode
    not_before: datetime
    not_after: datetime
    cert_path: Path
    key_path: Path
    serial: str

    @property
    def lifetime_seconds(self) -> float:
        return (self.not_after - self.not_before).total_seconds()

    def remaining_seconds(self, now: datetime) -> float:
        return (self.not_after - now).total_seconds()

    def is_expired(self, now: datetime) -> bool:
        return now >= self.not_after

    def needs_renewal(self, now: datetime, renewal_fraction: float) -> bool:
        """True once less than `renewal_fraction` of the window remains."""
        if self.is_expired(now) or now < self.not_before:
            return True
        return self.remaining_seconds(now) < self.lifetime_seconds * renewal_fraction


# ============================================
# DNS
# ============================================

@dataclass(frozen=True)
class MissingRecord:
    """A required record that did not resolve to its expected target."""
    hostname: str
    record: DnsRecord
    found: Tuple[str, ...] = ()
    error: Optional[str] = None

    def describe(self) -> str:
        base = f"missing {self.record.describe(self.hostname)}"
        if self.error:
            return f"{base} (lookup error: {self.error})"
        if self.found:
            return f"{base} (resolved to: {', '.join(self.found)})"
        return f"{base} (no answer)"


@dataclass(frozen=True)
class ValidationResult:
    hostname: str
    satisfied: bool
    missing: Tuple[MissingRecord, ...] = ()

    def describe(self) -> str:
        if self.satisfied:
            return f"DNS for {self.hostname} satisfied"
        return "; ".join(m.describe() for m in self.missing)


# ============================================
# DRIVER RESULTS
# ============================================

@dataclass
class DriverResult:
    """Outcome of a driver Apply or Verify call."""
    ok: bool
    message: str = ""
    details: Dict[str, object] = field(default_factory=dict)

    @classmethod
    def success(cls, message: str = "", **details) -> "DriverResult":
        return cls(ok=True, message=message, details=details)

    @classmethod
    def failure(cls, message: str, **details) -> "DriverResult":
        return cls(ok=False, message=message, details=details)


@dataclass
class HealthSignal:
    """Outcome of a driver Probe call."""
    status: HealthStatus
    latency_ms: int = 0
    detail: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


# ============================================
# RUNTIME STATE (mutable, see state_store)
# ============================================

@dataclass
class ServiceState:
    """Runtime record for one service instance."""

    service_id: str
    kind: ServiceKind
    phase: ServicePhase = ServicePhase.PENDING

    last_probe_at: Optional[datetime] = None
    consecutive_failures: int = 0
    degraded_failures: int = 0
    last_error: Optional[str] = None
    causes: List[str] = field(default_factory=list)

    updated_at: datetime = field(default_factory=utcnow)

    def cause_chain(self) -> List[str]:
        return list(self.causes)

    def snapshot(self) -> "ServiceState":
        return ServiceState(
            service_id=self.service_id,
            kind=self.kind,
            phase=self.phase,
            last_probe_at=self.last_probe_at,
            consecutive_failures=self.consecutive_failures,
            degraded_failures=self.degraded_failures,
            last_error=self.last_error,
            causes=list(self.causes),
            updated_at=self.updated_at,
        )


# ============================================
# APPLY REPORT
# ============================================

@dataclass
class ServiceOutcome:
    """Terminal state of one service after an apply pass."""
    service_id: str
    phase: ServicePhase
    causes: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def healthy(self) -> bool:
        return self.phase == ServicePhase.HEALTHY


@dataclass
class ApplyReport:
    """Aggregated per-service outcome of one apply pass."""

    report_id: UUID = field(default_factory=uuid4)
    generation: int = 0
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    outcomes: List[ServiceOutcome] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    @property
    def successful(self) -> bool:
        return all(o.healthy for o in self.outcomes)

    def outcome(self, service_id: str) -> ServiceOutcome:
        for outcome in self.outcomes:
            if outcome.service_id == service_id:
                return outcome
        raise KeyError(service_id)

    def failed(self) -> List[ServiceOutcome]:
        return [o for o in self.outcomes if not o.healthy]

    def summary(self) -> str:
        healthy = sum(1 for o in self.outcomes if o.healthy)
        return f"{healthy}/{len(self.outcomes)} services healthy"
