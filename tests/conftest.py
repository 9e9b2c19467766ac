#tests/conftest.py

"""Pytest configuration and fixtures."""

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

import pytest

from stack_engine.certs.issuers import SelfSignedIssuer
from stack_engine.certs.manager import CertificateManager
from stack_engine.certs.storage import CertificateStore
from stack_engine.core.events import MemoryEventEmitter
from stack_engine.core.models import (
    CertificateMode,
    DriverResult,
    HealthSignal,
    HealthStatus,
    RecordType,
    ServiceKind,
    ServiceSpec,
)
from stack_engine.dns.resolver import StaticResolver
from stack_engine.dns.validator import DnsValidator
from stack_engine.drivers.base import DriverContext, ServiceDriver
from stack_engine.health_monitor.backoff import ExponentialBackoff
from stack_engine.health_monitor.monitor import HealthMonitor
from stack_engine.infrastructure.memory.repository import InMemoryApplyReportRepository
from stack_engine.orchestrator.orchestrator import Orchestrator
from stack_engine.spec.loader import SpecLoader


# ============================================
# Fakes
# ============================================

class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeDriver(ServiceDriver):
    """
    In-memory driver shared by all kinds.

    A service is "running" once apply succeeded; probes answer HEALTHY for
    running services unless listed in `unhealthy`.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.running: Set[str] = set()
        self.fail_apply: Dict[str, str] = {}
        self.fail_verify: Dict[str, str] = {}
        self.unhealthy: Set[str] = set()
        self.apply_delay = 0.0
        self._lock = threading.Lock()

    def _record(self, op: str, service_id: str) -> None:
        with self._lock:
            self.calls.append((op, service_id))

    def calls_for(self, op: str) -> List[str]:
        with self._lock:
            return [sid for name, sid in self.calls if name == op]

    def apply(self, service: ServiceSpec, context: DriverContext) -> DriverResult:
        self._record("apply", service.service_id)
        if self.apply_delay:
            time.sleep(self.apply_delay)
        if service.service_id in self.fail_apply:
            return DriverResult.failure(self.fail_apply[service.service_id])
        with self._lock:
            self.running.add(service.service_id)
        return DriverResult.success("applied")

    def verify(self, service: ServiceSpec, context: DriverContext) -> DriverResult:
        self._record("verify", service.service_id)
        if service.service_id in self.fail_verify:
            return DriverResult.failure(self.fail_verify[service.service_id])
        return DriverResult.success("verified")

    def probe(self, service: ServiceSpec, context: DriverContext) -> HealthSignal:
        self._record("probe", service.service_id)
        with self._lock:
            healthy = service.service_id in self.running and service.service_id not in self.unhealthy
        if healthy:
            return HealthSignal(HealthStatus.HEALTHY, latency_ms=1)
        return HealthSignal(HealthStatus.UNHEALTHY, detail="connection refused")

    def remove(self, service: ServiceSpec) -> DriverResult:
        self._record("remove", service.service_id)
        with self._lock:
            self.running.discard(service.service_id)
        return DriverResult.success("removed")


# ============================================
# Documents
# ============================================

def stack_document(storage_root: str) -> dict:
    """PDS + Jetstream sharing a hostname, a feed generator and Ozone."""
    return {
        "environment": "development",
        "storage_root": storage_root,
        "domains": [
            {
                "hostname": "pds.example.test",
                "certificate": "self-signed",
                "records": [{"type": "A", "target": "192.0.2.10"}],
            },
            {
                "hostname": "feed.example.test",
                "certificate": "self-signed",
                "records": [{"type": "CNAME", "target": "pds.example.test"}],
            },
        ],
        "services": [
            {"id": "pds", "kind": "pds", "domain": "pds.example.test"},
            {
                "id": "jetstream",
                "kind": "relay-consumer",
                "domain": "pds.example.test",
                "depends_on": ["pds"],
            },
            {
                "id": "feed",
                "kind": "feed-generator",
                "domain": "feed.example.test",
                "depends_on": ["pds"],
                "config": {"FEEDGEN_PUBLISHER_DID": "did:plc:publisher"},
            },
            {"id": "ozone", "kind": "moderation", "depends_on": ["pds"]},
        ],
    }


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def document(tmp_path):
    return stack_document(str(tmp_path / "data"))


@pytest.fixture
def spec(document):
    return SpecLoader().load(document)


@pytest.fixture
def resolver():
    """Every record of the sample stack resolves."""
    return StaticResolver({
        ("pds.example.test", RecordType.A): ["192.0.2.10"],
        ("feed.example.test", RecordType.CNAME): ["pds.example.test."],
    })


@pytest.fixture
def dns_validator(resolver):
    return DnsValidator(resolver, timeout=2.0)


@pytest.fixture
def events():
    return MemoryEventEmitter()


@pytest.fixture
def cert_manager(tmp_path, clock, events):
    return CertificateManager(
        store=CertificateStore(tmp_path / "data"),
        issuers={CertificateMode.SELF_SIGNED: SelfSignedIssuer(validity_days=90)},
        renewal_fraction=1 / 3,
        clock=clock,
        emitter=events,
    )


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def reports():
    return InMemoryApplyReportRepository()


@pytest.fixture
def orchestrator(driver, cert_manager, dns_validator, events, reports):
    return Orchestrator(
        drivers={kind: driver for kind in ServiceKind},
        cert_manager=cert_manager,
        dns_validator=dns_validator,
        emitter=events,
        report_repo=reports,
        max_parallel=4,
        driver_timeout=5.0,
        probe_timeout=2.0,
        cert_timeout=10.0,
    )


@pytest.fixture
def monitor(orchestrator, cert_manager, events, clock):
    return HealthMonitor(
        orchestrator=orchestrator,
        cert_manager=cert_manager,
        emitter=events,
        tick_seconds=0.05,
        degrade_threshold=3,
        fail_threshold=3,
        cert_check_seconds=3600,
        backoff=ExponentialBackoff(10, 3, 600),
        cert_timeout=10.0,
        clock=clock,
    )
