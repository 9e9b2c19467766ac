#stack_engine/container.py

"""Dependency injection container - wires all services together."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Union
from uuid import UUID

from stack_engine.certs.acme_client import HttpAcmeClient
from stack_engine.certs.issuers import AcmeIssuer, CertificateIssuer, SelfSignedIssuer
from stack_engine.certs.manager import CertificateManager
from stack_engine.certs.storage import CertificateStore
from stack_engine.config import EngineSettings, settings as default_settings
from stack_engine.core.errors import ReportNotFound
from stack_engine.core.events import EventEmitter, LoggingEventEmitter, MultiEventEmitter
from stack_engine.core.models import ApplyReport, CertificateMode, DeploymentSpec, ServiceKind, utcnow
from stack_engine.core.repository import ApplyReportRepository
from stack_engine.dns.resolver import DigResolver, Resolver
from stack_engine.dns.validator import DnsValidator
from stack_engine.drivers.base import ServiceDriver
from stack_engine.drivers.proxy import ProxyReloadEmitter, TlsProxy
from stack_engine.drivers.registry import build_drivers
from stack_engine.drivers.runtime import ContainerRuntime
from stack_engine.health_monitor.backoff import ExponentialBackoff
from stack_engine.health_monitor.monitor import HealthMonitor
from stack_engine.infrastructure.sql.database import create_db_engine, get_session_factory, init_db
from stack_engine.infrastructure.sql.repository import SqlApplyReportRepository, SqlEventEmitter
from stack_engine.orchestrator.orchestrator import Orchestrator
from stack_engine.spec.loader import SpecLoader

logger = logging.getLogger(__name__)


@dataclass
class StackContainer:
    """Everything a runner or the API needs, built once per process."""

    settings: EngineSettings
    emitter: EventEmitter
    reports: ApplyReportRepository
    cert_manager: CertificateManager
    dns_validator: DnsValidator
    orchestrator: Orchestrator
    monitor: HealthMonitor
    loader: SpecLoader = field(default_factory=SpecLoader)
    events: Optional[SqlEventEmitter] = None
    proxy: Optional[TlsProxy] = None

    def load_spec(self, source: Union[str, Path, Dict, None] = None) -> DeploymentSpec:
        """Load a spec from a path, a parsed document, or the configured spec_path."""
        if isinstance(source, dict):
            return self.loader.load(source, base_dir=Path.cwd())
        return self.loader.load_file(source or self.settings.spec_path)

    def apply(
        self,
        source: Union[str, Path, Dict, None] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ApplyReport:
        spec = self.load_spec(source)
        return self.orchestrator.apply(spec, cancel_event=cancel_event)

    def report(self, report_id: UUID) -> ApplyReport:
        report = self.reports.get(report_id)
        if report is None:
            raise ReportNotFound(f"Report {report_id} not found")
        return report


def build_issuers(settings: EngineSettings) -> Dict[CertificateMode, CertificateIssuer]:
    issuers: Dict[CertificateMode, CertificateIssuer] = {
        CertificateMode.SELF_SIGNED: SelfSignedIssuer(validity_days=settings.self_signed_validity_days),
    }
    if settings.acme_endpoint:
        client = HttpAcmeClient(
            settings.acme_endpoint,
            settings.acme_contact_email,
            timeout=settings.cert_timeout_seconds,
        )
        issuers[CertificateMode.ACME] = AcmeIssuer(client)
    return issuers


def build_container(
    settings: Optional[EngineSettings] = None,
    drivers: Optional[Mapping[ServiceKind, ServiceDriver]] = None,
    resolver: Optional[Resolver] = None,
    issuers: Optional[Mapping[CertificateMode, CertificateIssuer]] = None,
    reports: Optional[ApplyReportRepository] = None,
    emitter: Optional[EventEmitter] = None,
    clock: Callable[[], datetime] = utcnow,
    proxy: Optional[TlsProxy] = None,
) -> StackContainer:
    """
    Wire the engine from settings.

    Every collaborator can be replaced (tests pass fake drivers, a static
    resolver, an in-memory repository and a fake clock). The TLS proxy is
    only built for the real container runtime unless one is passed in.
    """
    settings = settings or default_settings

    # ============================================
    # PERSISTENCE & EVENTS
    # ============================================

    sql_events = None
    if reports is None or emitter is None:
        engine = create_db_engine(settings.database_url, echo=settings.echo_sql)
        init_db(engine)
        session_factory = get_session_factory(engine)
        if reports is None:
            reports = SqlApplyReportRepository(session_factory)
        if emitter is None:
            sql_events = SqlEventEmitter(session_factory)
            emitter = MultiEventEmitter([LoggingEventEmitter(), sql_events])

    # ============================================
    # DRIVERS & TLS PROXY
    # ============================================

    if drivers is None:
        runtime = ContainerRuntime(network=settings.docker_network)
        drivers = build_drivers(runtime, probe_timeout=settings.probe_timeout_seconds)
        if proxy is None and settings.proxy_enabled:
            proxy = TlsProxy(
                runtime,
                drivers,
                image=settings.proxy_image,
                https_port=settings.proxy_https_port,
            )

    cert_emitter = emitter
    if proxy is not None:
        cert_emitter = MultiEventEmitter([emitter, ProxyReloadEmitter(proxy)])

    # ============================================
    # PRECONDITIONS
    # ============================================

    cert_manager = CertificateManager(
        # re-pointed at the deployment storage root on every apply
        store=CertificateStore(Path(".")),
        issuers=issuers if issuers is not None else build_issuers(settings),
        renewal_fraction=settings.renewal_fraction,
        clock=clock,
        emitter=cert_emitter,
    )

    dns_validator = DnsValidator(
        resolver or DigResolver(settings.dig_binary, timeout=settings.dns_timeout_seconds),
        timeout=settings.dns_timeout_seconds,
    )

    # ============================================
    # ENGINE
    # ============================================

    orchestrator = Orchestrator(
        drivers=drivers,
        cert_manager=cert_manager,
        dns_validator=dns_validator,
        emitter=emitter,
        report_repo=reports,
        max_parallel=settings.max_parallel,
        driver_timeout=settings.driver_timeout_seconds,
        probe_timeout=settings.probe_timeout_seconds,
        cert_timeout=settings.cert_timeout_seconds,
        proxy=proxy,
    )

    monitor = HealthMonitor(
        orchestrator=orchestrator,
        cert_manager=cert_manager,
        emitter=emitter,
        tick_seconds=settings.monitor_tick_seconds,
        degrade_threshold=settings.degrade_threshold,
        fail_threshold=settings.fail_threshold,
        cert_check_seconds=settings.cert_check_seconds,
        backoff=ExponentialBackoff(
            settings.backoff_base_seconds,
            settings.backoff_multiplier,
            settings.backoff_cap_seconds,
        ),
        cert_timeout=settings.cert_timeout_seconds,
        clock=clock,
    )

    return StackContainer(
        settings=settings,
        emitter=emitter,
        reports=reports,
        cert_manager=cert_manager,
        dns_validator=dns_validator,
        orchestrator=orchestrator,
        monitor=monitor,
        events=sql_events,
        proxy=proxy,
    )
