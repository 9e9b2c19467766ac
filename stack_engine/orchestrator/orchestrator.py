# stack_engine/orchestrator/orchestrator.py
"""
Orchestrator - applies a DeploymentSpec level by level.

Flow per apply:
1. Build the service graph (a cycle aborts before anything is touched)
2. Reconcile a fresh state collection against the previous generation
3. For each dependency level, provision its services concurrently:
   a. Certificate and DNS preconditions (a still-valid certificate whose
      renewal failed keeps being used)
   b. Every direct dependency HEALTHY
   c. Driver apply, then verify
4. Point the TLS proxy at every domain holding a certificate
5. Aggregate outcomes into an ApplyReport
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Mapping, Optional, Tuple

from stack_engine.certs.manager import CertificateManager
from stack_engine.core.deadline import call_with_deadline
from stack_engine.core.errors import ServiceNotFound
from stack_engine.core.events import EventEmitter, NullEventEmitter
from stack_engine.core.events_model import StackEvent
from stack_engine.core.models import (
    ApplyReport,
    Certificate,
    DeploymentSpec,
    HealthSignal,
    ServiceKind,
    ServiceOutcome,
    ServicePhase,
    ServiceSpec,
    utcnow,
)
from stack_engine.core.repository import ApplyReportRepository
from stack_engine.core.state_store import ServiceStateStore
from stack_engine.dns.validator import DnsValidator
from stack_engine.drivers.base import DriverContext, ServiceDriver
from stack_engine.drivers.proxy import TlsProxy
from stack_engine.graph.service_graph import ServiceGraph

logger = logging.getLogger(__name__)


UPSTREAM_UNHEALTHY = "upstream dependency unhealthy"
CANCELLED = "apply cancelled before this service was processed"


class Orchestrator:
    """
    Drives services from PENDING to HEALTHY.

    Only one apply runs at a time. Every mutation of a ServiceState
    happens with that service's ownership token held.
    """

    def __init__(
        self,
        drivers: Mapping[ServiceKind, ServiceDriver],
        cert_manager: CertificateManager,
        dns_validator: DnsValidator,
        emitter: Optional[EventEmitter] = None,
        report_repo: Optional[ApplyReportRepository] = None,
        max_parallel: int = 4,
        driver_timeout: Optional[float] = 300.0,
        probe_timeout: Optional[float] = 10.0,
        cert_timeout: Optional[float] = 120.0,
        proxy: Optional[TlsProxy] = None,
    ):
        self._drivers = dict(drivers)
        self._certs = cert_manager
        self._dns = dns_validator
        self._emitter = emitter or NullEventEmitter()
        self._reports = report_repo
        self.max_parallel = max_parallel
        self.driver_timeout = driver_timeout
        self.probe_timeout = probe_timeout
        self.cert_timeout = cert_timeout
        self._proxy = proxy

        self._apply_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._spec: Optional[DeploymentSpec] = None
        self._graph: Optional[ServiceGraph] = None
        self._store: Optional[ServiceStateStore] = None

    # -------------------------
    # CURRENT GENERATION
    # -------------------------

    @property
    def current_spec(self) -> Optional[DeploymentSpec]:
        with self._state_lock:
            return self._spec

    @property
    def graph(self) -> Optional[ServiceGraph]:
        with self._state_lock:
            return self._graph

    @property
    def store(self) -> Optional[ServiceStateStore]:
        with self._state_lock:
            return self._store

    def _generation(self) -> Tuple[DeploymentSpec, ServiceGraph, ServiceStateStore]:
        with self._state_lock:
            if self._spec is None:
                raise ServiceNotFound("Nothing has been applied yet")
            return self._spec, self._graph, self._store

    # -------------------------
    # APPLY
    # -------------------------

    def apply(
        self,
        spec: DeploymentSpec,
        cancel_event: Optional[threading.Event] = None,
    ) -> ApplyReport:
        """
        Converge the running stack to `spec`.

        Partial success is a normal return value; inspect
        `report.successful` and the per-service outcomes.

        Raises:
            CycleError: If the dependency graph has a cycle (nothing touched)
        """
        with self._apply_lock:
            graph = ServiceGraph.build(spec)
            self._certs.use_storage_root(spec.storage_root)

            with self._state_lock:
                previous_spec, previous_store = self._spec, self._store

            store = ServiceStateStore.for_spec(spec, self._emitter, previous=previous_store)
            report = ApplyReport(generation=store.generation)

            logger.info(
                f"[orchestrator] apply started: generation {store.generation}, "
                f"{len(spec.services)} service(s), {len(graph.levels())} level(s)"
            )
            self._emitter.emit([StackEvent.apply_started(report)])

            with self._state_lock:
                self._spec, self._graph, self._store = spec, graph, store

            for service_id in store.removed_ids():
                self._remove(previous_spec.service(service_id), store)
                report.removed.append(service_id)

            cancelled: List[str] = []
            levels = graph.levels()
            for index, level in enumerate(levels):
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = [sid for remaining in levels[index:] for sid in remaining]
                    logger.warning(
                        f"[orchestrator] apply cancelled before level {index}, "
                        f"{len(cancelled)} service(s) left PENDING"
                    )
                    break
                self._apply_level(spec, graph, store, level)

            for service_id in graph.topological_order():
                if service_id in cancelled:
                    store.note(service_id, CANCELLED)
                    report.outcomes.append(
                        ServiceOutcome(service_id, ServicePhase.PENDING, [CANCELLED], cancelled=True)
                    )
                    continue
                state = store.snapshot(service_id)
                report.outcomes.append(
                    ServiceOutcome(service_id, state.phase, state.cause_chain())
                )

            self._sync_proxy(spec)

            report.cancelled = bool(cancelled)
            report.finished_at = utcnow()

            if report.successful:
                logger.info(f"[orchestrator] ✅ apply finished: {report.summary()}")
            else:
                logger.warning(f"[orchestrator] apply finished: {report.summary()}")
                for outcome in report.failed():
                    logger.warning(
                        f"[orchestrator]   {outcome.service_id} {outcome.phase.value}: "
                        f"{' <- '.join(outcome.causes) or 'no cause recorded'}"
                    )

            self._emitter.emit([StackEvent.apply_finished(report)])
            if self._reports is not None:
                self._reports.save(report)
            return report

    def _apply_level(
        self,
        spec: DeploymentSpec,
        graph: ServiceGraph,
        store: ServiceStateStore,
        level: List[str],
    ) -> None:
        if len(level) == 1 or self.max_parallel == 1:
            for service_id in level:
                self._apply_service(spec, graph, store, service_id)
            return

        with ThreadPoolExecutor(
            max_workers=min(self.max_parallel, len(level)),
            thread_name_prefix="apply",
        ) as pool:
            futures = [
                pool.submit(self._apply_service, spec, graph, store, service_id)
                for service_id in level
            ]
            for future in futures:
                future.result()

    def _apply_service(
        self,
        spec: DeploymentSpec,
        graph: ServiceGraph,
        store: ServiceStateStore,
        service_id: str,
    ) -> None:
        with store.ownership(service_id):
            try:
                self._provision(spec.service(service_id), spec, graph, store)
            except Exception as e:
                logger.error(f"[orchestrator] {service_id}: unexpected error: {e}", exc_info=True)
                self._fail(store, service_id, f"unexpected error: {e}")

    # -------------------------
    # REPAIR
    # -------------------------

    def repair(self, service_id: str) -> List[ServiceOutcome]:
        """
        Re-run the provisioning path for `service_id` and for every
        dependent that is not HEALTHY, in topological order.

        Returns:
            Outcome of each service touched
        """
        spec, graph, store = self._generation()
        if service_id not in graph:
            raise ServiceNotFound(f"Service {service_id} is not part of the current deployment")

        targets = [service_id] + [
            sid for sid in graph.dependents_of(service_id)
            if store.phase(sid) != ServicePhase.HEALTHY
        ]
        logger.info(f"[orchestrator] repairing {service_id} (targets: {targets})")

        outcomes = []
        for target in targets:
            with store.ownership(target) as state:
                if state.phase in (ServicePhase.HEALTHY, ServicePhase.REMOVED):
                    outcomes.append(ServiceOutcome(target, state.phase, state.cause_chain()))
                    continue
                try:
                    self._provision(spec.service(target), spec, graph, store)
                except Exception as e:
                    logger.error(f"[orchestrator] {target}: unexpected error during repair: {e}", exc_info=True)
                    self._fail(store, target, f"unexpected error: {e}")
                snapshot = store.snapshot(target)
                outcomes.append(ServiceOutcome(target, snapshot.phase, snapshot.cause_chain()))

        if any(o.healthy for o in outcomes):
            self._sync_proxy(spec)
        return outcomes

    # -------------------------
    # PROBES & PRECONDITIONS (used by the Health Monitor)
    # -------------------------

    def probe(self, service_id: str) -> HealthSignal:
        """One bounded driver probe. Raises on timeout or driver error."""
        spec, _, _ = self._generation()
        service = spec.service(service_id)
        context = DriverContext(spec, self._current_certificate(service))
        return call_with_deadline(
            self._drivers[service.kind].probe,
            self.probe_timeout,
            service,
            context,
            description=f"{service_id} probe",
        )

    def reconfirm_preconditions(self, service_id: str) -> Optional[str]:
        """
        Revalidate the certificate and re-check DNS for the service's domain.

        Returns:
            None when both hold, otherwise the failure cause
        """
        spec, _, _ = self._generation()
        _, cause = self._preconditions(spec.service(service_id), spec, revalidate=True)
        return cause

    # -------------------------
    # INTERNALS (ownership token held)
    # -------------------------

    def _provision(
        self,
        service: ServiceSpec,
        spec: DeploymentSpec,
        graph: ServiceGraph,
        store: ServiceStateStore,
    ) -> None:
        service_id = service.service_id

        certificate, cause = self._preconditions(service, spec)
        if cause:
            self._fail(store, service_id, cause)
            return

        unhealthy = [
            dep for dep in graph.dependencies_of(service_id)
            if store.phase(dep) != ServicePhase.HEALTHY
        ]
        if unhealthy:
            self._fail(store, service_id, f"{UPSTREAM_UNHEALTHY}: {', '.join(unhealthy)}")
            for dep in unhealthy:
                upstream_error = store.snapshot(dep).last_error
                if upstream_error:
                    store.transition(service_id, ServicePhase.FAILED, cause=f"{dep}: {upstream_error}")
            return

        driver = self._drivers.get(service.kind)
        if driver is None:
            self._fail(store, service_id, f"no driver for kind {service.kind.value}")
            return
        context = DriverContext(spec, certificate)

        store.transition(service_id, ServicePhase.PROVISIONING)
        try:
            result = call_with_deadline(
                driver.apply, self.driver_timeout, service, context,
                description=f"{service_id} apply",
            )
        except Exception as e:
            self._fail(store, service_id, f"driver apply failed: {e}")
            return
        if not result.ok:
            self._fail(store, service_id, f"driver apply failed: {result.message}")
            return

        store.transition(service_id, ServicePhase.VERIFYING)
        try:
            result = call_with_deadline(
                driver.verify, self.driver_timeout, service, context,
                description=f"{service_id} verify",
            )
        except Exception as e:
            self._fail(store, service_id, f"driver verify failed: {e}")
            return
        if not result.ok:
            self._fail(store, service_id, f"driver verify failed: {result.message}")
            return

        store.transition(service_id, ServicePhase.HEALTHY)
        logger.info(f"[orchestrator] ✅ {service_id} HEALTHY")

        renewal_error = self._certs.renewal_error(service.domain) if service.domain else None
        if renewal_error:
            store.note(service_id, f"certificate renewal pending: {renewal_error}")

    def _preconditions(
        self,
        service: ServiceSpec,
        spec: DeploymentSpec,
        revalidate: bool = False,
    ) -> Tuple[Optional[Certificate], Optional[str]]:
        if not service.domain:
            return None, None

        domain = spec.domain(service.domain)
        hostname = domain.hostname

        try:
            if revalidate and hostname in self._certs.domains():
                certificate = call_with_deadline(
                    self._certs.revalidate, self.cert_timeout, hostname,
                    description=f"certificate {hostname}",
                )
            else:
                certificate = call_with_deadline(
                    self._certs.ensure, self.cert_timeout, hostname, domain.certificate_mode,
                    description=f"certificate {hostname}",
                )
        except Exception as e:
            certificate = None if revalidate else self._certs.usable(hostname)
            if certificate is None:
                return None, f"certificate precondition failed for {hostname}: {e}"
            # still valid: keep serving it, the monitor retries the renewal
            logger.warning(
                f"[orchestrator] certificate renewal for {hostname} failed, "
                f"continuing with serial={certificate.serial} until {certificate.not_after.isoformat()}: {e}"
            )
            self._emitter.emit([StackEvent.certificate_renewal_failed(hostname, str(e), 0)])

        try:
            result = self._dns.check(domain)
        except Exception as e:
            return certificate, f"DNS check for {hostname} failed: {e}"
        if not result.satisfied:
            return certificate, f"DNS precondition failed for {hostname}: {result.describe()}"

        return certificate, None

    def _fail(self, store: ServiceStateStore, service_id: str, cause: str) -> None:
        state = store.get(service_id)
        if state.phase == ServicePhase.HEALTHY:
            # HEALTHY never jumps straight to FAILED
            store.transition(service_id, ServicePhase.DEGRADED, cause=cause)
            return
        if state.phase == ServicePhase.FAILED and state.last_error == cause:
            return
        logger.warning(f"[orchestrator] ❌ {service_id} FAILED: {cause}")
        store.transition(service_id, ServicePhase.FAILED, cause=cause)

    def _remove(self, service: ServiceSpec, store: ServiceStateStore) -> None:
        service_id = service.service_id
        driver = self._drivers.get(service.kind)
        if driver is None:
            return
        with store.ownership(service_id):
            try:
                result = call_with_deadline(
                    driver.remove, self.driver_timeout, service,
                    description=f"{service_id} remove",
                )
            except Exception as e:
                logger.error(f"[orchestrator] {service_id}: remove failed: {e}")
                store.note(service_id, f"driver remove failed: {e}")
                return
            if result.ok:
                logger.info(f"[orchestrator] {service_id} removed: {result.message}")
            else:
                store.note(service_id, f"driver remove failed: {result.message}")

    def _current_certificate(self, service: ServiceSpec) -> Optional[Certificate]:
        if not service.domain:
            return None
        return self._certs.current(service.domain)

    def _sync_proxy(self, spec: DeploymentSpec) -> None:
        if self._proxy is None:
            return
        certificates = {}
        for domain in spec.domains:
            certificate = self._certs.current(domain.hostname)
            if certificate is not None:
                certificates[domain.hostname] = certificate
        try:
            result = call_with_deadline(
                self._proxy.sync, self.driver_timeout, spec, certificates,
                description="TLS proxy sync",
            )
        except Exception as e:
            logger.error(f"[orchestrator] TLS proxy sync failed: {e}")
            return
        logger.info(f"[orchestrator] TLS proxy: {result.message}")
