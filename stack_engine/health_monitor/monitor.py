# stack_engine/health_monitor/monitor.py
"""
Health Monitor - probes running services and triggers repair.

Runs as a background thread and ticks every `tick_seconds`.
- HEALTHY -> DEGRADED after `degrade_threshold` consecutive probe failures
- DEGRADED -> FAILED after `fail_threshold` further failures, then repair
- FAILED services are repaired with exponential backoff (reset on HEALTHY)
- DEGRADED/FAILED -> HEALTHY only once certificate and DNS are reconfirmed
- Certificates are revalidated every `cert_check_seconds`, and on the next
  tick when an apply kept serving a certificate whose renewal failed
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from stack_engine.certs.manager import CertificateManager
from stack_engine.core.deadline import call_with_deadline
from stack_engine.core.events import EventEmitter, NullEventEmitter
from stack_engine.core.events_model import StackEvent
from stack_engine.core.models import DeploymentSpec, ServicePhase, utcnow
from stack_engine.core.state_store import ServiceStateStore
from stack_engine.health_monitor.backoff import BackoffTracker, ExponentialBackoff
from stack_engine.orchestrator.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


PROBED_PHASES = (ServicePhase.HEALTHY, ServicePhase.DEGRADED, ServicePhase.FAILED)


class HealthMonitor:
    """
    Control loop over the orchestrator's current generation.

    Probes are single-flight per service: a service whose ownership token
    is held (apply or repair in progress) is skipped for that tick.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        cert_manager: CertificateManager,
        emitter: Optional[EventEmitter] = None,
        tick_seconds: float = 10.0,
        degrade_threshold: int = 3,
        fail_threshold: int = 3,
        cert_check_seconds: float = 3600.0,
        backoff: Optional[ExponentialBackoff] = None,
        cert_timeout: Optional[float] = 120.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        if degrade_threshold < 1 or fail_threshold < 1:
            raise ValueError("thresholds must be at least 1")

        self._orchestrator = orchestrator
        self._certs = cert_manager
        self._emitter = emitter or NullEventEmitter()
        self.tick_seconds = tick_seconds
        self.degrade_threshold = degrade_threshold
        self.fail_threshold = fail_threshold
        self.cert_check_seconds = cert_check_seconds
        self.cert_timeout = cert_timeout
        self._clock = clock

        backoff = backoff or ExponentialBackoff()
        self.repair_backoff = BackoffTracker(backoff)
        self.cert_backoff = BackoffTracker(backoff)
        self._cert_due: Dict[str, datetime] = {}

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -------------------------
    # LIFECYCLE
    # -------------------------

    def start(self) -> None:
        """Start the monitor loop on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="health-monitor", daemon=True)
        self._thread.start()
        logger.info(
            f"[monitor] started (tick {self.tick_seconds}s, degrade after {self.degrade_threshold}, "
            f"fail after {self.fail_threshold} more, certificates every {self.cert_check_seconds}s)"
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("[monitor] stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"[monitor] error in tick: {e}", exc_info=True)
            self._stop.wait(self.tick_seconds)

    # -------------------------
    # CYCLE
    # -------------------------

    def tick(self, now: Optional[datetime] = None) -> None:
        """Run one monitoring cycle synchronously."""
        now = now or self._clock()
        spec = self._orchestrator.current_spec
        store = self._orchestrator.store
        if spec is None or store is None:
            logger.debug("[monitor] nothing applied yet")
            return

        self._check_certificates(spec, store, now)

        for service_id in store.active_ids():
            try:
                self._check_service(spec, store, service_id, now)
            except Exception as e:
                logger.error(f"[monitor] error checking {service_id}: {e}", exc_info=True)

    # -------------------------
    # SERVICES
    # -------------------------

    def _check_service(
        self,
        spec: DeploymentSpec,
        store: ServiceStateStore,
        service_id: str,
        now: datetime,
    ) -> None:
        if not store.try_acquire(service_id):
            logger.debug(f"[monitor] {service_id} busy, skipping this tick")
            return

        repair = False
        try:
            state = store.get(service_id)
            phase = state.phase
            if phase not in PROBED_PHASES:
                return

            try:
                signal = self._orchestrator.probe(service_id)
                healthy = signal.healthy
                detail = signal.detail or signal.status.value
            except Exception as e:
                healthy = False
                detail = f"probe failed: {e}"

            state = store.record_probe(service_id, healthy, now)

            if phase == ServicePhase.HEALTHY:
                if not healthy:
                    logger.warning(
                        f"[monitor] ❌ {service_id} probe failed "
                        f"({state.consecutive_failures}/{self.degrade_threshold}): {detail}"
                    )
                    if state.consecutive_failures >= self.degrade_threshold:
                        store.transition(
                            service_id,
                            ServicePhase.DEGRADED,
                            cause=f"{state.consecutive_failures} consecutive probe failures: {detail}",
                            now=now,
                        )

            elif phase == ServicePhase.DEGRADED:
                if healthy:
                    self._promote(spec, store, service_id, now)
                elif state.degraded_failures >= self.fail_threshold:
                    store.transition(
                        service_id,
                        ServicePhase.FAILED,
                        cause=f"{state.degraded_failures} further probe failures while degraded: {detail}",
                        now=now,
                    )
                    repair = self.repair_backoff.ready(service_id, now)

            elif phase == ServicePhase.FAILED:
                if not (healthy and self._promote(spec, store, service_id, now)):
                    repair = self.repair_backoff.ready(service_id, now)
        finally:
            store.release(service_id)

        if repair:
            self._repair(service_id, now)

    def _promote(
        self,
        spec: DeploymentSpec,
        store: ServiceStateStore,
        service_id: str,
        now: datetime,
    ) -> bool:
        """Probe succeeded: go HEALTHY once certificate and DNS hold again."""
        domain = spec.service(service_id).domain
        if domain and not self.cert_backoff.ready(domain, now):
            store.note(service_id, f"certificate for {domain} still failing, waiting to retry")
            return False

        cause = self._orchestrator.reconfirm_preconditions(service_id)
        if cause is not None:
            logger.info(f"[monitor] {service_id} answers probes but {cause}")
            store.note(service_id, cause)
            return False

        if domain:
            self.cert_backoff.reset(domain)
        store.transition(service_id, ServicePhase.HEALTHY, now=now)
        self.repair_backoff.reset(service_id)
        logger.info(f"[monitor] ✅ {service_id} recovered")
        return True

    def _repair(self, service_id: str, now: datetime) -> None:
        delay = self.repair_backoff.record_attempt(service_id, now)
        attempt = self.repair_backoff.attempts(service_id)
        logger.info(f"[monitor] repairing {service_id} (attempt {attempt}, next in {delay:.0f}s if it fails)")

        try:
            outcomes = self._orchestrator.repair(service_id)
        except Exception as e:
            logger.error(f"[monitor] repair of {service_id} failed: {e}", exc_info=True)
            return

        for outcome in outcomes:
            if outcome.healthy:
                self.repair_backoff.reset(outcome.service_id)

    # -------------------------
    # CERTIFICATES
    # -------------------------

    def _check_certificates(self, spec: DeploymentSpec, store: ServiceStateStore, now: datetime) -> None:
        tracked = self._certs.domains()

        for domain in spec.domains:
            hostname = domain.hostname
            if hostname not in tracked:
                continue

            if self.cert_backoff.attempts(hostname):
                due = self.cert_backoff.ready(hostname, now)
            elif self._certs.renewal_error(hostname) is not None:
                # an apply kept serving a certificate whose renewal failed
                due = True
            else:
                due = self._cert_due.get(hostname, now) <= now
            if not due:
                continue

            try:
                call_with_deadline(
                    self._certs.revalidate, self.cert_timeout, hostname,
                    description=f"certificate {hostname}",
                )
            except Exception as e:
                delay = self.cert_backoff.record_attempt(hostname, now)
                logger.warning(f"[monitor] certificate renewal for {hostname} failed, retry in {delay:.0f}s: {e}")
                self._emitter.emit([StackEvent.certificate_renewal_failed(hostname, str(e), delay)])
                self._degrade_bound(spec, store, hostname, f"certificate renewal failed for {hostname}: {e}", now)
                continue

            self.cert_backoff.reset(hostname)
            self._cert_due[hostname] = now + timedelta(seconds=self.cert_check_seconds)

    def _degrade_bound(
        self,
        spec: DeploymentSpec,
        store: ServiceStateStore,
        hostname: str,
        cause: str,
        now: datetime,
    ) -> None:
        for service in spec.services_for_domain(hostname):
            service_id = service.service_id
            if not store.try_acquire(service_id):
                continue
            try:
                if store.phase(service_id) == ServicePhase.HEALTHY:
                    store.transition(service_id, ServicePhase.DEGRADED, cause=cause, now=now)
            finally:
                store.release(service_id)
