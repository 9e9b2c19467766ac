# stack_engine/core/state_store.py
"""
Service state collection for one DeploymentSpec generation.

The store is the only mutable shared state in the engine. It is passed by
reference into the Orchestrator and the Health Monitor. Whoever mutates a
service's state must hold that service's ownership token.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from stack_engine.core.errors import ServiceNotFound
from stack_engine.core.events import EventEmitter, NullEventEmitter
from stack_engine.core.events_model import StackEvent
from stack_engine.core.models import DeploymentSpec, ServicePhase, ServiceState, utcnow
from stack_engine.core.state_machine import ServiceStateMachine

logger = logging.getLogger(__name__)


class ServiceStateStore:
    """ServiceState records plus per-service ownership tokens."""

    def __init__(
        self,
        emitter: Optional[EventEmitter] = None,
        generation: int = 1,
        tokens: Optional[Dict[str, threading.Lock]] = None,
    ):
        self.generation = generation
        self._emitter = emitter or NullEventEmitter()
        self._states: Dict[str, ServiceState] = {}
        self._tokens: Dict[str, threading.Lock] = tokens if tokens is not None else {}
        self._lock = threading.RLock()

    # -------------------------
    # CONSTRUCTION
    # -------------------------

    @classmethod
    def for_spec(
        cls,
        spec: DeploymentSpec,
        emitter: Optional[EventEmitter] = None,
        previous: Optional["ServiceStateStore"] = None,
    ) -> "ServiceStateStore":
        """
        Build a fresh collection for `spec`, reconciled against `previous`.

        Services present in `previous` but absent from `spec` are carried
        over and moved to REMOVED. Ownership tokens are shared between
        generations so an in-flight probe on the old generation still
        excludes the new apply.
        """
        if previous is not None:
            store = cls(emitter, previous.generation + 1, previous._tokens)
        else:
            store = cls(emitter)

        for service in spec.services:
            store._states[service.service_id] = ServiceState(
                service_id=service.service_id,
                kind=service.kind,
            )
            store._tokens.setdefault(service.service_id, threading.Lock())

        if previous is not None:
            wanted = set(spec.service_ids())
            for old in previous.snapshots():
                if old.service_id in wanted or old.phase == ServicePhase.REMOVED:
                    continue
                carried = old.snapshot()
                store._states[carried.service_id] = carried
                store.transition(
                    carried.service_id,
                    ServicePhase.REMOVED,
                    cause="removed from deployment spec",
                )

        return store

    # -------------------------
    # OWNERSHIP
    # -------------------------

    def try_acquire(self, service_id: str) -> bool:
        """Take the ownership token without waiting."""
        return self._token(service_id).acquire(blocking=False)

    def release(self, service_id: str) -> None:
        self._token(service_id).release()

    @contextmanager
    def ownership(self, service_id: str) -> Iterator[ServiceState]:
        """Hold a service's token for the duration of the block."""
        token = self._token(service_id)
        token.acquire()
        try:
            yield self.get(service_id)
        finally:
            token.release()

    def _token(self, service_id: str) -> threading.Lock:
        with self._lock:
            if service_id not in self._states:
                raise ServiceNotFound(f"Service {service_id} not in generation {self.generation}")
            return self._tokens.setdefault(service_id, threading.Lock())

    # -------------------------
    # READ
    # -------------------------

    def get(self, service_id: str) -> ServiceState:
        with self._lock:
            state = self._states.get(service_id)
        if state is None:
            raise ServiceNotFound(f"Service {service_id} not in generation {self.generation}")
        return state

    def phase(self, service_id: str) -> ServicePhase:
        return self.get(service_id).phase

    def snapshot(self, service_id: str) -> ServiceState:
        with self._lock:
            return self.get(service_id).snapshot()

    def snapshots(self) -> List[ServiceState]:
        with self._lock:
            return [s.snapshot() for s in self._states.values()]

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._states.keys())

    def active_ids(self) -> List[str]:
        """Service ids that are not REMOVED."""
        with self._lock:
            return [
                sid for sid, s in self._states.items()
                if s.phase != ServicePhase.REMOVED
            ]

    def removed_ids(self) -> List[str]:
        with self._lock:
            return [
                sid for sid, s in self._states.items()
                if s.phase == ServicePhase.REMOVED
            ]

    # -------------------------
    # MUTATION (caller holds the ownership token)
    # -------------------------

    def transition(
        self,
        service_id: str,
        new_phase: ServicePhase,
        cause: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServicePhase:
        """Apply a phase transition and emit a transition event."""
        with self._lock:
            state = self.get(service_id)
            old_phase = ServiceStateMachine.transition(
                state, new_phase, cause=cause, now=now
            )
        if old_phase != new_phase:
            logger.debug(
                f"[state] {service_id}: {old_phase.value} -> {new_phase.value}"
                + (f" ({cause})" if cause else "")
            )
            self._emitter.emit([
                StackEvent.service_transitioned(state, old_phase, new_phase, cause)
            ])
        return old_phase

    def record_probe(self, service_id: str, healthy: bool, now: Optional[datetime] = None) -> ServiceState:
        """Update probe timestamp and failure counters."""
        now = now or utcnow()
        with self._lock:
            state = self.get(service_id)
            state.last_probe_at = now
            if healthy:
                state.consecutive_failures = 0
                state.degraded_failures = 0
            else:
                state.consecutive_failures += 1
                if state.phase == ServicePhase.DEGRADED:
                    state.degraded_failures += 1
            state.updated_at = now
            return state

    def note(self, service_id: str, message: str) -> None:
        """Record an error on a state without changing its phase."""
        with self._lock:
            state = self.get(service_id)
            state.last_error = message
            state.updated_at = utcnow()
