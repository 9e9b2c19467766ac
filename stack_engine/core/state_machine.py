#stack_engine/core/state_machine.py

from datetime import datetime
from typing import Optional

from stack_engine.core.errors import InvalidStateTransition
from stack_engine.core.models import ServicePhase, ServiceState, utcnow


ALLOWED_TRANSITIONS = {
    ServicePhase.PENDING: {
        ServicePhase.PROVISIONING,
        ServicePhase.FAILED,
        ServicePhase.REMOVED,
    },
    ServicePhase.PROVISIONING: {
        ServicePhase.VERIFYING,
        ServicePhase.FAILED,
        ServicePhase.REMOVED,
    },
    ServicePhase.VERIFYING: {
        ServicePhase.HEALTHY,
        ServicePhase.FAILED,
        ServicePhase.REMOVED,
    },
    ServicePhase.HEALTHY: {
        ServicePhase.DEGRADED,
        ServicePhase.REMOVED,
    },
    ServicePhase.DEGRADED: {
        ServicePhase.HEALTHY,
        ServicePhase.FAILED,
        ServicePhase.PROVISIONING,
        ServicePhase.REMOVED,
    },
    ServicePhase.FAILED: {
        ServicePhase.HEALTHY,
        ServicePhase.PROVISIONING,
        ServicePhase.REMOVED,
    },
    ServicePhase.REMOVED: set(),
}


class ServiceStateMachine:
    @staticmethod
    def transition(
        state: ServiceState,
        new_phase: ServicePhase,
        *,
        cause: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServicePhase:
        """
        Move `state` to `new_phase` and return the phase it left.

        Re-entering the current phase is allowed and only records the cause.
        """
        now = now or utcnow()
        current = state.phase

        if current != new_phase:
            allowed = ALLOWED_TRANSITIONS.get(current, set())
            if new_phase not in allowed:
                raise InvalidStateTransition(
                    f"{state.service_id}: cannot transition from "
                    f"{current.value} to {new_phase.value}"
                )

        # Counter semantics
        if new_phase == ServicePhase.HEALTHY:
            state.consecutive_failures = 0
            state.degraded_failures = 0
            state.last_error = None
            state.causes = []

        elif new_phase == ServicePhase.DEGRADED and current != ServicePhase.DEGRADED:
            state.degraded_failures = 0

        elif new_phase == ServicePhase.PROVISIONING:
            state.last_error = None
            state.causes = []

        if cause:
            state.causes.append(cause)
            state.last_error = cause

        state.phase = new_phase
        state.updated_at = now
        return current
