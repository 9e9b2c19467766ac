# stack_engine/drivers/base.py
"""Service Driver contract."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from stack_engine.core.models import (
    Certificate,
    DeploymentSpec,
    DriverResult,
    HealthSignal,
    ServiceKind,
    ServiceSpec,
)


@dataclass(frozen=True)
class DriverContext:
    """What a driver may know about the deployment besides its own service."""
    spec: DeploymentSpec
    certificate: Optional[Certificate] = None


class ServiceDriver(ABC):
    """
    Starts, configures and probes one kind of service.

    All calls are made with the service's ownership token held and under
    a deadline. Implementations must be idempotent: applying an unchanged
    service again leaves it running as is.
    """

    kind: ServiceKind

    @abstractmethod
    def apply(self, service: ServiceSpec, context: DriverContext) -> DriverResult:
        """Create or update the running service to match `service`."""
        pass

    @abstractmethod
    def verify(self, service: ServiceSpec, context: DriverContext) -> DriverResult:
        """Confirm the service came up after apply."""
        pass

    @abstractmethod
    def probe(self, service: ServiceSpec, context: DriverContext) -> HealthSignal:
        """One health probe."""
        pass

    @abstractmethod
    def remove(self, service: ServiceSpec) -> DriverResult:
        """Stop and delete everything apply created for `service`."""
        pass

    def upstreams(self, service: ServiceSpec) -> List[str]:
        """`host:port` addresses the TLS proxy forwards the service's domain to."""
        return []
