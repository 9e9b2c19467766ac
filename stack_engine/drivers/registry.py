# stack_engine/drivers/registry.py
"""The closed set of service drivers, one per ServiceKind."""

from typing import Dict, Type

from stack_engine.core.models import ServiceKind
from stack_engine.drivers.base import ServiceDriver
from stack_engine.drivers.container import ContainerServiceDriver
from stack_engine.drivers.feed import FeedGeneratorDriver
from stack_engine.drivers.moderation import ModerationDriver
from stack_engine.drivers.pds import PdsDriver
from stack_engine.drivers.relay import RelayConsumerDriver
from stack_engine.drivers.runtime import ContainerRuntime


DRIVER_CLASSES: Dict[ServiceKind, Type[ContainerServiceDriver]] = {
    ServiceKind.PDS: PdsDriver,
    ServiceKind.RELAY_CONSUMER: RelayConsumerDriver,
    ServiceKind.MODERATION: ModerationDriver,
    ServiceKind.FEED_GENERATOR: FeedGeneratorDriver,
}


def build_drivers(runtime: ContainerRuntime, probe_timeout: float = 5.0) -> Dict[ServiceKind, ServiceDriver]:
    """One driver instance per kind, sharing a container runtime."""
    return {
        kind: driver_class(runtime, probe_timeout=probe_timeout)
        for kind, driver_class in DRIVER_CLASSES.items()
    }
