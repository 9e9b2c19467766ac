# stack_engine/drivers/relay.py
"""Relay consumer (Jetstream) driver."""

from typing import Dict, List

from stack_engine.core.errors import DriverError
from stack_engine.core.models import ServiceKind, ServiceSpec
from stack_engine.drivers.base import DriverContext
from stack_engine.drivers.container import RESERVED_KEYS, ContainerServiceDriver
from stack_engine.drivers.upstream import firehose_endpoint


class RelayConsumerDriver(ContainerServiceDriver):
    """
    Jetstream serves subscribers on 6008 and metrics on 6009.

    The metrics port is the one probed; config key `port` moves it and
    `ws_port` moves the subscriber port.
    """

    kind = ServiceKind.RELAY_CONSUMER
    image = "ghcr.io/bluesky-social/jetstream:latest"
    container_port = 6009
    default_host_port = 6109
    websocket_port = 6008
    default_websocket_host_port = 6008
    health_path = "/metrics"
    reserved_keys = RESERVED_KEYS | {"ws_port"}

    def ports(self, service: ServiceSpec, replica: int) -> Dict[str, int]:
        ports = super().ports(service, replica)
        try:
            ws_port = int(service.config.get("ws_port", self.default_websocket_host_port))
        except ValueError as e:
            raise DriverError(f"{service.service_id}: ws_port must be an integer") from e
        ports[f"{self.websocket_port}/tcp"] = ws_port + replica
        return ports

    def base_environment(self, service: ServiceSpec, context: DriverContext) -> Dict[str, str]:
        return {
            "JETSTREAM_WS_URL": firehose_endpoint(service, context),
            "JETSTREAM_LISTEN_ADDR": f":{self.websocket_port}",
            "JETSTREAM_METRICS_LISTEN_ADDR": f":{self.container_port}",
            "JETSTREAM_DATA_DIR": self.data_mount,
            "JETSTREAM_SUBSCRIPTION_RECONNECT_DELAY": "1000",
        }

    def upstreams(self, service: ServiceSpec) -> List[str]:
        # subscribers, not metrics
        return [f"{name}:{self.websocket_port}" for name in self.container_names(service)]
