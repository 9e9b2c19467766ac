# stack_engine/drivers/feed.py
"""Feed generator driver."""

from typing import Dict

from stack_engine.core.models import ServiceKind, ServiceSpec
from stack_engine.drivers.base import DriverContext
from stack_engine.drivers.container import ContainerServiceDriver
from stack_engine.drivers.upstream import repo_stream_base


class FeedGeneratorDriver(ContainerServiceDriver):
    kind = ServiceKind.FEED_GENERATOR
    image = "ghcr.io/bluesky-social/feed-generator:latest"
    container_port = 3000
    default_host_port = 3002
    health_path = "/health"
    required_env = ("FEEDGEN_PUBLISHER_DID",)

    def base_environment(self, service: ServiceSpec, context: DriverContext) -> Dict[str, str]:
        hostname = service.domain or service.service_id
        return {
            "FEEDGEN_PORT": str(self.container_port),
            "FEEDGEN_LISTENHOST": "0.0.0.0",
            "FEEDGEN_HOSTNAME": hostname,
            "FEEDGEN_SERVICE_DID": f"did:web:{hostname}",
            "FEEDGEN_SQLITE_LOCATION": f"{self.data_mount}/feed.sqlite",
            "FEEDGEN_SUBSCRIPTION_ENDPOINT": repo_stream_base(service, context),
            "FEEDGEN_SUBSCRIPTION_RECONNECT_DELAY": "3000",
        }
