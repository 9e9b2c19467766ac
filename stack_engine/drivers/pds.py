# stack_engine/drivers/pds.py
"""Personal Data Server driver."""

from typing import Dict

from stack_engine.core.models import ServiceKind, ServiceSpec
from stack_engine.drivers.base import DriverContext
from stack_engine.drivers.container import ContainerServiceDriver
from stack_engine.drivers.secrets import load_or_create


class PdsDriver(ContainerServiceDriver):
    kind = ServiceKind.PDS
    image = "ghcr.io/bluesky-social/pds:latest"
    container_port = 2583
    default_host_port = 2583
    health_path = "/xrpc/_health"
    data_mount = "/pds"

    def base_environment(self, service: ServiceSpec, context: DriverContext) -> Dict[str, str]:
        env = {
            "PDS_HOSTNAME": service.domain or service.service_id,
            "PDS_PORT": str(self.container_port),
            "PDS_DATA_DIRECTORY": self.data_mount,
            "PDS_BLOBSTORE_DISK_LOCATION": f"{self.data_mount}/blocks",
            "PDS_DID_PLC_URL": "https://plc.directory",
        }
        env.update(load_or_create(context.spec.storage_root, service.service_id).as_env())
        return env
