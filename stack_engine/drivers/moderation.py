# stack_engine/drivers/moderation.py
"""Moderation service (Ozone) driver."""

from typing import Dict

from stack_engine.core.models import ServiceKind, ServiceSpec
from stack_engine.drivers.base import DriverContext
from stack_engine.drivers.container import ContainerServiceDriver


class ModerationDriver(ContainerServiceDriver):
    """
    Ozone needs its service DID, the admin DIDs and a Postgres URL from the
    service config; apply fails fast when any of them is absent.
    """

    kind = ServiceKind.MODERATION
    image = "ghcr.io/bluesky-social/ozone:latest"
    container_port = 3000
    default_host_port = 3000
    health_path = "/xrpc/_health"
    required_env = ("OZONE_SERVER_DID", "OZONE_ADMIN_DIDS", "OZONE_DATABASE_URL")

    def base_environment(self, service: ServiceSpec, context: DriverContext) -> Dict[str, str]:
        env = {
            "OZONE_PORT": str(self.container_port),
            "OZONE_PLC_HOST": "https://plc.directory",
            "OZONE_APP_VIEW_HOST": "https://api.bsky.app",
        }
        if service.domain:
            env["OZONE_PUBLIC_URL"] = f"https://{service.domain}"
        return env
