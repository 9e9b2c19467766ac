# stack_engine/drivers/container.py
"""Shared implementation for container-backed service drivers."""

import logging
import time
from pathlib import Path
from typing import Dict, List, Optional

import requests

from stack_engine.core.errors import DriverError
from stack_engine.core.models import (
    DriverResult,
    HealthSignal,
    HealthStatus,
    ServiceSpec,
)
from stack_engine.drivers.base import DriverContext, ServiceDriver
from stack_engine.drivers.runtime import ContainerRuntime

logger = logging.getLogger(__name__)


# Config keys consumed by the driver itself; everything else becomes an env var
RESERVED_KEYS = {"image", "port", "health_path", "proxy_path"}

_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
}


class ContainerServiceDriver(ServiceDriver):
    """
    Runs `replicas` containers per service and probes them over HTTP.

    Replica i is named `<service_id>` (i = 0) or `<service_id>-<i>` and
    publishes its health port on `port + i`.
    """

    image: str
    container_port: int
    default_host_port: int
    health_path: str = "/health"
    data_mount: str = "/data"
    required_env: tuple = ()
    reserved_keys = RESERVED_KEYS

    def __init__(
        self,
        runtime: ContainerRuntime,
        probe_timeout: float = 5.0,
        verify_attempts: int = 5,
        verify_interval: float = 2.0,
        probe_host: str = "127.0.0.1",
    ):
        self.runtime = runtime
        self.probe_timeout = probe_timeout
        self.verify_attempts = verify_attempts
        self.verify_interval = verify_interval
        self.probe_host = probe_host

    # -------------------------
    # CONFIGURATION
    # -------------------------

    def base_environment(self, service: ServiceSpec, context: DriverContext) -> Dict[str, str]:
        """Kind-specific variables. Explicit config keys override them."""
        return {}

    def environment(self, service: ServiceSpec, context: DriverContext) -> Dict[str, str]:
        env = self.base_environment(service, context)
        env.update({k: v for k, v in service.config.items() if k not in self.reserved_keys})
        return env

    def image_for(self, service: ServiceSpec) -> str:
        return service.config.get("image", self.image)

    def host_port(self, service: ServiceSpec, replica: int = 0) -> int:
        try:
            base = int(service.config.get("port", self.default_host_port))
        except ValueError as e:
            raise DriverError(f"{service.service_id}: port must be an integer") from e
        return base + replica

    def ports(self, service: ServiceSpec, replica: int) -> Dict[str, int]:
        return {f"{self.container_port}/tcp": self.host_port(service, replica)}

    def volumes(self, service: ServiceSpec, context: DriverContext, replica: int) -> Dict[str, Dict[str, str]]:
        data_dir = Path(context.spec.storage_root).resolve() / "services" / self.container_name(service, replica)
        data_dir.mkdir(parents=True, exist_ok=True)
        volumes = {str(data_dir): {"bind": self.data_mount, "mode": "rw"}}
        if context.certificate is not None:
            # the domain directory, so renewals swapping `current` show through
            cert_dir = context.certificate.cert_path.parent.parent.resolve()
            volumes[str(cert_dir)] = {"bind": "/certs", "mode": "ro"}
        return volumes

    def container_name(self, service: ServiceSpec, replica: int) -> str:
        return service.service_id if replica == 0 else f"{service.service_id}-{replica}"

    def container_names(self, service: ServiceSpec) -> List[str]:
        return [self.container_name(service, i) for i in range(service.replicas)]

    def upstreams(self, service: ServiceSpec) -> List[str]:
        return [f"{name}:{self.container_port}" for name in self.container_names(service)]

    # -------------------------
    # CONTRACT
    # -------------------------

    def apply(self, service: ServiceSpec, context: DriverContext) -> DriverResult:
        env = self.environment(service, context)

        missing = [key for key in self.required_env if not env.get(key)]
        if missing:
            return DriverResult.failure(
                f"{service.service_id}: missing required config {', '.join(missing)}"
            )

        image = self.image_for(service)
        self.runtime.ensure_network()

        container_ids = []
        for replica in range(service.replicas):
            container_ids.append(
                self.runtime.deploy(
                    name=self.container_name(service, replica),
                    service_id=service.service_id,
                    image=image,
                    environment=env,
                    ports=self.ports(service, replica),
                    volumes=self.volumes(service, context, replica),
                )
            )

        pruned = self.runtime.prune(service.service_id, keep=self.container_names(service))
        if pruned:
            logger.info(f"[driver] {service.service_id}: removed surplus replicas {pruned}")

        return DriverResult.success(
            f"{service.replicas} container(s) running {image}",
            containers=container_ids,
        )

    def verify(self, service: ServiceSpec, context: DriverContext) -> DriverResult:
        """Every replica running and answering its health endpoint."""
        signal: Optional[HealthSignal] = None

        for attempt in range(1, self.verify_attempts + 1):
            not_running = [
                name for name in self.container_names(service)
                if self.runtime.status(name) != "running"
            ]
            if not_running:
                detail = f"container(s) not running: {', '.join(not_running)}"
            else:
                signal = self.probe(service, context)
                if signal.healthy:
                    return DriverResult.success(f"healthy in {signal.latency_ms}ms")
                detail = signal.detail or signal.status.value

            logger.debug(
                f"[driver] {service.service_id}: verify attempt {attempt}/{self.verify_attempts}: {detail}"
            )
            if attempt < self.verify_attempts:
                time.sleep(self.verify_interval)

        return DriverResult.failure(f"{service.service_id} did not become healthy: {detail}")

    def probe(self, service: ServiceSpec, context: DriverContext) -> HealthSignal:
        """Probe every replica; the worst answer wins."""
        path = service.config.get("health_path", self.health_path)
        worst: Optional[HealthSignal] = None

        for replica in range(service.replicas):
            url = f"http://{self.probe_host}:{self.host_port(service, replica)}{path}"
            signal = self._http_probe(url)
            if worst is None or _SEVERITY[signal.status] > _SEVERITY[worst.status]:
                worst = signal

        return worst

    def remove(self, service: ServiceSpec) -> DriverResult:
        removed = self.runtime.prune(service.service_id, keep=())
        return DriverResult.success(f"removed {len(removed)} container(s)", containers=removed)

    def _http_probe(self, url: str) -> HealthSignal:
        started = time.monotonic()
        try:
            response = requests.get(url, timeout=self.probe_timeout)
        except requests.exceptions.RequestException as e:
            return HealthSignal(HealthStatus.UNHEALTHY, detail=f"{url}: {e}")

        latency_ms = int((time.monotonic() - started) * 1000)
        if 200 <= response.status_code < 300:
            return HealthSignal(HealthStatus.HEALTHY, latency_ms=latency_ms)
        return HealthSignal(
            HealthStatus.DEGRADED,
            latency_ms=latency_ms,
            detail=f"{url} returned {response.status_code}",
        )
