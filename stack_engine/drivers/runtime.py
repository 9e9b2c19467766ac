# stack_engine/drivers/runtime.py
"""
Container runtime - thin wrapper around the local Docker daemon.

Containers are identified by name and labelled so a later apply can tell
whether the running container still matches the desired configuration.
"""

import hashlib
import json
import logging
import threading
from typing import Dict, Iterable, List, Optional, Tuple

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from stack_engine.core.errors import DriverError

logger = logging.getLogger(__name__)


MANAGED_BY = "stack_engine"
LABEL_MANAGED_BY = "managed_by"
LABEL_SERVICE = "stack.service"
LABEL_CONFIG_HASH = "stack.config_hash"


def config_hash(
    image: str,
    environment: Dict[str, str],
    ports: Dict[str, int],
    volumes: Dict[str, Dict[str, str]],
) -> str:
    payload = json.dumps(
        {"image": image, "environment": environment, "ports": ports, "volumes": volumes},
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


class ContainerRuntime:
    """Create-or-replace semantics on top of the Docker SDK."""

    def __init__(self, client: Optional[docker.DockerClient] = None, network: str = "stack"):
        self._client = client
        self.network = network
        self._lock = threading.Lock()

    @property
    def client(self) -> docker.DockerClient:
        with self._lock:
            if self._client is None:
                try:
                    self._client = docker.from_env()
                    logger.info("[runtime] ✅ Connected to Docker daemon")
                except DockerException as e:
                    raise DriverError(f"Docker not available: {e}") from e
            return self._client

    def ensure_network(self) -> None:
        try:
            if not self.client.networks.list(names=[self.network]):
                self.client.networks.create(self.network, driver="bridge")
                logger.info(f"[runtime] created network {self.network}")
        except APIError as e:
            raise DriverError(f"cannot create network {self.network}: {e}") from e

    def deploy(
        self,
        name: str,
        service_id: str,
        image: str,
        environment: Dict[str, str],
        ports: Dict[str, int],
        volumes: Dict[str, Dict[str, str]],
    ) -> str:
        """
        Make container `name` run `image` with the given configuration.

        An existing container with the same configuration hash is left
        alone (started if stopped); any other one is replaced.

        Returns:
            Container id
        """
        digest = config_hash(image, environment, ports, volumes)

        try:
            existing = self._get(name)
            if existing is not None:
                if existing.labels.get(LABEL_CONFIG_HASH) == digest:
                    if existing.status != "running":
                        logger.info(f"[runtime] {name}: starting existing container")
                        existing.start()
                    return existing.id
                logger.info(f"[runtime] {name}: configuration changed, replacing container")
                existing.remove(force=True)

            logger.info(f"[runtime] {name}: pulling image {image}")
            try:
                self.client.images.pull(image)
            except ImageNotFound as e:
                raise DriverError(f"image not found: {image}") from e

            container = self.client.containers.create(
                image=image,
                name=name,
                detach=True,
                environment=environment,
                ports=ports,
                volumes=volumes,
                network=self.network,
                restart_policy={"Name": "unless-stopped"},
                labels={
                    LABEL_MANAGED_BY: MANAGED_BY,
                    LABEL_SERVICE: service_id,
                    LABEL_CONFIG_HASH: digest,
                },
            )
            container.start()
            logger.info(f"[runtime] {name}: ✅ container started {container.id[:12]}")
            return container.id

        except APIError as e:
            raise DriverError(f"{name}: Docker error: {e}") from e

    def status(self, name: str) -> Optional[str]:
        """Container status ("running", "exited", ...) or None if absent."""
        try:
            container = self._get(name)
        except APIError as e:
            raise DriverError(f"{name}: Docker error: {e}") from e
        return container.status if container is not None else None

    def containers_for(self, service_id: str) -> List[str]:
        try:
            containers = self.client.containers.list(
                all=True,
                filters={"label": [f"{LABEL_MANAGED_BY}={MANAGED_BY}", f"{LABEL_SERVICE}={service_id}"]},
            )
        except APIError as e:
            raise DriverError(f"Docker error listing {service_id}: {e}") from e
        return sorted(c.name for c in containers)

    def remove(self, name: str) -> bool:
        """Remove container `name`. Returns False if it did not exist."""
        try:
            container = self._get(name)
            if container is None:
                return False
            container.remove(force=True)
            logger.info(f"[runtime] {name}: container removed")
            return True
        except APIError as e:
            raise DriverError(f"{name}: Docker error: {e}") from e

    def prune(self, service_id: str, keep: Iterable[str]) -> List[str]:
        """Remove containers of `service_id` whose names are not in `keep`."""
        keep = set(keep)
        removed = []
        for name in self.containers_for(service_id):
            if name not in keep and self.remove(name):
                removed.append(name)
        return removed

    def exec(self, name: str, command: List[str]) -> Tuple[int, str]:
        """Run `command` inside running container `name`."""
        try:
            container = self._get(name)
            if container is None:
                raise DriverError(f"{name}: container not found")
            exit_code, output = container.exec_run(command)
        except APIError as e:
            raise DriverError(f"{name}: Docker error: {e}") from e
        return exit_code, output.decode("utf-8", errors="replace") if output else ""

    def _get(self, name: str):
        try:
            container = self.client.containers.get(name)
        except NotFound:
            return None
        container.reload()
        return container
