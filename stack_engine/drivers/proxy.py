# stack_engine/drivers/proxy.py
"""
TLS proxy - a Caddy container terminating TLS for every domain.

The Caddyfile is generated from the deployment spec: one site per domain
holding a certificate, serving the managed cert/key pair through the
`current` link and forwarding to the containers of the services bound to
that domain. A service's `proxy_path` config key (e.g. "/xrpc/*") routes
only that path to it; services without one share the catch-all route.

Caddy reads certificate files when the config is loaded, so the proxy is
reloaded whenever a certificate is renewed.
"""

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Tuple

from stack_engine.certs.storage import CERT_FILE, CURRENT_LINK, KEY_FILE
from stack_engine.core.errors import DriverError
from stack_engine.core.events import EventEmitter
from stack_engine.core.events_model import StackEvent
from stack_engine.core.models import Certificate, DeploymentSpec, DriverResult, ServiceKind
from stack_engine.drivers.base import ServiceDriver
from stack_engine.drivers.runtime import ContainerRuntime

logger = logging.getLogger(__name__)


PROXY_CONTAINER = "stack-proxy"
PROXY_SERVICE_LABEL = "tls-proxy"
CONFIG_MOUNT = "/etc/caddy"
CERT_MOUNT = "/certs"
CADDYFILE = "Caddyfile"


def _site_block(hostname: str, routes: List[Tuple[Optional[str], List[str]]]) -> str:
    cert = f"{CERT_MOUNT}/{hostname}/{CURRENT_LINK}/{CERT_FILE}"
    key = f"{CERT_MOUNT}/{hostname}/{CURRENT_LINK}/{KEY_FILE}"
    lines = [f"{hostname} {{", f"\ttls {cert} {key}"]

    catch_all: List[str] = []
    for path, upstreams in routes:
        if path:
            lines += [f"\thandle {path} {{", f"\t\treverse_proxy {' '.join(upstreams)}", "\t}"]
        else:
            catch_all.extend(upstreams)
    if catch_all:
        lines += ["\thandle {", f"\t\treverse_proxy {' '.join(catch_all)}", "\t}"]

    lines.append("}")
    return "\n".join(lines) + "\n"


def render_caddyfile(
    spec: DeploymentSpec,
    certificates: Mapping[str, Certificate],
    drivers: Mapping[ServiceKind, ServiceDriver],
) -> str:
    """
    Caddyfile for every domain that has a certificate and something to
    forward to. Empty when there is no such domain.
    """
    blocks = []
    for domain in spec.domains:
        hostname = domain.hostname
        if hostname not in certificates:
            continue

        routes = []
        for service in spec.services_for_domain(hostname):
            driver = drivers.get(service.kind)
            upstreams = driver.upstreams(service) if driver is not None else []
            if upstreams:
                routes.append((service.config.get("proxy_path"), upstreams))
        if routes:
            blocks.append(_site_block(hostname, routes))

    return "\n".join(blocks)


def _write_if_changed(path: Path, content: str) -> bool:
    if path.exists() and path.read_text(encoding="utf-8") == content:
        return False
    # the directory is what Caddy mounts, so a rename shows through
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        os.fchmod(fd, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    return True


class TlsProxy:
    """Keeps the proxy container and its Caddyfile in line with the deployment."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        drivers: Mapping[ServiceKind, ServiceDriver],
        image: str = "caddy:2",
        https_port: int = 443,
    ):
        self.runtime = runtime
        self.drivers = dict(drivers)
        self.image = image
        self.https_port = https_port

        self._lock = threading.Lock()
        self._running = False

    def config_path(self, storage_root: Path) -> Path:
        return Path(storage_root).resolve() / "proxy" / "config" / CADDYFILE

    def sync(self, spec: DeploymentSpec, certificates: Mapping[str, Certificate]) -> DriverResult:
        """
        Write the Caddyfile and make sure the proxy runs with it.

        The proxy is removed when no domain is left to serve.
        """
        caddyfile = render_caddyfile(spec, certificates, self.drivers)
        root = Path(spec.storage_root).resolve()

        with self._lock:
            if not caddyfile:
                removed = self.runtime.remove(PROXY_CONTAINER)
                self._running = False
                return DriverResult.success("no TLS sites" + (", proxy removed" if removed else ""))

            config_path = self.config_path(root)
            config_path.parent.mkdir(parents=True, exist_ok=True)
            data_dir = root / "proxy" / "data"
            data_dir.mkdir(parents=True, exist_ok=True)
            certs_dir = root / "certs"
            certs_dir.mkdir(parents=True, exist_ok=True)

            try:
                changed = _write_if_changed(config_path, caddyfile)
            except OSError as e:
                raise DriverError(f"cannot write {config_path}: {e}") from e

            self.runtime.ensure_network()
            container_id = self.runtime.deploy(
                name=PROXY_CONTAINER,
                service_id=PROXY_SERVICE_LABEL,
                image=self.image,
                environment={},
                ports={"443/tcp": self.https_port},
                volumes={
                    str(config_path.parent): {"bind": CONFIG_MOUNT, "mode": "ro"},
                    str(certs_dir): {"bind": CERT_MOUNT, "mode": "ro"},
                    str(data_dir): {"bind": "/data", "mode": "rw"},
                },
            )
            self._running = True

        sites = caddyfile.count(f"\ttls {CERT_MOUNT}/")
        logger.info(f"[proxy] {sites} TLS site(s) configured in {config_path}")
        if changed:
            self.reload()
        return DriverResult.success(f"{sites} TLS site(s)", containers=[container_id])

    def reload(self) -> bool:
        """Make Caddy re-read its config and the certificate files."""
        with self._lock:
            if not self._running:
                return False
        try:
            exit_code, output = self.runtime.exec(
                PROXY_CONTAINER,
                ["caddy", "reload", "--config", f"{CONFIG_MOUNT}/{CADDYFILE}", "--force"],
            )
        except DriverError as e:
            logger.warning(f"[proxy] reload failed: {e}")
            return False
        if exit_code != 0:
            logger.warning(f"[proxy] reload exited with {exit_code}: {output.strip()}")
            return False
        logger.info("[proxy] 🔄 reloaded")
        return True


class ProxyReloadEmitter(EventEmitter):
    """Reloads the proxy when a renewed certificate is announced."""

    def __init__(self, proxy: TlsProxy):
        self._proxy = proxy

    def emit(self, events: Iterable[StackEvent]) -> None:
        if any(e.event_type == "certificate.renewed" for e in events):
            self._proxy.reload()
