# stack_engine/drivers/upstream.py
"""Endpoints of a service's upstream dependencies on the container network."""

from typing import Optional

from stack_engine.core.models import ServiceKind, ServiceSpec
from stack_engine.drivers.base import DriverContext


PUBLIC_RELAY = "wss://bsky.network"
PDS_INTERNAL_PORT = 2583


def upstream_of_kind(service: ServiceSpec, context: DriverContext, kind: ServiceKind) -> Optional[ServiceSpec]:
    """First direct dependency of the given kind, in declaration order."""
    for dep_id in service.depends_on:
        dep = context.spec.service(dep_id)
        if dep.kind == kind:
            return dep
    return None


def repo_stream_base(service: ServiceSpec, context: DriverContext) -> str:
    """Base URL of the repo event stream: a local PDS if depended on, else the public relay."""
    pds = upstream_of_kind(service, context, ServiceKind.PDS)
    if pds is not None:
        return f"ws://{pds.service_id}:{PDS_INTERNAL_PORT}"
    return PUBLIC_RELAY


def firehose_endpoint(service: ServiceSpec, context: DriverContext) -> str:
    return f"{repo_stream_base(service, context)}/xrpc/com.atproto.sync.subscribeRepos"

