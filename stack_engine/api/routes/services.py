from typing import List

from fastapi import APIRouter, Depends, HTTPException

from stack_engine.api.container import get_container
from stack_engine.api.schemas.deployment import ServiceStateResponse
from stack_engine.core.errors import ServiceNotFound

router = APIRouter(prefix="/services", tags=["services"])


@router.get("", response_model=List[ServiceStateResponse])
def list_services(container=Depends(get_container)):
    store = container.orchestrator.store
    if store is None:
        return []
    return [ServiceStateResponse.from_state(s) for s in store.snapshots()]


@router.get("/{service_id}", response_model=ServiceStateResponse)
def get_service(service_id: str, container=Depends(get_container)):
    store = container.orchestrator.store
    if store is None:
        raise HTTPException(status_code=404, detail="Nothing has been applied yet")
    try:
        return ServiceStateResponse.from_state(store.snapshot(service_id))
    except ServiceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
