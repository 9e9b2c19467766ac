from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException

from stack_engine.api.container import get_container
from stack_engine.api.schemas.deployment import ApplyReportResponse, ApplyRequest
from stack_engine.core.errors import CycleError, ReportNotFound, SpecValidationError

router = APIRouter(prefix="/deployments", tags=["deployments"])


@router.post("/apply", response_model=ApplyReportResponse)
def apply_deployment(
    request: Optional[ApplyRequest] = None,
    container=Depends(get_container),
):
    """Load the deployment spec and run one apply pass. Blocks until the pass finishes."""
    request = request or ApplyRequest()
    source = request.document if request.document is not None else request.spec_path

    try:
        report = container.apply(source)
    except SpecValidationError as e:
        raise HTTPException(status_code=422, detail={"violations": e.violations})
    except CycleError as e:
        raise HTTPException(status_code=409, detail={"cycle": e.cycle, "message": str(e)})

    return ApplyReportResponse.from_report(report)


@router.get("/reports/latest", response_model=ApplyReportResponse)
def latest_report(container=Depends(get_container)):
    report = container.reports.latest()
    if report is None:
        raise HTTPException(status_code=404, detail="No apply has run yet")
    return ApplyReportResponse.from_report(report)


@router.get("/reports/{report_id}", response_model=ApplyReportResponse)
def get_report(report_id: UUID, container=Depends(get_container)):
    try:
        report = container.report(report_id)
    except ReportNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return ApplyReportResponse.from_report(report)
