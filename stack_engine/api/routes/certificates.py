from fastapi import APIRouter, Depends, HTTPException

from stack_engine.api.container import get_container
from stack_engine.api.schemas.deployment import CertificateResponse
from stack_engine.core.errors import CertificateError

router = APIRouter(prefix="/certificates", tags=["certificates"])


@router.post("/{hostname}/revalidate", response_model=CertificateResponse)
def revalidate_certificate(hostname: str, container=Depends(get_container)):
    """Re-read the stored certificate and renew it if it is inside its renewal window."""
    manager = container.cert_manager
    hostname = hostname.lower().rstrip(".")
    if hostname not in manager.domains():
        raise HTTPException(status_code=404, detail=f"No certificate managed for {hostname}")

    try:
        certificate = manager.revalidate(hostname)
    except CertificateError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return CertificateResponse.from_certificate(certificate)
