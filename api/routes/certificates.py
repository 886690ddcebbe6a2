"""
Certificate API Routes

Owner-scoped certificate endpoints. Authentication happens upstream; the
authenticated customer id arrives in the ``X-Customer-Id`` header.

Example usage:
    POST /api/certificates/generate - Generate one certificate
    POST /api/certificates/generate/batch - Generate a batch from one template
    GET /api/certificates - List the caller's certificates
    GET /api/certificates/{unique_id}/download - Download the PDF
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

from core.errors import BatchValidationError
from core.logging import get_logger
from core.models import GenerationRequest
from core.service import CertificateService

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["certificates"])


def get_service(request: Request) -> CertificateService:
    return request.app.state.service


def get_owner_id(x_customer_id: int = Header(..., alias="X-Customer-Id")) -> int:
    return x_customer_id


class BatchItemRequest(BaseModel):
    """One batch entry in the full request shape (template id comes from the batch)."""
    data: Dict[str, Optional[str]]
    recipient_name: Optional[str] = Field(None, max_length=200)
    recipient_email: Optional[str] = Field(None, max_length=200)


class BatchGenerateRequest(BaseModel):
    """
    Batch request body.

    Either ``requests`` (full entries with recipient fields) or
    ``data_list`` (bare placeholder maps) must be given.
    """
    template_id: int
    requests: Optional[List[BatchItemRequest]] = None
    data_list: Optional[List[Dict[str, Optional[str]]]] = None
    timeout_s: Optional[float] = Field(None, gt=0)


class SimulateRequest(BaseModel):
    test_data: Dict[str, Optional[str]] = Field(default_factory=dict)


@router.post("/certificates/generate")
def generate_certificate(
    body: GenerationRequest,
    owner_id: int = Depends(get_owner_id),
    service: CertificateService = Depends(get_service)
) -> Dict[str, Any]:
    """Generate, sign and store one certificate."""
    certificate = service.generate(owner_id, body)
    return certificate.to_public_dict()


@router.post("/certificates/generate/batch")
def generate_batch(
    body: BatchGenerateRequest,
    owner_id: int = Depends(get_owner_id),
    service: CertificateService = Depends(get_service)
) -> Dict[str, Any]:
    """Generate certificates for every entry; per-item outcomes keep request order."""
    if body.requests is not None and body.data_list is not None:
        raise BatchValidationError("Provide either 'requests' or 'data_list', not both")

    if body.requests is not None:
        items = [
            GenerationRequest(template_id=body.template_id, **item.model_dump())
            for item in body.requests
        ]
    else:
        items = body.data_list or []

    job = service.generate_batch(owner_id, body.template_id, items, timeout=body.timeout_s)
    result = job.summary()
    result["outcomes"] = [outcome.to_dict() for outcome in job.outcomes]
    return result


@router.get("/certificates")
def list_certificates(
    owner_id: int = Depends(get_owner_id),
    service: CertificateService = Depends(get_service)
) -> Dict[str, Any]:
    certificates = service.list_certificates(owner_id)
    return {
        "certificates": [c.to_public_dict() for c in certificates],
        "total": len(certificates),
    }


@router.get("/certificates/{unique_id}")
def get_certificate(
    unique_id: str,
    owner_id: int = Depends(get_owner_id),
    service: CertificateService = Depends(get_service)
) -> Dict[str, Any]:
    return service.get_certificate(owner_id, unique_id).to_public_dict()


@router.get("/certificates/{unique_id}/download")
def download_certificate(
    unique_id: str,
    owner_id: int = Depends(get_owner_id),
    service: CertificateService = Depends(get_service)
) -> Response:
    """Stream the certificate PDF and count the download."""
    content = service.download(owner_id, unique_id)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="certificate-{unique_id}.pdf"'},
    )


@router.post("/certificates/{unique_id}/revoke")
def revoke_certificate(
    unique_id: str,
    owner_id: int = Depends(get_owner_id),
    service: CertificateService = Depends(get_service)
) -> Dict[str, Any]:
    return service.revoke(owner_id, unique_id).to_public_dict()


@router.post("/templates/{template_id}/simulate")
def simulate_template(
    template_id: int,
    body: SimulateRequest,
    owner_id: int = Depends(get_owner_id),
    service: CertificateService = Depends(get_service)
) -> Dict[str, Any]:
    """Preview a template with test data; nothing is signed or stored."""
    return service.simulate_template(owner_id, template_id, body.test_data).model_dump()


@router.post("/templates/{template_id}/simulate/pdf")
def simulate_template_pdf(
    template_id: int,
    body: SimulateRequest,
    owner_id: int = Depends(get_owner_id),
    service: CertificateService = Depends(get_service)
) -> Response:
    """Render the template preview as an inline PDF."""
    content = service.simulate_template_pdf(owner_id, template_id, body.test_data)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="preview-{template_id}.pdf"'},
    )

