"""
Public verification routes.

Anyone holding a certificate's QR payload can check its signature here; no
customer identity is required and nothing about the certificate beyond the
validity bit is disclosed.
"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from api.routes.certificates import get_service
from core.service import CertificateService

router = APIRouter(prefix="/api/public", tags=["verify"])


@router.get("/verify/{unique_id}")
def verify_certificate(
    unique_id: str,
    signature: str = Query(..., min_length=1),
    service: CertificateService = Depends(get_service)
) -> JSONResponse:
    """
    Verify a certificate signature.

    Always answers 200 with ``{"valid": bool}``; unknown ids are simply invalid.
    """
    valid = service.verify(unique_id, signature)
    return JSONResponse(content={"unique_id": unique_id, "valid": valid}, status_code=200)


@router.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint for monitoring and load balancer readiness."""
    return JSONResponse(
        content={"status": "healthy", "service": "certkit", "version": "0.1.0"},
        status_code=200,
    )
