"""
CertKit FastAPI Application

HTTP entry point for CertKit: owner-scoped certificate generation,
download and revocation, plus the public verification endpoint that QR
payloads point at.

Example usage:
    # Start the server (signing keys come from the environment)
    CERT_SIGNING_KEYS=v1:change-me uvicorn app:create_app --factory --host 0.0.0.0 --port 8000

    # Health check
    curl http://localhost:8000/api/public/health
"""

import os
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from api.routes.certificates import router as certificates_router
from api.routes.verify import router as verify_router
from core.config import Settings, load_settings
from core.errors import CertKitError, error_response
from core.logging import RequestLoggingMiddleware, get_logger, setup_logging
from core.repositories import InMemoryCustomerStore, InMemoryTemplateStore
from core.service import CertificateService, build_service

logger = get_logger(__name__)

DEFAULT_CORS_ORIGINS = "http://localhost:4200,http://localhost:8000"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add baseline security headers to every response.

    Example:
        app.add_middleware(SecurityHeadersMiddleware)
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


def _cors_origins() -> List[str]:
    raw = os.environ.get("CORS_ORIGINS", DEFAULT_CORS_ORIGINS)
    return [o.strip() for o in raw.split(",") if o.strip()]


async def certkit_error_handler(request: Request, exc: CertKitError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        f"Request failed: {exc.code}",
        extra={"path": request.url.path, "error": exc.code, "retriable": exc.retriable},
    )
    return error_response(exc)


async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"error": "INVALID_REQUEST", "message": str(exc), "retriable": False},
    )


def create_app(
    service: Optional[CertificateService] = None,
    settings: Optional[Settings] = None
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        service: Pre-wired certificate service (tests, embedding)
        settings: Settings used when ``service`` is not given (loaded from the environment)

    Returns:
        FastAPI: Configured application instance
    """
    if service is None:
        settings = settings or load_settings()
        setup_logging(level=settings.log_level, format_type=settings.log_format)
        service = build_service(settings, InMemoryTemplateStore(), InMemoryCustomerStore())

    app = FastAPI(
        title="CertKit",
        description="Generate, sign and verify QR-stamped certificates",
        version="0.1.0",
        docs_url="/api-docs",
        redoc_url="/redoc",
    )
    app.state.service = service

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        max_age=3600,
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(CertKitError, certkit_error_handler)
    app.add_exception_handler(ValidationError, validation_error_handler)

    app.include_router(certificates_router)
    app.include_router(verify_router)

    @app.on_event("shutdown")
    def _shutdown_workers() -> None:
        service.shutdown(wait=False)

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
