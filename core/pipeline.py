"""
Certificate Generation Pipeline

Turns one generation request into a signed certificate record, the
rendered PDF and an audit event:

    Validated -> Signed -> Rendered -> (caller) Persisted

The pipeline performs no writes. It returns a ``GenerationResult`` and the
caller decides how the artifact, the record and the audit event are
persisted (see ``core.service.CertificateService``). Every instance shares
only read-only collaborators, so any number of requests can run through
the same pipeline concurrently.

Example usage:
    pipeline = GenerationPipeline(templates, customers, engine, renderer, artifact_store,
                                  verify_base_url="https://certs.example.org")
    result = pipeline.run(owner_id=1, request=request)
    print(result.certificate.unique_id, len(result.artifact))
"""

import time
import uuid
from typing import Callable, Optional

from core.errors import AccessDenied, CertKitError, NotFoundError, RenderFailure
from core.logging import get_logger
from core.models import (
    AuditAction,
    AuditEvent,
    Certificate,
    CertificateStatus,
    GenerationRequest,
    GenerationResult,
)
from core.render_certificate import ArtifactRenderer, build_verification_url, encode_qr
from core.repositories import CustomerStore, TemplateStore
from core.signature import SignatureEngine, canonical_json
from core.storage import ArtifactStore
from core.templating import substitute

logger = get_logger(__name__)


def new_unique_id() -> str:
    """Fresh certificate identifier: a random UUID drawn from the OS CSPRNG."""
    return str(uuid.uuid4())


class GenerationPipeline:
    """
    Per-request certificate generation.

    Args:
        templates: Template lookup scoped by owner
        customers: Customer lookup for the QR payload identity
        signer: Signature engine holding the keyring
        renderer: Artifact renderer
        artifact_store: Used only to derive the artifact path from the unique id
        verify_base_url: Base of the verification URL embedded in the QR code
        qr_size: QR image size in pixels
        id_factory: Unique id source
        qr_encoder: QR image encoder
    """

    def __init__(
        self,
        templates: TemplateStore,
        customers: CustomerStore,
        signer: SignatureEngine,
        renderer: ArtifactRenderer,
        artifact_store: ArtifactStore,
        verify_base_url: str,
        qr_size: int = 200,
        id_factory: Optional[Callable[[], str]] = None,
        qr_encoder: Callable[[str, int], bytes] = encode_qr
    ):
        self.templates = templates
        self.customers = customers
        self.signer = signer
        self.renderer = renderer
        self.artifact_store = artifact_store
        self.verify_base_url = verify_base_url
        self.qr_size = qr_size
        self.id_factory = id_factory or new_unique_id
        self.qr_encoder = qr_encoder

    def run(self, owner_id: int, request: GenerationRequest) -> GenerationResult:
        """
        Generate one certificate.

        Raises:
            AccessDenied: Template missing or not owned by ``owner_id``
            NotFoundError: Owner has no customer record
            SigningFailure: Key material is misconfigured
            CanonicalizationError: Request data cannot be canonicalized
            RenderFailure: QR encoding or document rendering failed
        """
        start_time = time.time()

        # Validate
        template = self.templates.get_for_owner(request.template_id, owner_id)
        if template is None:
            raise AccessDenied(
                "Template not found or access denied",
                details={"template_id": request.template_id},
            )
        customer = self.customers.get(owner_id)
        if customer is None:
            raise NotFoundError("Customer not found", details={"customer_id": owner_id})

        # Identify
        unique_id = self.id_factory()

        # Sign
        key_id = self.signer.current_key_id()
        certificate_data = canonical_json(request.data)
        signature = self.signer.sign(unique_id, request.data, key_id)

        # QR payload
        qr_payload = build_verification_url(self.verify_base_url, unique_id, customer.id, signature)

        # Render
        try:
            qr_png = self.qr_encoder(qr_payload, self.qr_size)
            content = substitute(template.content, request.data) or ""
            artifact = self.renderer.render(template, content, unique_id, qr_png)
        except CertKitError:
            raise
        except Exception as e:
            raise RenderFailure(
                "Unexpected error while rendering certificate",
                details={"template_id": template.id, "error": str(e)},
            ) from e

        certificate = Certificate(
            unique_id=unique_id,
            customer_id=customer.id,
            template_id=template.id,
            file_path=str(self.artifact_store.path_for(unique_id)),
            certificate_data=certificate_data,
            recipient_name=request.recipient_name,
            recipient_email=request.recipient_email,
            digital_signature=signature,
            signature_key_id=key_id,
            qr_payload=qr_payload,
            status=CertificateStatus.GENERATED,
        )

        audit_event = AuditEvent(
            customer_id=customer.id,
            action=AuditAction.GENERATE_CERTIFICATE,
            entity_type="CERTIFICATE",
            entity_id=unique_id,
            details={
                "template_id": template.id,
                "recipient_name": request.recipient_name,
                "recipient_email": request.recipient_email,
                "signature_key_id": key_id,
            },
        )

        logger.info(
            "Certificate generated",
            extra={
                "unique_id": unique_id,
                "customer_id": customer.id,
                "template_id": template.id,
                "template_type": template.type.value,
                "size_bytes": len(artifact),
                "duration_ms": int((time.time() - start_time) * 1000),
            },
        )

        return GenerationResult(certificate=certificate, artifact=artifact, audit_event=audit_event)
