"""
Certificate service: the persistence-aware facade over the pipeline.

Single, asynchronous and batch generation all end in ``generate``, which
publishes the rendered artifact, saves the certificate record and appends
the audit event. Verification, downloads, revocation, template simulation
and orphan cleanup live here as well, so the HTTP routes and the CLI share
one code path.

Example usage:
    from core.config import load_settings
    from core.service import build_service

    service = build_service(load_settings(), templates, customers)
    certificate = service.generate(owner_id=1, request=request)
    assert service.verify(certificate.unique_id, certificate.digital_signature)
"""

import threading
import time
from concurrent.futures import Future
from datetime import timedelta
from typing import Dict, List, Mapping, Optional, Sequence

from core.batch import BatchCoordinator, BatchItem, BatchTimeoutError
from core.config import Settings
from core.errors import AccessDenied, ArtifactIOError, DeserializationFailure, NotFoundError, PersistenceError
from core.logging import get_logger
from core.models import (
    AuditAction,
    AuditEvent,
    BatchJob,
    Certificate,
    GenerationRequest,
    TemplatePreview,
)
from core.pipeline import GenerationPipeline
from core.render_certificate import ArtifactRenderer
from core.repositories import (
    AuditSink,
    CertificateStore,
    CustomerStore,
    InMemoryAuditSink,
    InMemoryCertificateStore,
    TemplateStore,
)
from core.signature import SignatureEngine, engine_from_settings
from core.storage import ArtifactStore
from core.templating import simulate

logger = get_logger(__name__)


class CertificateService:
    """
    Issue, serve, verify and revoke certificates.

    Args:
        pipeline: Generation pipeline (validation, signing, rendering)
        certificates: Certificate record store
        artifact_store: Rendered artifact storage
        audit_sink: Audit event sink
        max_workers: Worker pool size for async and batch generation
        batch_timeout_s: Default batch deadline (None waits indefinitely)
    """

    def __init__(
        self,
        pipeline: GenerationPipeline,
        certificates: CertificateStore,
        artifact_store: ArtifactStore,
        audit_sink: AuditSink,
        max_workers: int = 50,
        batch_timeout_s: Optional[float] = None
    ):
        self.pipeline = pipeline
        self.certificates = certificates
        self.artifact_store = artifact_store
        self.audit_sink = audit_sink
        self.batch_timeout_s = batch_timeout_s
        self.coordinator = BatchCoordinator(self.generate, max_workers=max_workers, audit_sink=audit_sink)

    @property
    def signer(self) -> SignatureEngine:
        return self.pipeline.signer

    def generate(
        self,
        owner_id: int,
        request: GenerationRequest,
        cancel_event: Optional[threading.Event] = None
    ) -> Certificate:
        """
        Generate and persist one certificate.

        The artifact is published first, then the record is saved and the
        audit event appended. If either write fails, the record and the
        artifact are removed again and ``PersistenceError`` is raised, so a
        certificate is either fully stored or not stored at all.

        Args:
            owner_id: Issuing customer
            request: Generation request
            cancel_event: Set by the batch coordinator once its deadline has
                passed; a set event discards the certificate before it is stored

        Raises:
            BatchTimeoutError: If ``cancel_event`` was set before the certificate was stored
            PersistenceError: If the record or audit event could not be written
        """
        result = self.pipeline.run(owner_id, request)
        certificate = result.certificate

        if cancel_event is not None and cancel_event.is_set():
            raise BatchTimeoutError("Batch deadline passed before certificate was stored")

        self.artifact_store.write(certificate.unique_id, result.artifact)
        if cancel_event is not None and cancel_event.is_set():
            self.artifact_store.delete(certificate.unique_id)
            raise BatchTimeoutError("Batch deadline passed before certificate was stored")

        try:
            self.certificates.save(certificate)
            self.audit_sink.append(result.audit_event)
        except Exception as e:
            logger.error(
                "Failed to persist certificate, rolling back",
                extra={"unique_id": certificate.unique_id, "error": str(e)},
                exc_info=True,
            )
            self._rollback(certificate.unique_id)
            raise PersistenceError(
                "Certificate could not be stored",
                details={"unique_id": certificate.unique_id},
            ) from e

        return certificate

    def _rollback(self, unique_id: str) -> None:
        try:
            self.certificates.delete(unique_id)
        except Exception:
            logger.error("Failed to remove certificate record during rollback",
                         extra={"unique_id": unique_id}, exc_info=True)
        self.artifact_store.delete(unique_id)

    def generate_async(self, owner_id: int, request: GenerationRequest) -> "Future[Certificate]":
        """Queue one generation on the worker pool."""
        return self.coordinator.submit(owner_id, request)

    def generate_batch(
        self,
        owner_id: int,
        template_id: int,
        items: Sequence[BatchItem],
        timeout: Optional[float] = None
    ) -> BatchJob:
        """
        Generate a batch of certificates from one template.

        Raises:
            AccessDenied: If the template is not owned by ``owner_id``
            BatchValidationError: If the batch is empty or too large
        """
        if self.pipeline.templates.get_for_owner(template_id, owner_id) is None:
            raise AccessDenied("Template not found or access denied", details={"template_id": template_id})
        return self.coordinator.run(
            owner_id,
            template_id,
            items,
            timeout=timeout if timeout is not None else self.batch_timeout_s,
        )

    def verify(self, unique_id: str, signature: str) -> bool:
        """
        Check that ``signature`` is valid for the stored certificate.

        Stateless: the record is neither modified nor consulted for status,
        so a revoked certificate still carries a valid signature. Never
        raises; unknown ids and unreadable records verify as False.
        """
        try:
            certificate = self.certificates.get(unique_id)
        except Exception:
            logger.error("Certificate lookup failed during verification", exc_info=True)
            return False
        if certificate is None:
            return False

        try:
            data = certificate.load_data()
        except DeserializationFailure as e:
            logger.warning(
                "Stored certificate data could not be parsed",
                extra={"unique_id": unique_id, "error": e.code},
            )
            return False

        valid = self.signer.verify(unique_id, data, certificate.signature_key_id, signature)
        logger.info("Certificate verification", extra={"unique_id": unique_id, "valid": valid})
        return valid

    def get_certificate(self, owner_id: int, unique_id: str) -> Certificate:
        certificate = self.certificates.get_for_owner(unique_id, owner_id)
        if certificate is None:
            raise NotFoundError("Certificate not found", details={"unique_id": unique_id})
        return certificate

    def list_certificates(self, owner_id: int) -> List[Certificate]:
        return self.certificates.list_for_owner(owner_id)

    def download(self, owner_id: int, unique_id: str) -> bytes:
        """
        Return the artifact bytes and record the download.

        Raises:
            NotFoundError: If the certificate is unknown or owned by someone else
            ArtifactNotFoundError: If the record exists but the artifact is gone
        """
        certificate = self.get_certificate(owner_id, unique_id)
        content = self.artifact_store.read(unique_id)

        certificate.record_download()
        self.certificates.save(certificate)
        self.audit_sink.append(AuditEvent(
            customer_id=owner_id,
            action=AuditAction.DOWNLOAD_CERTIFICATE,
            entity_type="CERTIFICATE",
            entity_id=unique_id,
            details={"download_count": certificate.download_count},
        ))
        return content

    def revoke(self, owner_id: int, unique_id: str) -> Certificate:
        certificate = self.get_certificate(owner_id, unique_id)
        certificate.revoke()
        self.certificates.save(certificate)
        self.audit_sink.append(AuditEvent(
            customer_id=owner_id,
            action=AuditAction.REVOKE_CERTIFICATE,
            entity_type="CERTIFICATE",
            entity_id=unique_id,
        ))
        logger.info("Certificate revoked", extra={"unique_id": unique_id, "customer_id": owner_id})
        return certificate

    def simulate_template(
        self,
        owner_id: int,
        template_id: int,
        values: Optional[Mapping[str, Optional[str]]]
    ) -> TemplatePreview:
        template = self.pipeline.templates.get_for_owner(template_id, owner_id)
        if template is None:
            raise AccessDenied("Template not found or access denied", details={"template_id": template_id})
        return simulate(template.content, values)

    def simulate_template_pdf(
        self,
        owner_id: int,
        template_id: int,
        values: Optional[Mapping[str, Optional[str]]]
    ) -> bytes:
        """Render a template preview as PDF. Nothing is signed or stored."""
        template = self.pipeline.templates.get_for_owner(template_id, owner_id)
        if template is None:
            raise AccessDenied("Template not found or access denied", details={"template_id": template_id})
        return self.pipeline.renderer.render_preview(template.content, values)

    def cleanup_orphans(self, grace_period: timedelta, dry_run: bool = False) -> Dict[str, float]:
        """Remove artifacts with no certificate record that are older than ``grace_period``."""
        start_time = time.time()
        try:
            stats = self.artifact_store.cleanup_orphan_artifacts(
                self.certificates.known_ids(), grace_period, dry_run=dry_run
            )
        except OSError as e:
            raise ArtifactIOError("Orphan cleanup failed", details={"error": str(e)}) from e
        logger.info(
            "Orphan cleanup finished",
            extra={"duration_ms": int((time.time() - start_time) * 1000), "dry_run": dry_run},
        )
        return stats

    def shutdown(self, wait: bool = True) -> None:
        self.coordinator.shutdown(wait=wait)


def build_service(
    settings: Settings,
    templates: TemplateStore,
    customers: CustomerStore,
    certificates: Optional[CertificateStore] = None,
    audit_sink: Optional[AuditSink] = None,
    renderer: Optional[ArtifactRenderer] = None
) -> CertificateService:
    """Wire a ``CertificateService`` from settings and collaborator stores."""
    artifact_store = ArtifactStore(settings.storage_path)
    pipeline = GenerationPipeline(
        templates=templates,
        customers=customers,
        signer=engine_from_settings(settings),
        renderer=renderer or ArtifactRenderer(),
        artifact_store=artifact_store,
        verify_base_url=settings.verify_base_url,
        qr_size=settings.qr_size,
    )
    return CertificateService(
        pipeline=pipeline,
        certificates=certificates if certificates is not None else InMemoryCertificateStore(),
        artifact_store=artifact_store,
        audit_sink=audit_sink if audit_sink is not None else InMemoryAuditSink(),
        max_workers=settings.batch_max_workers,
        batch_timeout_s=settings.batch_timeout_s,
    )
