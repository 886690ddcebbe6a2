"""
CertKit Core Models

Pydantic v2 models for templates, generation requests, issued certificates,
audit events and batch bookkeeping. Relationships between customers,
templates and certificates are plain identifiers resolved through the
stores in ``core.repositories``; no model holds a reference to another.

Example usage:
    from core.models import GenerationRequest

    request = GenerationRequest(
        template_id=7,
        data={"name": "Alice", "course": "Security"},
        recipient_name="Alice",
    )
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.errors import DeserializationFailure


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TemplateType(str, Enum):
    """Template content types. Only HTML takes the markup render path."""
    HTML = "HTML"
    JSON = "JSON"
    PDF_TEMPLATE = "PDF_TEMPLATE"


class TemplateStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ARCHIVED = "ARCHIVED"


class CertificateStatus(str, Enum):
    """
    Certificate lifecycle states.

    GENERATED advances to DOWNLOADED; REVOKED is reachable from any state.
    VERIFIED exists for record compatibility but nothing transitions into it
    and verification never consults it.
    """
    GENERATED = "GENERATED"
    DOWNLOADED = "DOWNLOADED"
    VERIFIED = "VERIFIED"
    REVOKED = "REVOKED"


class AuditAction(str, Enum):
    GENERATE_CERTIFICATE = "GENERATE_CERTIFICATE"
    DOWNLOAD_CERTIFICATE = "DOWNLOAD_CERTIFICATE"
    REVOKE_CERTIFICATE = "REVOKE_CERTIFICATE"
    BATCH_COMPLETED = "BATCH_COMPLETED"


class Customer(BaseModel):
    """Certificate issuer account."""
    id: int
    name: str
    email: Optional[str] = None


class Template(BaseModel):
    """Certificate template owned by a customer."""
    id: int
    customer_id: int
    name: str
    description: Optional[str] = None
    content: str = Field(..., description="HTML markup or structured text with {{placeholder}} tokens")
    type: TemplateType = TemplateType.HTML
    placeholders: List[str] = Field(default_factory=list)
    status: TemplateStatus = TemplateStatus.ACTIVE


class GenerationRequest(BaseModel):
    """A single certificate generation request. Immutable once submitted."""

    model_config = ConfigDict(frozen=True)

    template_id: int
    data: Dict[str, Optional[str]] = Field(..., description="Placeholder values keyed by placeholder name")
    recipient_name: Optional[str] = Field(None, max_length=200)
    recipient_email: Optional[str] = Field(None, max_length=200)


class Certificate(BaseModel):
    """
    An issued certificate record.

    ``certificate_data`` holds the canonical JSON text of the exact data map
    that was signed, so the signature can be recomputed later from the
    record alone.
    """

    model_config = ConfigDict(validate_assignment=True)

    unique_id: str = Field(..., frozen=True)
    customer_id: int
    template_id: int
    file_path: str
    certificate_data: str
    recipient_name: Optional[str] = None
    recipient_email: Optional[str] = None
    digital_signature: str
    signature_key_id: str
    qr_payload: str
    status: CertificateStatus = CertificateStatus.GENERATED
    download_count: int = Field(0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    downloaded_at: Optional[datetime] = None

    def load_data(self) -> Dict[str, Optional[str]]:
        """
        Parse the stored data map.

        Raises:
            DeserializationFailure: If the stored text is not a JSON object
                mapping strings to strings (or null)
        """
        try:
            data = json.loads(self.certificate_data)
        except (TypeError, ValueError) as e:
            raise DeserializationFailure(
                "Stored certificate data is not valid JSON",
                details={"unique_id": self.unique_id, "error": str(e)},
            ) from e

        if not isinstance(data, dict):
            raise DeserializationFailure(
                "Stored certificate data is not a JSON object",
                details={"unique_id": self.unique_id},
            )
        for key, value in data.items():
            if not isinstance(key, str) or not (value is None or isinstance(value, str)):
                raise DeserializationFailure(
                    "Stored certificate data must map strings to strings",
                    details={"unique_id": self.unique_id, "key": str(key)},
                )
        return data

    def record_download(self, now: Optional[datetime] = None) -> None:
        """Count a download; GENERATED advances to DOWNLOADED, other states are kept."""
        self.download_count = self.download_count + 1
        self.downloaded_at = now or utc_now()
        if self.status == CertificateStatus.GENERATED:
            self.status = CertificateStatus.DOWNLOADED

    def revoke(self) -> None:
        self.status = CertificateStatus.REVOKED

    @property
    def download_url(self) -> str:
        return f"/api/certificates/{self.unique_id}/download"

    def to_public_dict(self) -> Dict[str, Any]:
        """Presentation view of the record (excludes the storage path)."""
        return {
            "unique_id": self.unique_id,
            "customer_id": self.customer_id,
            "template_id": self.template_id,
            "recipient_name": self.recipient_name,
            "recipient_email": self.recipient_email,
            "download_url": self.download_url,
            "digital_signature": self.digital_signature,
            "signature_key_id": self.signature_key_id,
            "qr_payload": self.qr_payload,
            "status": self.status.value,
            "download_count": self.download_count,
            "created_at": self.created_at.isoformat(),
            "downloaded_at": self.downloaded_at.isoformat() if self.downloaded_at else None,
        }


class AuditEvent(BaseModel):
    """Append-only audit record handed to an audit sink."""

    model_config = ConfigDict(frozen=True)

    customer_id: Optional[int] = None
    action: AuditAction
    entity_type: str
    entity_id: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class GenerationResult(BaseModel):
    """Output of one pipeline run: the record, the rendered bytes and the audit event."""

    model_config = ConfigDict(frozen=True)

    certificate: Certificate
    artifact: bytes = Field(repr=False)
    audit_event: AuditEvent


class TemplatePreview(BaseModel):
    """Result of a template simulation."""
    preview_html: str
    extracted_placeholders: List[str]
    missing_placeholders: List[str] = Field(default_factory=list)
    success: bool = True
    message: str = "Template simulation successful"


class BatchItemStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


class BatchItemOutcome(BaseModel):
    """Outcome of one batch item, tied to its input position."""
    index: int
    status: BatchItemStatus
    certificate: Optional[Certificate] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retriable: bool = False

    @property
    def ok(self) -> bool:
        return self.status == BatchItemStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        item: Dict[str, Any] = {"index": self.index, "status": self.status.value}
        if self.certificate is not None:
            item["unique_id"] = self.certificate.unique_id
            item["download_url"] = self.certificate.download_url
        if self.error_code is not None:
            item["error"] = self.error_code
            item["message"] = self.error_message
            item["retriable"] = self.retriable
        return item


class BatchJob(BaseModel):
    """Ephemeral coordination record for one batch call. Never persisted."""
    batch_id: str
    template_id: int
    total_requested: int
    estimated_completion_seconds: Optional[int] = None
    outcomes: List[BatchItemOutcome] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    def _count(self, status: BatchItemStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def succeeded(self) -> int:
        return self._count(BatchItemStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(BatchItemStatus.FAILED)

    @property
    def timed_out(self) -> int:
        return self._count(BatchItemStatus.TIMED_OUT)

    @property
    def certificates(self) -> List[Certificate]:
        return [o.certificate for o in self.outcomes if o.certificate is not None]

    def summary(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "template_id": self.template_id,
            "total_requested": self.total_requested,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "timed_out": self.timed_out,
            "estimated_completion_seconds": self.estimated_completion_seconds,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
