"""
Tests for the single-certificate generation pipeline.

Example usage:
    pytest tests/test_pipeline.py -v
"""

import json
import uuid
from concurrent.futures import ThreadPoolExecutor
from urllib.parse import parse_qs, unquote, urlparse

import pytest

from core.errors import AccessDenied, CanonicalizationError, NotFoundError, RenderFailure, SigningFailure
from core.models import AuditAction, CertificateStatus, GenerationRequest
from core.pipeline import GenerationPipeline, new_unique_id
from core.render_certificate import ArtifactRenderer
from core.repositories import InMemoryCustomerStore
from core.storage import ArtifactStore

from tests.helpers import (
    FOREIGN_TEMPLATE_ID,
    HTML_TEMPLATE_ID,
    JSON_TEMPLATE_ID,
    OWNER_ID,
    VERIFY_BASE_URL,
    StubRenderer,
    fast_qr_encoder,
)


@pytest.fixture
def pipeline(templates, customers, engine, renderer, tmp_path):
    return GenerationPipeline(
        templates=templates,
        customers=customers,
        signer=engine,
        renderer=renderer,
        artifact_store=ArtifactStore(tmp_path),
        verify_base_url=VERIFY_BASE_URL,
        qr_size=120,
    )


class TestGenerationPipeline:
    """Validated -> Signed -> Rendered."""

    def test_generates_signed_certificate(self, pipeline, engine, html_request, html_converter):
        result = pipeline.run(OWNER_ID, html_request)
        certificate = result.certificate

        uuid.UUID(certificate.unique_id)
        assert certificate.status == CertificateStatus.GENERATED
        assert certificate.customer_id == OWNER_ID
        assert certificate.template_id == HTML_TEMPLATE_ID
        assert certificate.signature_key_id == "v1"
        assert certificate.download_count == 0
        assert certificate.recipient_name == "Alice"
        assert json.loads(certificate.certificate_data) == {"course": "Security", "name": "Alice"}
        assert engine.verify(certificate.unique_id, html_request.data, "v1", certificate.digital_signature)

        assert result.artifact.startswith(b"%PDF")
        html = html_converter.calls[0]
        assert "Hello Alice, course Security" in html
        assert f"Certificate ID: {certificate.unique_id}" in html
        assert "data:image/png;base64," in html

    def test_qr_payload(self, pipeline, html_request):
        certificate = pipeline.run(OWNER_ID, html_request).certificate
        parsed = urlparse(certificate.qr_payload)

        assert f"{parsed.scheme}://{parsed.netloc}" == VERIFY_BASE_URL
        assert parsed.path == f"/verify/{certificate.unique_id}"
        query = parse_qs(parsed.query)
        assert query["customer"] == [str(OWNER_ID)]
        assert query["signature"] == [certificate.digital_signature]
        assert unquote(parsed.query.split("signature=")[1]) == certificate.digital_signature

    def test_file_path_follows_storage_layout(self, pipeline, html_request, tmp_path):
        certificate = pipeline.run(OWNER_ID, html_request).certificate
        assert certificate.file_path == str(ArtifactStore(tmp_path).path_for(certificate.unique_id))

    def test_pipeline_does_not_write(self, pipeline, html_request, tmp_path):
        pipeline.run(OWNER_ID, html_request)
        assert list(tmp_path.iterdir()) == []

    def test_audit_event(self, pipeline, html_request):
        result = pipeline.run(OWNER_ID, html_request)
        event = result.audit_event

        assert event.action == AuditAction.GENERATE_CERTIFICATE
        assert event.entity_type == "CERTIFICATE"
        assert event.entity_id == result.certificate.unique_id
        assert event.customer_id == OWNER_ID
        assert event.details["template_id"] == HTML_TEMPLATE_ID
        assert "digital_signature" not in event.details

    def test_plain_template(self, pipeline, plain_request, html_converter):
        result = pipeline.run(OWNER_ID, plain_request)
        assert result.artifact.startswith(b"%PDF")
        assert html_converter.calls == []

    def test_foreign_template_denied(self, pipeline):
        request = GenerationRequest(template_id=FOREIGN_TEMPLATE_ID, data={"name": "x"})
        with pytest.raises(AccessDenied):
            pipeline.run(OWNER_ID, request)

    def test_missing_template_denied(self, pipeline):
        with pytest.raises(AccessDenied):
            pipeline.run(OWNER_ID, GenerationRequest(template_id=999, data={}))

    def test_missing_customer(self, templates, engine, renderer, tmp_path, html_request):
        pipeline = GenerationPipeline(
            templates, InMemoryCustomerStore(), engine, renderer, ArtifactStore(tmp_path), VERIFY_BASE_URL
        )
        with pytest.raises(NotFoundError):
            pipeline.run(OWNER_ID, html_request)

    def test_render_failure_propagates(self, templates, customers, engine, tmp_path, html_request):
        def broken(html):
            raise RuntimeError("converter crashed")

        pipeline = GenerationPipeline(
            templates, customers, engine, ArtifactRenderer(html_converter=broken),
            ArtifactStore(tmp_path), VERIFY_BASE_URL,
        )
        with pytest.raises(RenderFailure):
            pipeline.run(OWNER_ID, html_request)

    def test_unexpected_renderer_error_is_render_failure(self, templates, customers, engine, tmp_path, html_request):
        class Exploding:
            def render(self, *args):
                raise KeyError("boom")

        pipeline = GenerationPipeline(templates, customers, engine, Exploding(), ArtifactStore(tmp_path), VERIFY_BASE_URL)
        with pytest.raises(RenderFailure):
            pipeline.run(OWNER_ID, html_request)

    def test_signing_failure_halts_before_render(self, pipeline, html_request, html_converter):
        class BrokenSigner:
            def current_key_id(self):
                return "v1"

            def sign(self, unique_id, data, key_id=None):
                raise SigningFailure("HSM unavailable")

        pipeline.signer = BrokenSigner()
        with pytest.raises(SigningFailure):
            pipeline.run(OWNER_ID, html_request)
        assert html_converter.calls == []

    def test_uncanonicalizable_data_rejected(self, pipeline):
        request = GenerationRequest.model_construct(template_id=HTML_TEMPLATE_ID, data={"n": 1})
        with pytest.raises(CanonicalizationError):
            pipeline.run(OWNER_ID, request)

    def test_injected_id_factory(self, templates, customers, engine, renderer, tmp_path, html_request):
        pipeline = GenerationPipeline(
            templates, customers, engine, renderer, ArtifactStore(tmp_path), VERIFY_BASE_URL,
            id_factory=lambda: "fixed-id-0001",
        )
        assert pipeline.run(OWNER_ID, html_request).certificate.unique_id == "fixed-id-0001"


def test_new_unique_id_is_uuid4():
    assert uuid.UUID(new_unique_id()).version == 4


def test_concurrent_generation_yields_distinct_ids(templates, customers, engine, tmp_path):
    pipeline = GenerationPipeline(
        templates=templates,
        customers=customers,
        signer=engine,
        renderer=StubRenderer(),
        artifact_store=ArtifactStore(tmp_path),
        verify_base_url=VERIFY_BASE_URL,
        qr_encoder=fast_qr_encoder,
    )
    request = GenerationRequest(template_id=JSON_TEMPLATE_ID, data={"name": "n", "course": "c"})

    with ThreadPoolExecutor(max_workers=32) as pool:
        ids = list(pool.map(lambda _: pipeline.run(OWNER_ID, request).certificate.unique_id, range(10_000)))

    assert len(ids) == 10_000
    assert len(set(ids)) == 10_000
