"""
CertKit Test Configuration and Shared Fixtures

Provides pytest fixtures for settings, signing keys, in-memory stores and a
fully wired certificate service. HTML rendering goes through a fake
converter so the suite does not need WeasyPrint's system libraries; tests
that exercise WeasyPrint itself skip when it is unavailable.

Example usage:
    def test_generate(service, html_request):
        certificate = service.generate(OWNER_ID, html_request)
        assert service.verify(certificate.unique_id, certificate.digital_signature)
"""

from pathlib import Path
from types import MappingProxyType

import pytest

from core.config import Settings
from core.models import Customer, GenerationRequest, Template, TemplateType
from core.render_certificate import ArtifactRenderer
from core.repositories import InMemoryAuditSink, InMemoryCertificateStore, InMemoryCustomerStore, InMemoryTemplateStore
from core.service import CertificateService, build_service
from core.signature import Keyring, SignatureEngine

from tests.helpers import (
    FOREIGN_TEMPLATE_ID,
    HTML_TEMPLATE,
    HTML_TEMPLATE_ID,
    JSON_TEMPLATE_ID,
    OTHER_OWNER_ID,
    OWNER_ID,
    PLAIN_TEMPLATE,
    TEST_SECRET,
    VERIFY_BASE_URL,
    FakeHtmlConverter,
)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        signing_keys=MappingProxyType({"v1": TEST_SECRET}),
        current_key_id="v1",
        storage_path=tmp_path / "certificates",
        verify_base_url=VERIFY_BASE_URL,
        batch_max_workers=8,
    )


@pytest.fixture
def keyring():
    return Keyring({"v1": TEST_SECRET}, current_key_id="v1")


@pytest.fixture
def engine(keyring):
    return SignatureEngine(keyring)


@pytest.fixture
def html_converter():
    return FakeHtmlConverter()


@pytest.fixture
def renderer(html_converter):
    return ArtifactRenderer(html_converter=html_converter)


@pytest.fixture
def templates():
    return InMemoryTemplateStore([
        Template(id=HTML_TEMPLATE_ID, customer_id=OWNER_ID, name="Course", content=HTML_TEMPLATE),
        Template(
            id=JSON_TEMPLATE_ID,
            customer_id=OWNER_ID,
            name="Plain",
            content=PLAIN_TEMPLATE,
            type=TemplateType.JSON,
        ),
        Template(id=FOREIGN_TEMPLATE_ID, customer_id=OTHER_OWNER_ID, name="Foreign", content=HTML_TEMPLATE),
    ])


@pytest.fixture
def customers():
    return InMemoryCustomerStore([
        Customer(id=OWNER_ID, name="Acme Training", email="certs@acme.example"),
        Customer(id=OTHER_OWNER_ID, name="Other Org"),
    ])


@pytest.fixture
def certificate_store():
    return InMemoryCertificateStore()


@pytest.fixture
def audit_sink():
    return InMemoryAuditSink()


@pytest.fixture
def service(settings, templates, customers, certificate_store, audit_sink, renderer) -> CertificateService:
    svc = build_service(
        settings,
        templates,
        customers,
        certificates=certificate_store,
        audit_sink=audit_sink,
        renderer=renderer,
    )
    yield svc
    svc.shutdown()


@pytest.fixture
def html_request():
    return GenerationRequest(
        template_id=HTML_TEMPLATE_ID,
        data={"name": "Alice", "course": "Security"},
        recipient_name="Alice",
        recipient_email="alice@example.org",
    )


@pytest.fixture
def plain_request():
    return GenerationRequest(template_id=JSON_TEMPLATE_ID, data={"name": "Bob", "course": "Networking"})


@pytest.fixture
def storage_root(settings) -> Path:
    return settings.storage_path
