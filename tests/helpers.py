"""
CertKit Test Helper Utilities

Shared constants, template bodies and lightweight renderer doubles used
across the CertKit test suite.

Example usage:
    from tests.helpers import OWNER_ID, FakeHtmlConverter

    converter = FakeHtmlConverter()
    renderer = ArtifactRenderer(html_converter=converter)
"""

from typing import List, Optional

from core.models import Template

OWNER_ID = 1
OTHER_OWNER_ID = 2
HTML_TEMPLATE_ID = 10
JSON_TEMPLATE_ID = 11
FOREIGN_TEMPLATE_ID = 20

TEST_SECRET = b"test-signing-secret"
VERIFY_BASE_URL = "https://certs.example.org"

HTML_TEMPLATE = """<html><body>
<h1>Certificate of Completion</h1>
<p>Hello {{name}}, course {{course}}</p>
</body></html>"""

PLAIN_TEMPLATE = "Certificate of Completion\n\nHello {{name}}, course {{course}}"


class FakeHtmlConverter:
    """Records the HTML it is given and returns a PDF-looking byte string."""

    def __init__(self):
        self.calls: List[str] = []

    def __call__(self, html: str) -> bytes:
        self.calls.append(html)
        return b"%PDF-1.4\n% fake\n" + html.encode("utf-8")


class StubRenderer:
    """Returns a fixed document without any layout work."""

    def render(self, template: Template, substituted_content: str, unique_id: str, qr_png: Optional[bytes]) -> bytes:
        return b"%PDF-stub " + unique_id.encode("ascii")


def fast_qr_encoder(payload: str, size: int) -> bytes:
    return b"qr"
