"""
CertKit Certificate Artifact Renderer

Turns substituted template content into the final certificate PDF with an
embedded verification QR code and a low-emphasis ``Certificate ID`` footer.

HTML templates are converted with WeasyPrint after the QR image and the
watermark are spliced into the markup: the QR replaces a ``{{qr_image}}``
token when the template author placed one, otherwise it is pinned to the
top-left corner. Structured (JSON / PDF_TEMPLATE) templates are laid out
with ReportLab as a minimal single document with the QR at a fixed page
position.

Example usage:
    from core.render_certificate import ArtifactRenderer, build_verification_url, encode_qr

    url = build_verification_url("https://certs.example.org", unique_id, 42, signature)
    pdf_bytes = ArtifactRenderer().render(template, content, unique_id, encode_qr(url))
"""

import base64
from io import BytesIO
from typing import Callable, Mapping, Optional
from urllib.parse import quote
from xml.sax.saxutils import escape

import qrcode
from PIL import Image as PILImage
from reportlab.lib import colors
from reportlab.lib.enums import TA_LEFT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer

from core.errors import CertKitError, RenderFailure
from core.logging import get_logger
from core.models import Template, TemplateType
from core.templating import QR_IMAGE_PLACEHOLDER, substitute

# WeasyPrint loads the system Pango libraries at import time and raises OSError without them
try:
    from weasyprint import HTML as WeasyHTML
    HTML_RENDERING_AVAILABLE = True
except OSError:
    WeasyHTML = None
    HTML_RENDERING_AVAILABLE = False

logger = get_logger(__name__)

PAGE_WIDTH, PAGE_HEIGHT = A4

# Fixed QR placement for structured templates: 0.5in margin, 100pt square
QR_MARGIN_PT = 36.0
QR_DISPLAY_PT = 100.0
BODY_MARGIN = 20 * mm

COLOR_NAVY = colors.HexColor("#102A43")
COLOR_SLATE = colors.HexColor("#334E68")
COLOR_MID_GREY = colors.HexColor("#9FB3C8")
COLOR_WATERMARK = colors.HexColor("#CCCCCC")

DEFAULT_QR_SIZE = 200

WATERMARK_HTML = (
    "<div style='position: fixed; bottom: 10px; right: 10px; font-size: 8px; color: #ccc;'>"
    "Certificate ID: {unique_id}</div>"
)
QR_INLINE_HTML = '<img src="data:image/png;base64,{b64}" style="width:100px;height:100px;"/>'
QR_PINNED_HTML = (
    '<img src="data:image/png;base64,{b64}" style="position: fixed; left: 10px; top: 10px; '
    'width: 100px; height: 100px; z-index:9999;"/>'
)

PREVIEW_PAGE_HTML = """<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <style>
        @page {{ size: A4 landscape; margin: 0; }}
        body {{ margin: 0; padding: 20px; font-family: 'Arial', sans-serif; }}
        * {{ box-sizing: border-box; }}
    </style>
</head>
<body>
{content}
</body>
</html>
"""

HtmlConverter = Callable[[str], bytes]


def build_verification_url(base_url: str, unique_id: str, customer_id: int, signature: str) -> str:
    """
    Build the verification string embedded in the QR code.

    Format: ``<base>/verify/<uniqueId>?customer=<customerId>&signature=<urlEncodedSignature>``
    """
    base = (base_url or "").rstrip("/")
    encoded_signature = quote(signature, safe="")
    return f"{base}/verify/{unique_id}?customer={customer_id}&signature={encoded_signature}"


def encode_qr(payload: str, size: int = DEFAULT_QR_SIZE) -> bytes:
    """
    Encode ``payload`` as a square PNG QR code of ``size`` pixels.

    The same payload and size always produce the same image bytes.

    Raises:
        RenderFailure: If the payload cannot be encoded
    """
    if size < 21:
        raise RenderFailure("QR size must be at least 21 pixels", details={"size": size})

    try:
        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=2,
        )
        qr.add_data(payload)
        qr.make(fit=True)

        raw = BytesIO()
        qr.make_image(fill_color="black", back_color="white").save(raw, format="PNG")
        raw.seek(0)

        with PILImage.open(raw) as img:
            resized = img.convert("L").resize((size, size), PILImage.Resampling.NEAREST)
            out = BytesIO()
            resized.save(out, format="PNG", optimize=False)
    except (ValueError, qrcode.exceptions.DataOverflowError) as e:
        raise RenderFailure("Failed to encode QR code", details={"error": str(e)}) from e

    return out.getvalue()


def _qr_base64(qr_png: bytes) -> str:
    return base64.b64encode(qr_png).decode("ascii")


def add_watermark_html(html: str, unique_id: str) -> str:
    """Append the ``Certificate ID`` footer before ``</body>`` or at the end."""
    watermark = WATERMARK_HTML.format(unique_id=escape(unique_id))
    if "</body>" in html:
        return html.replace("</body>", watermark + "</body>")
    return html + watermark


def compose_html(content: str, unique_id: str, qr_png: Optional[bytes]) -> str:
    """
    Splice the watermark and the QR image into substituted HTML.

    Args:
        content: HTML with request placeholders already substituted
        unique_id: Certificate identifier for the watermark
        qr_png: QR image bytes, or None to skip QR embedding

    Returns:
        HTML ready for PDF conversion
    """
    html = add_watermark_html(content, unique_id)
    if not qr_png:
        return html

    b64 = _qr_base64(qr_png)
    token = "{{" + QR_IMAGE_PLACEHOLDER + "}}"
    if token in html:
        return html.replace(token, QR_INLINE_HTML.format(b64=b64))

    pinned = QR_PINNED_HTML.format(b64=b64)
    if "</body>" in html:
        return html.replace("</body>", pinned + "</body>")
    return pinned + html


def wrap_html_with_styles(content: str) -> str:
    """Wrap an HTML fragment in a styled A4 page unless it is already a document."""
    head = content.strip().lower()
    if head.startswith("<!doctype") or head.startswith("<html"):
        return content
    return PREVIEW_PAGE_HTML.format(content=content)


def render_html_pdf(html: str) -> bytes:
    """
    Convert HTML to PDF with WeasyPrint.

    Raises:
        RenderFailure: If WeasyPrint is unavailable or conversion fails
    """
    if not HTML_RENDERING_AVAILABLE:
        raise RenderFailure("HTML rendering is unavailable: WeasyPrint could not be loaded")

    try:
        return WeasyHTML(string=html).write_pdf()
    except Exception as e:
        raise RenderFailure("Failed to convert HTML to PDF", details={"error": str(e)}) from e


def _draw_page_decorations(canvas_obj, doc, unique_id: str, qr_png: Optional[bytes]) -> None:
    """Borders, the Certificate ID footer and (first page only) the QR code."""
    canvas_obj.saveState()

    canvas_obj.setStrokeColor(COLOR_MID_GREY)
    canvas_obj.setLineWidth(0.5)
    canvas_obj.line(BODY_MARGIN, BODY_MARGIN, PAGE_WIDTH - BODY_MARGIN, BODY_MARGIN)

    canvas_obj.setFont("Helvetica-Oblique", 7)
    canvas_obj.setFillColor(COLOR_WATERMARK)
    canvas_obj.drawRightString(PAGE_WIDTH - BODY_MARGIN, BODY_MARGIN - 5 * mm, f"Certificate ID: {unique_id}")

    if qr_png and canvas_obj.getPageNumber() == 1:
        canvas_obj.drawImage(
            ImageReader(BytesIO(qr_png)),
            QR_MARGIN_PT,
            PAGE_HEIGHT - QR_MARGIN_PT - QR_DISPLAY_PT,
            width=QR_DISPLAY_PT,
            height=QR_DISPLAY_PT,
        )

    canvas_obj.restoreState()


def render_plain_pdf(content: str, unique_id: str, qr_png: Optional[bytes]) -> bytes:
    """
    Lay out structured template text as a minimal A4 certificate.

    The text is treated as plain text (markup characters are escaped), the
    ``Certificate ID`` follows the body, and the QR code sits at the top-left.
    Output is byte-for-byte reproducible for identical inputs.
    """
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=BODY_MARGIN,
        rightMargin=BODY_MARGIN,
        topMargin=QR_MARGIN_PT + QR_DISPLAY_PT + 6 * mm,
        bottomMargin=BODY_MARGIN + 4 * mm,
        title=f"Certificate {unique_id}",
        invariant=1,
    )

    body_style = ParagraphStyle(
        'CertBody',
        fontName='Helvetica',
        fontSize=11,
        leading=15,
        textColor=COLOR_NAVY,
        alignment=TA_LEFT,
        spaceAfter=2 * mm,
    )
    id_style = ParagraphStyle(
        'CertId',
        fontName='Helvetica-Oblique',
        fontSize=8,
        textColor=COLOR_SLATE,
    )

    elements = []
    for block in content.split("\n\n"):
        text = escape(block).replace("\n", "<br/>")
        if text.strip():
            elements.append(Paragraph(text, body_style))
    elements.append(Spacer(1, 8 * mm))
    elements.append(Paragraph(f"Certificate ID: {escape(unique_id)}", id_style))

    def on_page(canvas_obj, page_doc):
        _draw_page_decorations(canvas_obj, page_doc, unique_id, qr_png)

    doc.build(elements, onFirstPage=on_page, onLaterPages=on_page)
    return buffer.getvalue()


class ArtifactRenderer:
    """
    Render certificate documents for any template type.

    Args:
        html_converter: HTML-to-PDF function (WeasyPrint by default)
    """

    def __init__(self, html_converter: Optional[HtmlConverter] = None):
        self.html_converter = html_converter or render_html_pdf

    def render(self, template: Template, substituted_content: str, unique_id: str, qr_png: Optional[bytes]) -> bytes:
        """
        Produce the final certificate PDF.

        Raises:
            RenderFailure: On malformed content, encoder or converter errors
        """
        try:
            if template.type == TemplateType.HTML:
                html = compose_html(substituted_content, unique_id, qr_png)
                pdf_bytes = self.html_converter(html)
            else:
                pdf_bytes = render_plain_pdf(substituted_content, unique_id, qr_png)
        except CertKitError:
            raise
        except Exception as e:
            logger.error(
                "Certificate rendering failed",
                extra={"unique_id": unique_id, "template_id": template.id, "error": str(e)},
            )
            raise RenderFailure(
                "Failed to render certificate",
                details={"template_id": template.id, "error": str(e)},
            ) from e

        if not pdf_bytes:
            raise RenderFailure("Renderer produced an empty document", details={"template_id": template.id})
        return pdf_bytes

    def render_preview(self, content: str, values: Optional[Mapping[str, Optional[str]]]) -> bytes:
        """Render a substituted HTML preview (template simulation) without QR or watermark."""
        html = wrap_html_with_styles(substitute(content, values) or "")
        try:
            return self.html_converter(html)
        except CertKitError:
            raise
        except Exception as e:
            raise RenderFailure("Failed to render preview", details={"error": str(e)}) from e
