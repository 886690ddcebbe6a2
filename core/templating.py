"""
Template placeholder extraction and substitution.

Placeholders are ``{{name}}`` tokens. Extraction is non-greedy (the first
``}}`` closes a token) and trims whitespace inside the braces; substitution
is literal text replacement of ``{{key}}`` for each supplied key and is not
recursive.

Known limitation: substituting twice with the same map is not idempotent
when a value itself contains ``{{...}}`` text, because the second pass
replaces tokens introduced by the first.

Example usage:
    >>> content = "Hello {{name}}, course {{course}}"
    >>> extract_placeholders(content)
    ['name', 'course']
    >>> substitute(content, {"name": "Alice", "course": "Security"})
    'Hello Alice, course Security'
"""

import re
from typing import List, Mapping, Optional

from core.models import TemplatePreview

PLACEHOLDER_PATTERN = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)

# Reserved token replaced by the artifact renderer, never by request data
QR_IMAGE_PLACEHOLDER = "qr_image"


def extract_placeholders(content: Optional[str]) -> List[str]:
    """
    Return the distinct placeholder names in ``content`` in first-seen order.

    Args:
        content: Template text, may be None or blank

    Returns:
        Deduplicated, whitespace-trimmed, non-empty placeholder names
    """
    if content is None or not content.strip():
        return []

    seen: List[str] = []
    for match in PLACEHOLDER_PATTERN.finditer(content):
        name = match.group(1).strip()
        if name and name not in seen:
            seen.append(name)
    return seen


def substitute(content: Optional[str], values: Optional[Mapping[str, Optional[str]]]) -> Optional[str]:
    """
    Replace every literal ``{{key}}`` with its value.

    Placeholders without a matching key are left untouched and keys without
    a matching placeholder are ignored. A ``None`` value substitutes as the
    empty string.
    """
    if content is None or not values:
        return content

    # One pass over the original text; inserted values are never re-scanned
    tokens = re.compile("|".join(re.escape("{{" + key + "}}") for key in values))

    def _replace(match: "re.Match[str]") -> str:
        value = values[match.group(0)[2:-2]]
        return value if value is not None else ""

    return tokens.sub(_replace, content)


def missing_placeholders(content: Optional[str], values: Optional[Mapping[str, Optional[str]]]) -> List[str]:
    """Placeholders in ``content`` that have no key in ``values`` (the QR token excepted)."""
    supplied = values or {}
    return [
        name for name in extract_placeholders(content)
        if name not in supplied and name != QR_IMAGE_PLACEHOLDER
    ]


def simulate(content: Optional[str], values: Optional[Mapping[str, Optional[str]]]) -> TemplatePreview:
    """Preview a template with test values without issuing anything."""
    missing = missing_placeholders(content, values)
    message = "Template simulation successful"
    if missing:
        message = f"Template simulation successful; no value for: {', '.join(missing)}"

    return TemplatePreview(
        preview_html=substitute(content, values) or "",
        extracted_placeholders=extract_placeholders(content),
        missing_placeholders=missing,
        message=message,
    )
