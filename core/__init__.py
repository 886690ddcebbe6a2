"""
CertKit Core Module

This module contains the core business logic for CertKit including:
- Template placeholder extraction and substitution
- HMAC-SHA256 signing and verification with key rotation
- QR code and PDF artifact rendering
- The generation pipeline, batch coordination and certificate service

The core module is framework-agnostic and can be used independently of
the web interface or CLI.

Example usage:
    from core.templating import extract_placeholders
    from core.signature import SignatureEngine, Keyring
    from core.service import build_service
"""

__version__ = "0.1.0"
