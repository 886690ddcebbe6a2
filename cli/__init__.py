"""
CertKit CLI Module

Command-line interface for CertKit using Typer.

Available commands:
- placeholders: List placeholders in a template
- sign / verify: Sign or check a certificate data map
- render: Generate a single certificate
- batch: Generate certificates for many data sets
- cleanup: Remove orphaned artifacts
"""
