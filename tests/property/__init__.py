"""
Property-based tests for CertKit signing.

Hypothesis-driven checks of canonicalization and signature invariants
across randomly generated certificate data.
"""
