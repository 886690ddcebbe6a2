"""
CertKit CLI Main Module

Command-line interface for CertKit using Typer.
Provides granular control over the certificate pipeline: inspect template
placeholders, sign and verify data maps, render single certificates, run
batches and clean up orphaned artifacts.

Signing keys are read from the environment (see ``core.config``).
"""

import json
import os
import sys
from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional, Set

import typer
from pydantic import ValidationError

from core.config import Settings, load_settings
from core.errors import CertKitError
from core.logging import setup_logging
from core.models import AuditAction, Customer, GenerationRequest, Template, TemplateType
from core.repositories import InMemoryCustomerStore, InMemoryTemplateStore, JsonlAuditSink
from core.service import CertificateService, build_service
from core.signature import engine_from_settings
from core.storage import ArtifactStore
from core.templating import extract_placeholders

AUDIT_LOG_NAME = "audit.jsonl"
CLI_TEMPLATE_ID = 1

app = typer.Typer(
    name="certkit",
    help="CertKit - Signed certificate generation and verification",
    add_completion=False
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log pipeline events to stderr")
) -> None:
    """CertKit - Signed certificate generation and verification."""
    if verbose:
        setup_logging(level=os.environ.get("LOG_LEVEL", "INFO"), format_type="text", stream=sys.stderr)


def _settings() -> Settings:
    try:
        return load_settings()
    except CertKitError as e:
        typer.echo(f"Configuration error: {e.message}", err=True)
        raise typer.Exit(2)


def _read_data_map(path: Path) -> Dict[str, Optional[str]]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        typer.echo(f"Cannot read data file {path}: {e}", err=True)
        raise typer.Exit(1)
    if not isinstance(data, dict):
        typer.echo(f"Data file must contain a JSON object: {path}", err=True)
        raise typer.Exit(1)
    return data


def _build_cli_service(
    settings: Settings,
    template_path: Path,
    template_type: TemplateType,
    customer_id: int,
    storage_dir: Optional[Path]
) -> CertificateService:
    """Service over a single file-backed template and an audit log in the storage root."""
    if not template_path.exists():
        typer.echo(f"Template not found: {template_path}", err=True)
        raise typer.Exit(1)
    if storage_dir is not None:
        settings = replace(settings, storage_path=storage_dir)

    templates = InMemoryTemplateStore([Template(
        id=CLI_TEMPLATE_ID,
        customer_id=customer_id,
        name=template_path.stem,
        content=template_path.read_text(encoding="utf-8"),
        type=template_type,
    )])
    customers = InMemoryCustomerStore([Customer(id=customer_id, name=f"customer-{customer_id}")])
    audit_sink = JsonlAuditSink(settings.storage_path / AUDIT_LOG_NAME)
    return build_service(settings, templates, customers, audit_sink=audit_sink)


@app.command()
def placeholders(
    template: Path = typer.Argument(..., help="Path to template file")
) -> None:
    """List the distinct {{placeholder}} names in a template, in first-seen order."""
    if not template.exists():
        typer.echo(f"Template not found: {template}", err=True)
        raise typer.Exit(1)
    names = extract_placeholders(template.read_text(encoding="utf-8"))
    typer.echo(json.dumps(names, ensure_ascii=False))


@app.command()
def sign(
    unique_id: str = typer.Option(..., "--unique-id", help="Certificate unique id"),
    data_file: Path = typer.Option(..., "--data", help="JSON object of placeholder values"),
    key_id: Optional[str] = typer.Option(None, "--key-id", help="Signing key id (default: current key)")
) -> None:
    """Sign a certificate data map and print the signature."""
    settings = _settings()
    data = _read_data_map(data_file)
    try:
        engine = engine_from_settings(settings)
        signature = engine.sign(unique_id, data, key_id)
    except CertKitError as e:
        typer.echo(f"Signing failed: {e.message}", err=True)
        raise typer.Exit(1)

    typer.echo(json.dumps({
        "unique_id": unique_id,
        "key_id": key_id or engine.current_key_id(),
        "signature": signature,
    }))


@app.command()
def verify(
    unique_id: str = typer.Option(..., "--unique-id", help="Certificate unique id"),
    data_file: Path = typer.Option(..., "--data", help="JSON object of placeholder values"),
    signature: str = typer.Option(..., "--signature", help="Signature to check"),
    key_id: Optional[str] = typer.Option(None, "--key-id", help="Key id the signature was made with")
) -> None:
    """
    Verify a signature over a data map.

    Exits 0 when valid, 1 when invalid.
    """
    settings = _settings()
    data = _read_data_map(data_file)
    engine = engine_from_settings(settings)
    valid = engine.verify(unique_id, data, key_id or engine.current_key_id(), signature)

    if valid:
        typer.echo("✓ Signature valid")
    else:
        typer.echo("✗ Signature invalid")
        raise typer.Exit(1)


@app.command()
def render(
    template: Path = typer.Option(..., "--template", help="Path to template file"),
    data_file: Path = typer.Option(..., "--data", help="JSON object of placeholder values"),
    template_type: TemplateType = typer.Option(TemplateType.HTML, "--type", help="Template type"),
    customer_id: int = typer.Option(1, "--customer-id", help="Issuing customer id"),
    recipient_name: Optional[str] = typer.Option(None, "--recipient-name"),
    recipient_email: Optional[str] = typer.Option(None, "--recipient-email"),
    storage_dir: Optional[Path] = typer.Option(None, "--storage-dir", help="Artifact root (default: CERT_STORAGE_PATH)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Also copy the PDF here")
) -> None:
    """Generate, sign and store a single certificate."""
    settings = _settings()
    service = _build_cli_service(settings, template, template_type, customer_id, storage_dir)
    try:
        request = GenerationRequest(
            template_id=CLI_TEMPLATE_ID,
            data=_read_data_map(data_file),
            recipient_name=recipient_name,
            recipient_email=recipient_email,
        )
    except ValidationError as e:
        typer.echo(f"Invalid certificate request: {e}", err=True)
        raise typer.Exit(1)

    try:
        certificate = service.generate(customer_id, request)
        if output is not None:
            output.write_bytes(service.artifact_store.read(certificate.unique_id))
    except CertKitError as e:
        typer.echo(f"Certificate generation failed [{e.code}]: {e.message}", err=True)
        raise typer.Exit(1)
    finally:
        service.shutdown()

    typer.echo("✓ Certificate generated")
    typer.echo(f"  Unique ID: {certificate.unique_id}")
    typer.echo(f"  Key ID: {certificate.signature_key_id}")
    typer.echo(f"  Signature: {certificate.digital_signature}")
    typer.echo(f"  Path: {certificate.file_path}")
    if output is not None:
        typer.echo(f"  Copied to: {output}")


@app.command()
def batch(
    template: Path = typer.Option(..., "--template", help="Path to template file"),
    items_file: Path = typer.Option(..., "--items", help="JSON array of placeholder value objects"),
    template_type: TemplateType = typer.Option(TemplateType.HTML, "--type", help="Template type"),
    customer_id: int = typer.Option(1, "--customer-id", help="Issuing customer id"),
    storage_dir: Optional[Path] = typer.Option(None, "--storage-dir", help="Artifact root (default: CERT_STORAGE_PATH)"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Batch deadline in seconds"),
    output_json: Optional[Path] = typer.Option(None, "--output-json", help="Save per-item outcomes as JSON")
) -> None:
    """
    Generate certificates for every data set in a JSON array.

    Each item succeeds or fails on its own; the exit code is 1 when any item
    did not succeed.
    """
    settings = _settings()
    try:
        items = json.loads(items_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        typer.echo(f"Cannot read items file {items_file}: {e}", err=True)
        raise typer.Exit(1)
    if not isinstance(items, list):
        typer.echo("Items file must contain a JSON array", err=True)
        raise typer.Exit(1)

    service = _build_cli_service(settings, template, template_type, customer_id, storage_dir)
    try:
        job = service.generate_batch(customer_id, CLI_TEMPLATE_ID, items, timeout=timeout)
    except CertKitError as e:
        typer.echo(f"Batch rejected [{e.code}]: {e.message}", err=True)
        raise typer.Exit(1)
    finally:
        service.shutdown()

    summary = job.summary()
    typer.echo(f"Batch {job.batch_id}")
    typer.echo(f"  Requested: {job.total_requested}")
    typer.echo(f"  Succeeded: {job.succeeded}")
    typer.echo(f"  Failed: {job.failed}")
    typer.echo(f"  Timed out: {job.timed_out}")

    for outcome in job.outcomes:
        if not outcome.ok:
            typer.echo(f"  ✗ item {outcome.index}: {outcome.error_code} {outcome.error_message}")

    if output_json is not None:
        summary["outcomes"] = [outcome.to_dict() for outcome in job.outcomes]
        output_json.write_text(json.dumps(summary, indent=2), encoding="utf-8")
        typer.echo(f"  Report: {output_json}")

    if job.succeeded != job.total_requested:
        raise typer.Exit(1)


def _known_ids_from_audit_log(path: Path) -> Set[str]:
    if not path.exists():
        return set()
    return {
        event.entity_id
        for event in JsonlAuditSink(path).read_events()
        if event.action == AuditAction.GENERATE_CERTIFICATE
    }


@app.command()
def cleanup(
    storage_dir: Optional[Path] = typer.Option(None, "--storage-dir", help="Artifact root (default: CERT_STORAGE_PATH)"),
    grace_hours: Optional[int] = typer.Option(None, "--grace-hours", help="Minimum orphan age (default: CERT_ORPHAN_GRACE_HOURS)"),
    known_ids_file: Optional[Path] = typer.Option(None, "--known-ids", help="File of certificate ids to keep, one per line"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be cleaned without removing files")
) -> None:
    """
    Remove rendered artifacts that have no certificate record.

    Known ids come from the storage root's audit log plus ``--known-ids``.
    """
    settings = _settings()
    root = storage_dir or settings.storage_path
    grace = grace_hours if grace_hours is not None else settings.orphan_grace_hours

    typer.echo(f"{'DRY RUN: ' if dry_run else ''}Starting orphan artifact cleanup")
    typer.echo(f"Storage directory: {root}")
    typer.echo(f"Grace period: {grace} hours")

    if not root.exists():
        typer.echo(f"Storage directory does not exist: {root}")
        return

    known: Set[str] = _known_ids_from_audit_log(root / AUDIT_LOG_NAME)
    if known_ids_file is not None:
        try:
            lines: List[str] = known_ids_file.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError) as e:
            typer.echo(f"Cannot read known ids file {known_ids_file}: {e}", err=True)
            raise typer.Exit(1)
        known.update(line.strip() for line in lines if line.strip())

    stats = ArtifactStore(root).cleanup_orphan_artifacts(known, timedelta(hours=grace), dry_run=dry_run)

    typer.echo("\nCleanup Statistics:")
    typer.echo(f"  Orphaned artifacts: {stats['orphaned']}")
    typer.echo(f"  {'Would remove' if dry_run else 'Removed'}: {stats['removed']}")
    typer.echo(f"  Failed: {stats['failed']}")
    if not dry_run and stats['freed_mb'] > 0:
        typer.echo(f"  Storage freed: {stats['freed_mb']} MB")

    if stats['failed']:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
