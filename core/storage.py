"""
Certificate artifact storage and orphan cleanup.

Artifacts live at ``<root>/<uid[:2]>/<uid>/certificate.pdf``. Writes go to a
temporary file in the target directory and are published with
``os.replace`` so a reader never sees a partially written certificate.

A rendered artifact whose certificate record was never saved (the record
write failed after publish, or the process died in between) is an orphan.
Orphans are never served by verification; ``cleanup_orphan_artifacts``
removes those older than a grace period.

Example usage:
    >>> store = ArtifactStore(Path("./certificates"))
    >>> path = store.write(unique_id, pdf_bytes)
    >>> store.read(unique_id) == pdf_bytes
    True
    >>> store.cleanup_orphan_artifacts(known_ids={unique_id}, grace_period=timedelta(hours=24))
"""

import os
import re
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from core.errors import ArtifactIOError, ArtifactNotFoundError, CertKitError
from core.logging import get_logger

logger = get_logger(__name__)

ARTIFACT_FILENAME = "certificate.pdf"
UNIQUE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]{2,99}$")
SHARD_PATTERN = re.compile(r"^[A-Za-z0-9]{2}$")


class InvalidArtifactIdError(CertKitError):
    """Unique id contains characters that cannot be mapped to a storage path."""

    code = "INVALID_ARTIFACT_ID"
    status_code = 400


def is_path_safe(path: Path, base_dir: Path) -> bool:
    """
    Verify path is within base directory to prevent path traversal.

    Example:
        >>> base = Path("/app/certificates")
        >>> is_path_safe(base / "ab" / "abc123", base)
        True
        >>> is_path_safe(Path("/etc/passwd"), base)
        False
    """
    try:
        resolved_path = path.resolve()
        resolved_base = base_dir.resolve()
    except (OSError, ValueError):
        return False
    return resolved_path == resolved_base or resolved_base in resolved_path.parents


def calculate_directory_size(directory: Path) -> int:
    """Total size in bytes of all files under ``directory``."""
    total_size = 0
    for dirpath, _dirnames, filenames in os.walk(directory):
        for filename in filenames:
            file_path = Path(dirpath) / filename
            try:
                total_size += file_path.stat().st_size
            except OSError as e:
                logger.warning(f"Cannot access file {file_path}: {e}")
    return total_size


class ArtifactStore:
    """Filesystem store for rendered certificate documents keyed by unique id."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _artifact_dir(self, unique_id: str) -> Path:
        if not isinstance(unique_id, str) or not UNIQUE_ID_PATTERN.match(unique_id):
            raise InvalidArtifactIdError("Invalid certificate unique id", details={"unique_id": str(unique_id)[:100]})
        directory = self.root / unique_id[:2].lower() / unique_id
        if not is_path_safe(directory, self.root):
            raise InvalidArtifactIdError("Unsafe certificate path", details={"unique_id": unique_id})
        return directory

    def path_for(self, unique_id: str) -> Path:
        """Storage path for ``unique_id`` (whether or not it exists)."""
        return self._artifact_dir(unique_id) / ARTIFACT_FILENAME

    def write(self, unique_id: str, content: bytes) -> str:
        """
        Atomically publish ``content`` as the artifact for ``unique_id``.

        Returns:
            The artifact path as a string (the record's ``file_path``)

        Raises:
            ArtifactIOError: If the bytes cannot be written; no partial file remains
        """
        target = self.path_for(unique_id)
        temp_path: Optional[str] = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=target.parent, prefix=".tmp-", suffix=".pdf")
            with os.fdopen(fd, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, target)
            temp_path = None
        except OSError as e:
            logger.error(
                "Failed to write certificate artifact",
                extra={"unique_id": unique_id, "error": str(e)},
            )
            raise ArtifactIOError(
                "Failed to write certificate artifact",
                details={"unique_id": unique_id, "error": str(e)},
            ) from e
        finally:
            if temp_path is not None and os.path.exists(temp_path):
                os.unlink(temp_path)

        logger.info(
            "Certificate artifact published",
            extra={"unique_id": unique_id, "size_bytes": len(content)},
        )
        return str(target)

    def read(self, unique_id: str) -> bytes:
        """
        Return the artifact bytes for ``unique_id``.

        Raises:
            ArtifactNotFoundError: If no artifact exists
            ArtifactIOError: If the artifact exists but cannot be read
        """
        target = self.path_for(unique_id)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            raise ArtifactNotFoundError(
                "Certificate artifact not found",
                details={"unique_id": unique_id},
            ) from None
        except OSError as e:
            raise ArtifactIOError(
                "Failed to read certificate artifact",
                details={"unique_id": unique_id, "error": str(e)},
            ) from e

    def exists(self, unique_id: str) -> bool:
        return self.path_for(unique_id).is_file()

    def delete(self, unique_id: str) -> bool:
        """Remove the artifact directory for ``unique_id``; True if it is gone afterwards."""
        return remove_artifact_directory(self._artifact_dir(unique_id))

    def iter_artifact_dirs(self) -> Iterable[Tuple[str, Path]]:
        """Yield ``(unique_id, directory)`` for every artifact directory under the root."""
        if not self.root.exists():
            return
        for shard in sorted(self.root.iterdir()):
            if not shard.is_dir() or not SHARD_PATTERN.match(shard.name):
                continue
            for artifact_dir in sorted(shard.iterdir()):
                if not artifact_dir.is_dir() or not UNIQUE_ID_PATTERN.match(artifact_dir.name):
                    continue
                if not is_path_safe(artifact_dir, self.root):
                    logger.warning(f"Unsafe path detected, skipping: {artifact_dir}")
                    continue
                yield artifact_dir.name, artifact_dir

    def find_orphan_artifacts(
        self,
        known_ids: Iterable[str],
        grace_period: timedelta,
        now_provider: Optional[Callable[[], datetime]] = None
    ) -> List[Tuple[Path, datetime]]:
        """
        Find artifact directories with no certificate record, older than ``grace_period``.

        The grace period protects artifacts whose record is being saved right now.
        """
        known = set(known_ids)
        current_time = now_provider() if now_provider else datetime.now(timezone.utc)
        cutoff_time = current_time - grace_period

        orphans: List[Tuple[Path, datetime]] = []
        for unique_id, artifact_dir in self.iter_artifact_dirs():
            if unique_id in known:
                continue
            try:
                modified = datetime.fromtimestamp(artifact_dir.stat().st_mtime, tz=timezone.utc)
            except OSError as e:
                logger.warning(f"Cannot access artifact directory {artifact_dir}: {e}")
                continue
            if modified < cutoff_time:
                orphans.append((artifact_dir, modified))
        return orphans

    def cleanup_orphan_artifacts(
        self,
        known_ids: Iterable[str],
        grace_period: timedelta,
        dry_run: bool = False,
        now_provider: Optional[Callable[[], datetime]] = None
    ) -> Dict[str, float]:
        """
        Remove orphaned artifacts.

        Returns:
            Statistics: ``orphaned``, ``removed``, ``failed``, ``freed_bytes``, ``freed_mb``
        """
        orphans = self.find_orphan_artifacts(known_ids, grace_period, now_provider)
        stats: Dict[str, float] = {
            "orphaned": len(orphans),
            "removed": 0,
            "failed": 0,
            "freed_bytes": 0,
            "freed_mb": 0,
        }

        for artifact_dir, modified in orphans:
            size_bytes = calculate_directory_size(artifact_dir)
            if remove_artifact_directory(artifact_dir, dry_run=dry_run):
                stats["removed"] += 1
                if not dry_run:
                    stats["freed_bytes"] += size_bytes
            else:
                stats["failed"] += 1

        stats["freed_mb"] = round(stats["freed_bytes"] / (1024 * 1024), 2)
        logger.info(
            "Orphan artifact cleanup completed",
            extra={"statistics": stats, "dry_run": dry_run, "storage_dir": str(self.root)},
        )
        return stats


def remove_artifact_directory(artifact_path: Path, dry_run: bool = False) -> bool:
    """
    Safely remove an artifact directory and all contents.

    Returns:
        True if the directory is gone (or would be, in dry-run mode)
    """
    if not artifact_path.exists():
        return True

    if dry_run:
        logger.info(f"DRY RUN: Would remove artifact directory: {artifact_path}")
        return True

    try:
        shutil.rmtree(artifact_path)
    except OSError as e:
        logger.error(
            f"Failed to remove artifact directory: {artifact_path}",
            extra={"artifact_path": str(artifact_path), "error": str(e)},
        )
        return False

    logger.info("Removed artifact directory", extra={"artifact_path": str(artifact_path)})
    return True
