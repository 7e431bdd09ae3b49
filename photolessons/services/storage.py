"""Source photo areas: uploads, processed, duplicates and failed."""

from __future__ import annotations

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path

from photolessons.config import AppPaths

logger = logging.getLogger(__name__)

UPLOADS = "uploads"
PROCESSED = "processed"
DUPLICATES = "duplicates"
FAILED = "failed"

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".webp", ".gif"}


def is_image(path: Path) -> bool:
    """Return True if the path looks like a photo (case-insensitive)."""

    return path.suffix.lower() in IMAGE_SUFFIXES


def format_bytes(size_bytes: float) -> str:
    """Format bytes into a friendly string."""

    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.0f} PB"


def resolve_conflict_path(directory: Path, filename: str) -> Path:
    """Return a non-conflicting destination path."""

    candidate = directory / filename
    if not candidate.exists():
        return candidate
    stem = candidate.stem
    suffix = candidate.suffix
    counter = 1
    while True:
        candidate = directory / f"{stem}_{counter}{suffix}"
        if not candidate.exists():
            return candidate
        counter += 1


def upload_ref(category: str, filename: str) -> str:
    return f"{UPLOADS}/{category}/{filename}"


def processed_ref(category: str, filename: str) -> str:
    return f"{PROCESSED}/{category}/{filename}"


def resolve_source(paths: AppPaths, source_ref: str) -> Path:
    """Map a storage-relative reference to a local path."""

    return paths.storage_dir / source_ref


def relocate(paths: AppPaths, source_ref: str, destination_ref: str) -> str:
    """Move a source file to another area, replacing any previous copy.

    Returns the destination reference.
    """

    source = resolve_source(paths, source_ref)
    destination = resolve_source(paths, destination_ref)
    destination.parent.mkdir(parents=True, exist_ok=True)
    if destination.exists():
        destination.unlink()
    shutil.move(str(source), str(destination))
    logger.info(
        "Source relocated",
        extra={
            "event": "source_relocated",
            "context": {"source": source_ref, "destination": destination_ref},
        },
    )
    return destination_ref


def move_to_failed(paths: AppPaths, source_ref: str, filename: str) -> str | None:
    """Park a source that will never be retried.

    A missing source is logged and ignored; the job is already terminal.
    """

    source = resolve_source(paths, source_ref)
    if not source.exists():
        logger.warning(
            "Failed source already gone",
            extra={"event": "failed_source_missing", "context": {"source": source_ref}},
        )
        return None
    stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
    destination = resolve_conflict_path(paths.failed_dir, f"{stamp}_{filename}")
    destination_ref = destination.relative_to(paths.storage_dir).as_posix()
    try:
        return relocate(paths, source_ref, destination_ref)
    except OSError as exc:
        logger.warning(
            "Could not move source to failed area",
            extra={
                "event": "failed_source_move_error",
                "context": {"source": source_ref, "error": str(exc)},
            },
        )
        return None


def store_upload(paths: AppPaths, category: str, filename: str, data: bytes) -> str:
    """Write uploaded bytes into the uploads area and return the reference."""

    ref = upload_ref(category, filename)
    destination = resolve_source(paths, ref)
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(data)
    return ref
