"""Producers that write pending jobs into the queue store."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from photolessons.config import VALID_CATEGORIES, AppPaths
from photolessons.errors import QueueConflict, ValidationError
from photolessons.models import FAILED, PRIMARY_JOB, Job
from photolessons.services.queue import QueueStore
from photolessons.services.storage import (
    UPLOADS,
    is_image,
    processed_ref,
    relocate,
    resolve_source,
    upload_ref,
)

logger = logging.getLogger(__name__)


def parse_upload_ref(source_ref: str) -> tuple[str, str]:
    """Split 'uploads/<category>/<filename>' into its parts."""

    parts = source_ref.split("/")
    if len(parts) != 3 or parts[0] != UPLOADS or not parts[2]:
        raise ValidationError(f"Not an upload reference: {source_ref}")
    return parts[1], parts[2]


def enqueue_upload(
    store: QueueStore,
    source_ref: str,
    reprocess: bool = False,
    valid_categories: tuple[str, ...] = VALID_CATEGORIES,
) -> Job | None:
    """Queue a primary job for a newly arrived upload.

    Returns the existing job when the file is already queued, or None when
    the file is not a photo.
    """

    category, filename = parse_upload_ref(source_ref)
    if category not in valid_categories:
        raise ValidationError(
            f"Invalid category: {category}. Must be one of: {', '.join(valid_categories)}"
        )
    if not is_image(Path(filename)):
        logger.info(
            "Ignoring non-image upload",
            extra={"event": "upload_ignored", "context": {"source": source_ref}},
        )
        return None

    existing = store.find_active(PRIMARY_JOB, filename, category)
    if existing is not None:
        logger.info(
            "Upload already queued",
            extra={
                "event": "upload_already_queued",
                "context": {"source": source_ref, "job_id": existing.id},
            },
        )
        return existing
    return store.enqueue(PRIMARY_JOB, source_ref, category, filename, reprocess=reprocess)


def scan_uploads(
    store: QueueStore,
    paths: AppPaths,
    valid_categories: tuple[str, ...] = VALID_CATEGORIES,
) -> list[Job]:
    """Queue every photo waiting in the uploads area."""

    queued: list[Job] = []
    for category in valid_categories:
        directory = paths.uploads_dir / category
        if not directory.is_dir():
            continue
        for path in sorted(directory.iterdir()):
            if not path.is_file():
                continue
            job = enqueue_upload(store, upload_ref(category, path.name), valid_categories=valid_categories)
            if job is not None:
                queued.append(job)
    return queued


def request_reprocess(
    store: QueueStore,
    paths: AppPaths,
    category: str,
    filename: str,
) -> Job:
    """Copy a processed photo back into uploads and queue it for regeneration.

    An already queued reprocess is returned as is. Raises QueueConflict when
    a regular upload of the same file is still waiting, since its source
    would be overwritten.
    """

    processed = resolve_source(paths, processed_ref(category, filename))
    if not processed.exists():
        raise ValidationError(f"No processed source for {category}/{filename}")
    active = store.find_active(PRIMARY_JOB, filename, category)
    if active is not None:
        if active.reprocess:
            return active
        raise QueueConflict(
            f"{category}/{filename} is already queued as job {active.id}; retry once it finishes"
        )
    ref = upload_ref(category, filename)
    destination = resolve_source(paths, ref)
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(processed, destination)
    logger.info(
        "Reprocess requested",
        extra={"event": "reprocess_requested", "context": {"source": ref}},
    )
    job = enqueue_upload(store, ref, reprocess=True)
    if job is None:
        raise ValidationError(f"Not an image: {filename}")
    return job


def _restore_failed_source(paths: AppPaths, job: Job) -> None:
    """Bring a parked primary source back to where the job expects it."""

    if resolve_source(paths, job.source_ref).exists():
        return
    candidates = sorted(paths.failed_dir.glob(f"*_{job.filename}"))
    if not candidates:
        raise ValidationError(f"Source for job {job.id} is no longer available")
    parked = candidates[-1].relative_to(paths.storage_dir).as_posix()
    relocate(paths, parked, job.source_ref)


def retry_failed(store: QueueStore, paths: AppPaths, job_id: int) -> Job:
    """Queue a fresh attempt for a failed job.

    Terminal jobs never move again, so the retry is a new pending job with
    a full attempt budget.
    """

    job = store.get(job_id)
    if job is None:
        raise KeyError(f"Job not found: {job_id}")
    if job.status != FAILED:
        raise ValidationError(f"Job {job_id} is {job.status}, only failed jobs can be retried")
    if job.job_type == PRIMARY_JOB:
        _restore_failed_source(paths, job)
    retried = store.enqueue(
        job.job_type,
        job.source_ref,
        job.category,
        job.filename,
        name_no_ext=job.name_no_ext,
        asset_id=job.asset_id,
        reprocess=job.reprocess,
    )
    logger.info(
        "Failed job retried",
        extra={
            "event": "job_retried",
            "context": {"job_id": job_id, "new_job_id": retried.id},
        },
    )
    return retried
