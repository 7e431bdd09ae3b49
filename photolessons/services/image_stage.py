"""Primary generation stage for a newly uploaded photo.

Nothing here touches the source file until the publish has succeeded, so
a retried attempt starts again from the top. Moving the source into the
processed area is the marker that the work is done.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from photolessons.config import PRIMARY_SPARSE_PATHS
from photolessons.errors import DuplicateDetected, ValidationError
from photolessons.index_export import rebuild_coverage_index
from photolessons.models import FOLLOWUP_JOB, GRADE_LEVELS, Job
from photolessons.services.content import (
    detect_media_type,
    generate_edp_content,
    generate_grade_content,
    generate_keywords,
    generate_title,
)
from photolessons.services.metadata import (
    find_asset,
    format_duration,
    load_metadata,
    new_asset_record,
    next_asset_id,
    record_processing,
    touch,
)
from photolessons.services.pdf import PdfTemplate
from photolessons.services.repository import METADATA_FILE, WorkingCopy
from photolessons.services.standards import extract_grade_standards
from photolessons.services.storage import (
    DUPLICATES,
    processed_ref,
    relocate,
    resolve_source,
)

if TYPE_CHECKING:
    from photolessons.services.pipeline_orchestrator import PipelineContext

logger = logging.getLogger(__name__)


def _validate(context: PipelineContext, job: Job, source: Path) -> str:
    """Reject inputs no retry can fix. Returns the image media type."""

    if job.category not in context.settings.valid_categories:
        raise ValidationError(
            f"Invalid category: {job.category}. "
            f"Must be one of: {', '.join(context.settings.valid_categories)}"
        )
    if not source.exists():
        raise ValidationError(f"Source not found: {job.source_ref}")
    size = source.stat().st_size
    if size > context.settings.max_source_bytes:
        limit_mb = context.settings.max_source_bytes / 1024 / 1024
        raise ValidationError(
            f"File too large: {size / 1024 / 1024:.2f}MB (max {limit_mb:.0f}MB)"
        )
    try:
        return detect_media_type(source.read_bytes())
    except (OSError, ValueError) as exc:
        raise ValidationError(
            f"Unreadable image: {job.filename} ({exc.__class__.__name__})"
        ) from exc


def _check_duplicate(
    context: PipelineContext, job: Job, metadata: dict[str, Any]
) -> dict[str, Any] | None:
    existing = find_asset(metadata, job.filename, job.category)
    if job.reprocess:
        if existing is None:
            raise ValidationError(
                f"Re-process failed: {job.filename} not found in {METADATA_FILE}"
            )
        return existing
    if existing is not None:
        relocate(
            context.paths,
            job.source_ref,
            f"{DUPLICATES}/{job.category}/{job.filename}",
        )
        raise DuplicateDetected(job.filename, job.category, existing["id"])
    return None


def _store_media(context: PipelineContext, job: Job, source: Path) -> int:
    """Copy the original and its variants to the media store.

    Failures are logged and skipped. Returns the number of variants made.
    """

    try:
        context.optimizer.store_original(source, job.category, job.filename)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "Original upload to media store failed",
            extra={
                "event": "media_original_failed",
                "context": {"filename": job.filename, "error": str(exc)},
            },
        )
    try:
        result = context.optimizer.generate_variants(source, job.category, job.filename)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "Variant generation failed",
            extra={
                "event": "media_variants_failed",
                "context": {"filename": job.filename, "error": str(exc)},
            },
        )
        return 0
    return len(result.variants)


def _render_pdfs(
    context: PipelineContext,
    job: Job,
    source: Path,
    educational: dict[str, str],
) -> int:
    title = generate_title(job.filename)
    rendered = 0
    for grade in GRADE_LEVELS:
        markdown = educational.get(grade.standards_key)
        if not markdown:
            continue
        destination = (
            context.paths.media_dir / "pdfs" / job.category / f"{job.name_no_ext}-{grade.key}.pdf"
        )
        try:
            pdf_bytes = context.renderer.render(
                markdown, source, PdfTemplate(title, job.category, grade.name)
            )
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(pdf_bytes)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Lesson PDF failed",
                extra={
                    "event": "lesson_pdf_failed",
                    "context": {
                        "filename": job.filename,
                        "grade": grade.key,
                        "error": str(exc),
                    },
                },
            )
            continue
        rendered += 1
    return rendered


def _generate_edp(
    context: PipelineContext,
    job: Job,
    source: Path,
    image_bytes: bytes,
    media_type: str,
    working_copy: WorkingCopy,
) -> float | None:
    """Engineering design challenge content and PDF.

    Failures are logged and skipped. Returns the cost of the call, or None
    when no content was generated.
    """

    try:
        bundle = generate_edp_content(
            context.content, image_bytes, media_type, job.category, job.filename
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "Engineering design content failed",
            extra={
                "event": "edp_content_failed",
                "context": {"filename": job.filename, "error": str(exc)},
            },
        )
        return None
    context.publisher.mutate(working_copy, bundle.files)

    destination = context.paths.media_dir / "pdfs" / job.category / f"{job.name_no_ext}-edp.pdf"
    try:
        pdf_bytes = context.renderer.render(
            bundle.educational["edp"],
            source,
            PdfTemplate(
                generate_title(job.filename),
                job.category,
                "Grades K-5",
                kind="Engineering Design Challenge",
            ),
        )
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(pdf_bytes)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "Engineering design PDF failed",
            extra={
                "event": "edp_pdf_failed",
                "context": {"filename": job.filename, "error": str(exc)},
            },
        )
    return bundle.cost


def _enqueue_followup(context: PipelineContext, job: Job, asset_id: int) -> int:
    """Queue the deferred 5E generation, reusing an already queued one."""

    existing = context.store.find_active(FOLLOWUP_JOB, job.filename, job.category)
    if existing is not None:
        return existing.id
    followup = context.store.enqueue(
        FOLLOWUP_JOB,
        processed_ref(job.category, job.filename),
        job.category,
        job.filename,
        name_no_ext=job.name_no_ext,
        asset_id=asset_id,
    )
    return followup.id


def _commit_message(
    job: Job,
    standards_count: int,
    keyword_count: int,
    pdf_count: int,
    variant_count: int,
    edp_generated: bool,
    processing_time: str,
    cost: float,
) -> str:
    action = "Re-process" if job.reprocess else "Add"
    return (
        f"{action} {job.filename} with educational content, keywords, NGSS standards\n"
        "\n"
        f"- Category: {job.category}\n"
        f"- Generated content for {len(GRADE_LEVELS)} grade levels (K-5)\n"
        f"- Generated {keyword_count} search keywords\n"
        f"- Extracted {standards_count} NGSS standards\n"
        f"- Rendered {pdf_count} lesson PDFs\n"
        f"- Engineering design challenge: {'generated' if edp_generated else 'skipped'}\n"
        f"- Generated {variant_count} image variants\n"
        "- 5E lesson plans queued for follow-up generation\n"
        f"- Processing time: {processing_time}\n"
        f"- Total cost: ${cost:.4f}\n"
    )


def _generate_and_publish(
    context: PipelineContext,
    job: Job,
    source: Path,
    working_copy: WorkingCopy,
    media_type: str,
    started: float,
) -> dict[str, Any]:
    publisher = context.publisher
    metadata = load_metadata(working_copy)
    asset = _check_duplicate(context, job, metadata)

    variant_count = 0
    if asset is None:
        variant_count = _store_media(context, job, source)
        asset = new_asset_record(next_asset_id(metadata), job.filename, job.category)
        metadata["images"].append(asset)
        touch(metadata)
    asset_id = asset["id"]
    publisher.mutate(working_copy, {METADATA_FILE: metadata})
    logger.info(
        "Asset id assigned",
        extra={
            "event": "asset_id_assigned",
            "context": {"filename": job.filename, "asset_id": asset_id, "reprocess": job.reprocess},
        },
    )

    image_bytes = source.read_bytes()
    bundle = generate_grade_content(
        context.content,
        image_bytes,
        media_type,
        job.category,
        job.filename,
        delay=context.settings.content_call_delay,
        sleep=context.sleep,
    )
    publisher.mutate(working_copy, bundle.files)
    total_cost = bundle.cost

    standards = extract_grade_standards(bundle.educational, job.category)
    standards_count = sum(len(codes) for codes in standards.values())
    asset["hasContent"] = True
    asset["ngssStandards"] = standards

    keywords, keyword_cost = generate_keywords(
        context.content, image_bytes, media_type, job.category
    )
    total_cost += keyword_cost
    if keywords:
        asset["keywords"] = keywords

    pdf_count = _render_pdfs(context, job, source, bundle.educational)
    edp_cost = _generate_edp(context, job, source, image_bytes, media_type, working_copy)
    total_cost += edp_cost or 0.0
    followup_id = _enqueue_followup(context, job, asset_id)

    elapsed_ms = (context.timer() - started) * 1000
    record_processing(asset, total_cost, elapsed_ms)
    touch(metadata)
    publisher.mutate(working_copy, {METADATA_FILE: metadata})
    rebuild_coverage_index(publisher, working_copy)

    processing_time = format_duration(elapsed_ms)
    publisher.commit(
        working_copy,
        _commit_message(
            job,
            standards_count,
            len(keywords),
            pdf_count,
            variant_count,
            edp_cost is not None,
            processing_time,
            total_cost,
        ),
    )
    publisher.publish(
        working_copy, refresh=lambda rebased: rebuild_coverage_index(publisher, rebased)
    )
    return {
        "status": "published",
        "assetId": asset_id,
        "standards": standards_count,
        "keywords": len(keywords),
        "pdfs": pdf_count,
        "variants": variant_count,
        "edp": edp_cost is not None,
        "followupJobId": followup_id,
        "cost": round(total_cost, 4),
        "processingTime": processing_time,
    }


def process_image_job(context: PipelineContext, job: Job) -> dict[str, Any]:
    """Turn one uploaded photo into published lesson assets."""

    started = context.timer()
    source = resolve_source(context.paths, job.source_ref)
    done_marker = resolve_source(context.paths, processed_ref(job.category, job.filename))
    if not source.exists() and done_marker.exists() and not job.reprocess:
        # A previous attempt published and relocated, then died before completing.
        logger.info(
            "Source already processed",
            extra={"event": "image_already_processed", "context": {"job_id": job.id}},
        )
        return {"status": "already_processed"}

    media_type = _validate(context, job, source)
    logger.info(
        "Image stage started",
        extra={
            "event": "image_stage_started",
            "context": {
                "job_id": job.id,
                "filename": job.filename,
                "category": job.category,
                "reprocess": job.reprocess,
                "attempts": job.attempts,
            },
        },
    )

    working_copy = context.publisher.acquire(PRIMARY_SPARSE_PATHS)
    try:
        result = _generate_and_publish(
            context, job, source, working_copy, media_type, started
        )
    finally:
        context.publisher.release(working_copy)

    relocate(context.paths, job.source_ref, processed_ref(job.category, job.filename))
    logger.info(
        "Image stage completed",
        extra={"event": "image_stage_completed", "context": {"job_id": job.id, **result}},
    )
    return result
