"""Follow-up generation stage: 5E lesson plans for a published photo."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from photolessons.config import PRIMARY_SPARSE_PATHS
from photolessons.errors import ValidationError
from photolessons.index_export import rebuild_coverage_index
from photolessons.models import GRADE_LEVELS, Job
from photolessons.services.content import (
    detect_media_type,
    generate_five_e_content,
    generate_title,
)
from photolessons.services.metadata import (
    add_processing,
    find_asset,
    find_asset_by_id,
    followup_applied,
    format_duration,
    load_metadata,
    mark_followup_applied,
    touch,
)
from photolessons.services.pdf import PdfTemplate
from photolessons.services.repository import METADATA_FILE
from photolessons.services.storage import resolve_source

if TYPE_CHECKING:
    from photolessons.services.pipeline_orchestrator import PipelineContext

logger = logging.getLogger(__name__)


def _render_five_e_pdfs(
    context: PipelineContext, job: Job, source: Path, plans: dict[str, str]
) -> int:
    title = generate_title(job.filename)
    rendered = 0
    for grade in GRADE_LEVELS:
        markdown = plans.get(grade.key)
        if not markdown:
            continue
        destination = (
            context.paths.media_dir
            / "pdfs"
            / job.category
            / f"{job.name_no_ext}-5e-{grade.key}.pdf"
        )
        try:
            pdf_bytes = context.renderer.render(
                markdown,
                source,
                PdfTemplate(title, job.category, grade.name, kind="5E Lesson Plan"),
            )
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(pdf_bytes)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "5E PDF failed",
                extra={
                    "event": "five_e_pdf_failed",
                    "context": {"filename": job.filename, "grade": grade.key, "error": str(exc)},
                },
            )
            continue
        rendered += 1
    return rendered


def _read_source(job: Job, source: Path) -> tuple[bytes, str]:
    if not source.exists():
        raise ValidationError(f"Processed source not found: {job.source_ref}")
    image_bytes = source.read_bytes()
    try:
        media_type = detect_media_type(image_bytes)
    except (OSError, ValueError) as exc:
        raise ValidationError(
            f"Unreadable image: {job.filename} ({exc.__class__.__name__})"
        ) from exc
    return image_bytes, media_type


def process_followup_job(context: PipelineContext, job: Job) -> dict[str, Any]:
    """Generate the deferred 5E plans and add their cost to the asset.

    The asset records which follow-up job last added its totals, so a job
    that published and then died before completing is not counted twice.
    """

    started = context.timer()
    source = resolve_source(context.paths, job.source_ref)
    image_bytes, media_type = _read_source(job, source)

    logger.info(
        "Follow-up stage started",
        extra={
            "event": "followup_stage_started",
            "context": {"job_id": job.id, "filename": job.filename, "asset_id": job.asset_id},
        },
    )

    publisher = context.publisher
    working_copy = publisher.acquire(PRIMARY_SPARSE_PATHS)
    try:
        metadata = load_metadata(working_copy)
        asset = None
        if job.asset_id is not None:
            asset = find_asset_by_id(metadata, job.asset_id)
        if asset is None:
            asset = find_asset(metadata, job.filename, job.category)
        if asset is None:
            raise ValidationError(
                f"No asset record for {job.category}/{job.filename} in {METADATA_FILE}"
            )
        if followup_applied(asset, job.id):
            logger.info(
                "Follow-up already published",
                extra={
                    "event": "followup_already_applied",
                    "context": {"job_id": job.id, "asset_id": asset["id"]},
                },
            )
            return {"status": "already_processed", "assetId": asset["id"]}

        bundle = generate_five_e_content(
            context.content,
            image_bytes,
            media_type,
            job.category,
            job.filename,
            delay=context.settings.content_call_delay,
            sleep=context.sleep,
        )
        publisher.mutate(working_copy, bundle.files)
        pdf_count = _render_five_e_pdfs(context, job, source, bundle.educational)

        elapsed_ms = (context.timer() - started) * 1000
        add_processing(asset, bundle.cost, elapsed_ms)
        mark_followup_applied(asset, job.id)
        touch(metadata)
        publisher.mutate(working_copy, {METADATA_FILE: metadata})
        rebuild_coverage_index(publisher, working_copy)

        publisher.commit(
            working_copy,
            f"Add 5E lesson plans for {job.filename}\n"
            "\n"
            f"- Generated 5E lesson plan content for {len(bundle.files)} grade levels (K-5)\n"
            f"- Rendered {pdf_count} 5E lesson plan PDFs\n"
            f"- Processing time: {format_duration(elapsed_ms)}\n"
            f"- Total 5E cost: ${bundle.cost:.4f}\n",
        )
        publisher.publish(
            working_copy, refresh=lambda rebased: rebuild_coverage_index(publisher, rebased)
        )
    finally:
        publisher.release(working_copy)

    result = {
        "status": "published",
        "assetId": asset["id"],
        "pdfs": pdf_count,
        "cost": round(bundle.cost, 4),
        "processingCost": asset["processingCost"],
        "processingTime": asset["processingTime"],
    }
    logger.info(
        "Follow-up stage completed",
        extra={"event": "followup_stage_completed", "context": {"job_id": job.id, **result}},
    )
    return result
