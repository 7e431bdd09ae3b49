"""Pipeline orchestration: routes a claimed job to its stage.

Work is split over two job types so each execution stays inside the time
ceiling. A follow-up job only carries identifiers derived by the primary
stage; it never recomputes what the primary stage already published.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable

from photolessons.config import AppPaths, PipelineSettings
from photolessons.errors import ValidationError
from photolessons.models import FOLLOWUP_JOB, PRIMARY_JOB, Job
from photolessons.services.content import AnthropicContentService, ContentService
from photolessons.services.followup_stage import process_followup_job
from photolessons.services.image_stage import process_image_job
from photolessons.services.media import ImageOptimizer
from photolessons.services.pdf import PdfRenderer
from photolessons.services.queue import QueueStore
from photolessons.services.repository import GitRepository, RepositoryPublisher


@dataclass
class PipelineContext:
    """Collaborators and settings shared by both stages."""

    paths: AppPaths
    settings: PipelineSettings
    store: QueueStore
    publisher: RepositoryPublisher
    content: ContentService
    optimizer: ImageOptimizer
    renderer: PdfRenderer
    sleep: Callable[[float], None] = field(default=time.sleep)
    timer: Callable[[], float] = field(default=time.monotonic)


StageHandler = Callable[[PipelineContext, Job], dict[str, Any]]

STAGES: dict[str, StageHandler] = {
    PRIMARY_JOB: process_image_job,
    FOLLOWUP_JOB: process_followup_job,
}


def run_pipeline(context: PipelineContext, job: Job) -> dict[str, Any]:
    """Run the stage matching the job type.

    Args:
        context: PipelineContext with collaborators.
        job: The claimed job.

    Returns:
        The stage's result dictionary.
    """

    handler = STAGES.get(job.job_type)
    if handler is None:
        raise ValidationError(f"Unknown job type: {job.job_type}")
    return handler(context, job)


def build_context(
    paths: AppPaths,
    settings: PipelineSettings,
    store: QueueStore | None = None,
) -> PipelineContext:
    """Wire the production collaborators for a worker process."""

    repository = GitRepository(
        settings.repo_url,
        branch=settings.branch,
        user_name=settings.git_user_name,
        user_email=settings.git_user_email,
    )
    return PipelineContext(
        paths=paths,
        settings=settings,
        store=store or QueueStore(paths.db_path),
        publisher=RepositoryPublisher(
            repository, paths.work_dir, push_retries=settings.push_retries
        ),
        content=AnthropicContentService(settings.anthropic_api_key, settings.model),
        optimizer=ImageOptimizer(paths.media_dir),
        renderer=PdfRenderer(),
    )
