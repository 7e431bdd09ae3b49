"""Job scheduler: one tick drains at most one job from the queue.

Recovery from a crashed worker depends only on the started_at stamp in
the queue store, so it works even when the process died without running
any error handling.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable

from photolessons.errors import DuplicateDetected, ValidationError
from photolessons.models import PRIMARY_JOB, Job
from photolessons.services.pipeline_orchestrator import PipelineContext, run_pipeline
from photolessons.services.storage import move_to_failed

logger = logging.getLogger(__name__)

STALE_ERROR = "exceeded max attempts (stale)"

_executor = ThreadPoolExecutor(max_workers=1)


@dataclass(frozen=True)
class TickOutcome:
    """What a scheduler tick did."""

    action: str
    job_id: int | None = None
    detail: str = ""


class Scheduler:
    """Drains the queue one job per tick."""

    def __init__(
        self,
        context: PipelineContext,
        runner: Callable[[PipelineContext, Job], dict[str, Any]] = run_pipeline,
    ) -> None:
        self.context = context
        self.store = context.store
        self.settings = context.settings
        self.runner = runner

    def tick(self) -> TickOutcome:
        processing = self.store.current_processing()
        if processing is not None:
            return self._check_stale(processing)

        self.store.prune_completed(self.settings.completed_retention)
        job = self.store.claim_next()
        if job is None:
            logger.debug("Queue is empty", extra={"event": "queue_empty"})
            return TickOutcome("idle")
        return self._dispatch(job)

    def _check_stale(self, job: Job) -> TickOutcome:
        if job.started_at is None:
            elapsed = None
        else:
            elapsed = self.store.current_time() - job.started_at
        if elapsed is not None and elapsed <= self.settings.stale_after:
            logger.info(
                "Another job is processing, waiting",
                extra={
                    "event": "scheduler_waiting",
                    "context": {"job_id": job.id, "elapsed_seconds": int(elapsed.total_seconds())},
                },
            )
            return TickOutcome("waiting", job.id)

        elapsed_minutes = round(elapsed.total_seconds() / 60) if elapsed is not None else None
        attempts = job.attempts + 1
        if attempts >= self.settings.max_attempts:
            self.store.fail(job.id, STALE_ERROR, attempts=attempts)
            self._park_source(job)
            logger.error(
                "Stale job failed",
                extra={
                    "event": "stale_job_failed",
                    "context": {
                        "job_id": job.id,
                        "filename": job.filename,
                        "attempts": attempts,
                        "elapsed_minutes": elapsed_minutes,
                    },
                },
            )
            return TickOutcome("stale_failed", job.id, STALE_ERROR)

        self.store.requeue(job.id, f"stale after {elapsed_minutes}m")
        logger.warning(
            "Stale job reset to pending",
            extra={
                "event": "stale_job_requeued",
                "context": {
                    "job_id": job.id,
                    "filename": job.filename,
                    "attempts": attempts,
                    "elapsed_minutes": elapsed_minutes,
                },
            },
        )
        return TickOutcome("stale_requeued", job.id)

    def _dispatch(self, job: Job) -> TickOutcome:
        try:
            result = self.runner(self.context, job)
        except DuplicateDetected as exc:
            self.store.complete(job.id, {"status": "duplicate", "assetId": exc.asset_id})
            logger.warning(
                "Duplicate upload skipped",
                extra={
                    "event": "duplicate_skipped",
                    "context": {"job_id": job.id, "filename": job.filename, "asset_id": exc.asset_id},
                },
            )
            return TickOutcome("duplicate", job.id, str(exc))
        except ValidationError as exc:
            self.store.fail(job.id, str(exc))
            self._park_source(job)
            logger.error(
                "Job rejected",
                extra={
                    "event": "job_rejected",
                    "context": {"job_id": job.id, "filename": job.filename, "error": str(exc)},
                },
            )
            return TickOutcome("failed", job.id, str(exc))
        except Exception as exc:  # noqa: BLE001
            return self._handle_failure(job, exc)

        self.store.complete(job.id, result)
        logger.info(
            "Job completed",
            extra={
                "event": "job_completed",
                "context": {"job_id": job.id, "job_type": job.job_type, "filename": job.filename},
            },
        )
        return TickOutcome("completed", job.id)

    def _handle_failure(self, job: Job, exc: Exception) -> TickOutcome:
        attempts = job.attempts + 1
        logger.exception(
            "Job attempt failed",
            extra={
                "event": "job_attempt_failed",
                "context": {"job_id": job.id, "filename": job.filename, "attempts": attempts},
            },
        )
        if attempts >= self.settings.max_attempts:
            self.store.fail(job.id, str(exc), attempts=attempts)
            self._park_source(job)
            return TickOutcome("failed", job.id, str(exc))
        self.store.requeue(job.id, str(exc))
        return TickOutcome("requeued", job.id, str(exc))

    def _park_source(self, job: Job) -> None:
        # Follow-up jobs read the processed copy, which stays where it is.
        if job.job_type == PRIMARY_JOB:
            move_to_failed(self.context.paths, job.source_ref, job.filename)

    def run_forever(self, stop: threading.Event | None = None) -> None:
        """Tick on the configured interval until stop is set."""

        stop = stop or threading.Event()
        interval = self.settings.tick_interval_seconds
        logger.info(
            "Scheduler started",
            extra={"event": "scheduler_started", "context": {"interval_seconds": interval}},
        )
        while not stop.is_set():
            try:
                self.tick()
            except Exception:  # noqa: BLE001
                logger.exception("Scheduler tick failed", extra={"event": "scheduler_tick_failed"})
            stop.wait(interval)


def start_background(scheduler: Scheduler, stop: threading.Event) -> Future:
    """Run the scheduler loop on the single background worker."""

    return _executor.submit(scheduler.run_forever, stop)
