from __future__ import annotations

import json

import pytest

from photolessons.errors import DuplicateDetected, TransientExternalError, ValidationError
from photolessons.models import COMPLETED, FAILED, FOLLOWUP_JOB, PENDING, PROCESSING, PRIMARY_JOB
from photolessons.services.jobs import STALE_ERROR, Scheduler


class RecordingRunner:
    """Stage runner stub that records jobs and raises queued errors."""

    def __init__(self, *errors: Exception) -> None:
        self.errors = list(errors)
        self.jobs = []

    def __call__(self, context, job):
        self.jobs.append(job)
        if self.errors:
            raise self.errors.pop(0)
        return {"status": "published", "jobId": job.id}


def _scheduler(context, *errors):
    runner = RecordingRunner(*errors)
    return Scheduler(context, runner=runner), runner


def _enqueue(store, upload, filename="frog.jpg"):
    ref = upload(filename)
    return store.enqueue(PRIMARY_JOB, ref, "life-science", filename)


def test_tick_on_empty_queue_is_idle(context):
    scheduler, runner = _scheduler(context)

    assert scheduler.tick().action == "idle"
    assert runner.jobs == []


def test_tick_runs_oldest_job_to_completion(context, store, upload, clock):
    scheduler, runner = _scheduler(context)
    first = _enqueue(store, upload, "frog.jpg")
    clock.advance(seconds=1)
    second = _enqueue(store, upload, "toad.jpg")

    outcome = scheduler.tick()

    assert (outcome.action, outcome.job_id) == ("completed", first.id)
    assert json.loads(store.get(first.id).result_json) == {"status": "published", "jobId": first.id}
    assert scheduler.tick().job_id == second.id
    assert [job.id for job in runner.jobs] == [first.id, second.id]


def test_processing_job_blocks_claim_until_stale(context, store, upload, clock):
    scheduler, runner = _scheduler(context)
    crashed = _enqueue(store, upload, "frog.jpg")
    waiting = _enqueue(store, upload, "toad.jpg")
    store.claim_next()

    clock.advance(minutes=12)
    outcome = scheduler.tick()

    assert (outcome.action, outcome.job_id) == ("waiting", crashed.id)
    assert store.get(crashed.id).status == PROCESSING
    assert store.get(waiting.id).status == PENDING
    assert runner.jobs == []


def test_stale_job_is_requeued_within_one_tick(context, store, upload, clock):
    scheduler, _ = _scheduler(context)
    crashed = _enqueue(store, upload)
    store.claim_next()

    clock.advance(minutes=12, seconds=1)
    outcome = scheduler.tick()

    job = store.get(crashed.id)
    assert outcome.action == "stale_requeued"
    assert job.status == PENDING
    assert job.attempts == 1
    assert job.started_at is None


def test_repeatedly_stale_job_fails_at_attempt_budget(context, store, upload, clock, paths):
    scheduler, _ = _scheduler(context)
    crashed = _enqueue(store, upload)

    outcomes = []
    for _ in range(3):
        assert store.claim_next().id == crashed.id
        clock.advance(minutes=13)
        outcomes.append(scheduler.tick().action)
        assert store.get(crashed.id).attempts <= 3

    job = store.get(crashed.id)
    assert outcomes == ["stale_requeued", "stale_requeued", "stale_failed"]
    assert job.status == FAILED
    assert job.attempts == 3
    assert job.last_error == STALE_ERROR
    assert not (paths.uploads_dir / "life-science" / "frog.jpg").exists()
    assert [path.name.split("_", 1)[1] for path in paths.failed_dir.iterdir()] == ["frog.jpg"]


def test_transient_errors_retry_until_budget(context, store, upload, paths):
    errors = [TransientExternalError(f"overloaded {n}") for n in range(3)]
    scheduler, runner = _scheduler(context, *errors)
    job = _enqueue(store, upload)

    actions = [scheduler.tick().action for _ in range(3)]

    failed = store.get(job.id)
    assert actions == ["requeued", "requeued", "failed"]
    assert len(runner.jobs) == 3
    assert failed.status == FAILED
    assert failed.attempts == 3
    assert failed.last_error == "overloaded 2"
    assert len(list(paths.failed_dir.iterdir())) == 1


def test_transient_error_then_success(context, store, upload):
    scheduler, _ = _scheduler(context, TransientExternalError("push rejected"))
    job = _enqueue(store, upload)

    assert scheduler.tick().action == "requeued"
    assert scheduler.tick().action == "completed"
    done = store.get(job.id)
    assert done.status == COMPLETED
    assert done.attempts == 1


def test_validation_error_fails_without_spending_attempts(context, store, upload, paths):
    scheduler, runner = _scheduler(context, ValidationError("File too large: 3.00MB (max 2MB)"))
    job = _enqueue(store, upload)

    outcome = scheduler.tick()

    failed = store.get(job.id)
    assert outcome.action == "failed"
    assert failed.status == FAILED
    assert failed.attempts == 0
    assert failed.last_error.startswith("File too large")
    assert len(runner.jobs) == 1
    assert scheduler.tick().action == "idle"
    assert len(list(paths.failed_dir.iterdir())) == 1


def test_duplicate_completes_with_existing_asset(context, store, upload):
    scheduler, _ = _scheduler(context, DuplicateDetected("frog.jpg", "life-science", 2))
    job = _enqueue(store, upload)

    outcome = scheduler.tick()

    done = store.get(job.id)
    assert outcome.action == "duplicate"
    assert done.status == COMPLETED
    assert json.loads(done.result_json) == {"status": "duplicate", "assetId": 2}


def test_followup_failure_leaves_processed_source(context, store, paths):
    processed = paths.processed_dir / "life-science" / "frog.jpg"
    processed.parent.mkdir(parents=True, exist_ok=True)
    processed.write_bytes(b"photo")
    scheduler, _ = _scheduler(context, ValidationError("No asset record"))
    job = store.enqueue(
        FOLLOWUP_JOB, "processed/life-science/frog.jpg", "life-science", "frog.jpg", asset_id=5
    )

    scheduler.tick()

    assert store.get(job.id).status == FAILED
    assert processed.exists()


def test_tick_prunes_expired_completed_jobs(context, store, upload, clock):
    scheduler, _ = _scheduler(context)
    job = _enqueue(store, upload)
    scheduler.tick()

    clock.advance(hours=1, seconds=1)
    assert scheduler.tick().action == "idle"
    assert store.get(job.id) is None


@pytest.mark.parametrize("ticks", [1, 2, 5])
def test_never_more_than_one_processing(context, store, upload, clock, ticks):
    scheduler, _ = _scheduler(context, *[TransientExternalError("x")] * ticks)
    for name in ("a.jpg", "b.jpg", "c.jpg"):
        _enqueue(store, upload, name)

    for _ in range(ticks):
        scheduler.tick()
        assert store.counts()[PROCESSING] <= 1
        clock.advance(minutes=1)
