"""Error taxonomy for the generation pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline errors."""


class ValidationError(PipelineError):
    """Permanent input problem; the job fails without retry."""


class DuplicateDetected(PipelineError):
    """An asset with the same filename and category already exists."""

    def __init__(self, filename: str, category: str, asset_id: int) -> None:
        super().__init__(f"{filename} already exists in {category} (asset {asset_id})")
        self.filename = filename
        self.category = category
        self.asset_id = asset_id


class TransientExternalError(PipelineError):
    """External call failed; the job is retried within its attempt budget."""


class PublishError(TransientExternalError):
    """Commit could not be pushed to the gallery repository."""


class PushRejected(TransientExternalError):
    """Remote refused the push, usually because it moved ahead."""


class InvalidTransition(PipelineError):
    """A job was asked to move along an edge the state machine forbids."""


class QueueConflict(PipelineError):
    """A request clashes with a job already waiting for the same file."""
