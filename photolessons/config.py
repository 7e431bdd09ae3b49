"""Configuration helpers for photolessons."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Dict


DEFAULT_ROOT = Path.home() / "photolessons"

MAX_ATTEMPTS = 3
STALE_AFTER = timedelta(minutes=12)
COMPLETED_RETENTION = timedelta(hours=1)
MAX_SOURCE_BYTES = 2 * 1024 * 1024
TICK_INTERVAL_SECONDS = 60
PUSH_RETRIES = 2
CONTENT_CALL_DELAY_SECONDS = 1.0

VALID_CATEGORIES = ("life-science", "earth-space-science", "physical-science")

# Paths materialized from the gallery repository for each job type.
PRIMARY_SPARSE_PATHS = (
    "gallery-metadata.json",
    "ngss-index.json",
    "content/*/",
)


@dataclass(frozen=True)
class AppPaths:
    """Container for application paths.

    Storage areas hold source photos as they move through the pipeline;
    the media dir stands in for the gallery's binary object store.
    """

    root: Path
    data_dir: Path
    db_path: Path
    logs_dir: Path
    storage_dir: Path
    uploads_dir: Path
    processed_dir: Path
    duplicates_dir: Path
    failed_dir: Path
    media_dir: Path
    work_dir: Path


@dataclass(frozen=True)
class PipelineSettings:
    """Runtime settings for the scheduler and stages."""

    repo_url: str
    branch: str = "main"
    anthropic_api_key: str | None = None
    model: str = "claude-haiku-4-5-20251001"
    git_user_name: str = "Photolessons Automation"
    git_user_email: str = "automation@photolessons.local"
    max_attempts: int = MAX_ATTEMPTS
    stale_after: timedelta = STALE_AFTER
    completed_retention: timedelta = COMPLETED_RETENTION
    max_source_bytes: int = MAX_SOURCE_BYTES
    tick_interval_seconds: int = TICK_INTERVAL_SECONDS
    push_retries: int = PUSH_RETRIES
    content_call_delay: float = CONTENT_CALL_DELAY_SECONDS
    valid_categories: tuple[str, ...] = field(default=VALID_CATEGORIES)


def get_paths(root: Path | None = None) -> AppPaths:
    """Resolve application paths relative to the data root.

    Args:
        root: Optional root override. Falls back to PHOTOLESSONS_ROOT, then
            ~/photolessons.

    Returns:
        AppPaths for the data directory, database and storage areas.
    """

    env_root = os.environ.get("PHOTOLESSONS_ROOT")
    base = root or (Path(env_root) if env_root else DEFAULT_ROOT)
    data_dir = base / "data"
    storage_dir = base / "storage"
    return AppPaths(
        root=base,
        data_dir=data_dir,
        db_path=data_dir / "queue.db",
        logs_dir=data_dir / "logs",
        storage_dir=storage_dir,
        uploads_dir=storage_dir / "uploads",
        processed_dir=storage_dir / "processed",
        duplicates_dir=storage_dir / "duplicates",
        failed_dir=storage_dir / "failed",
        media_dir=base / "media",
        work_dir=base / "work",
    )


def load_settings() -> PipelineSettings:
    """Build settings from environment variables."""

    repo_url = os.environ.get("PHOTOLESSONS_REPO_URL", "")
    return PipelineSettings(
        repo_url=repo_url,
        branch=os.environ.get("PHOTOLESSONS_BRANCH", "main"),
        anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY"),
        model=os.environ.get("PHOTOLESSONS_MODEL", "claude-haiku-4-5-20251001"),
        git_user_name=os.environ.get("PHOTOLESSONS_GIT_USER", "Photolessons Automation"),
        git_user_email=os.environ.get(
            "PHOTOLESSONS_GIT_EMAIL", "automation@photolessons.local"
        ),
        tick_interval_seconds=int(
            os.environ.get("PHOTOLESSONS_TICK_SECONDS", TICK_INTERVAL_SECONDS)
        ),
    )


def ensure_storage_dirs(paths: AppPaths) -> Dict[str, Path]:
    """Ensure data and storage directories exist locally."""

    logger = logging.getLogger(__name__)
    directories = {
        "data_dir": paths.data_dir,
        "logs_dir": paths.logs_dir,
        "uploads_dir": paths.uploads_dir,
        "processed_dir": paths.processed_dir,
        "duplicates_dir": paths.duplicates_dir,
        "failed_dir": paths.failed_dir,
        "media_dir": paths.media_dir,
        "work_dir": paths.work_dir,
    }
    for directory in directories.values():
        directory.mkdir(parents=True, exist_ok=True)
    for category in VALID_CATEGORIES:
        (paths.uploads_dir / category).mkdir(parents=True, exist_ok=True)
    logger.info(
        "Ensured storage directories",
        extra={
            "event": "storage_dirs_ensured",
            "context": {"root": str(paths.root)},
        },
    )
    return directories
