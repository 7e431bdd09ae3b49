"""Gallery metadata records kept in the shared repository."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from photolessons.services.content import generate_title
from photolessons.services.media import variant_paths
from photolessons.services.repository import METADATA_FILE, WorkingCopy

_DURATION_PATTERN = re.compile(r"(\d+)m\s*(\d+)s")
FOLLOWUP_MARKER = "followupJobId"


def load_metadata(working_copy: WorkingCopy) -> dict[str, Any]:
    metadata = working_copy.read_json(METADATA_FILE, default=None)
    if metadata is None:
        metadata = {"images": [], "totalImages": 0}
    metadata.setdefault("images", [])
    return metadata


def find_asset(
    metadata: dict[str, Any],
    filename: str,
    category: str,
) -> dict[str, Any] | None:
    for image in metadata["images"]:
        if image.get("filename") == filename and image.get("category") == category:
            return image
    return None


def find_asset_by_id(metadata: dict[str, Any], asset_id: int) -> dict[str, Any] | None:
    for image in metadata["images"]:
        if image.get("id") == asset_id:
            return image
    return None


def next_asset_id(metadata: dict[str, Any]) -> int:
    """Next sequential id: one past the highest id in use, or 1."""

    ids = [image["id"] for image in metadata["images"] if isinstance(image.get("id"), int)]
    return max(ids) + 1 if ids else 1


def new_asset_record(asset_id: int, filename: str, category: str) -> dict[str, Any]:
    stem = Path(filename).stem
    record: dict[str, Any] = {
        "id": asset_id,
        "filename": filename,
        "category": category,
        "title": generate_title(filename),
        "contentFile": f"content/{category}/{stem}.json",
        "hasContent": False,
    }
    record.update(variant_paths(category, filename))
    return record


def touch(metadata: dict[str, Any]) -> None:
    metadata["totalImages"] = len(metadata["images"])
    metadata["lastUpdated"] = datetime.now(timezone.utc).isoformat()


def format_duration(milliseconds: float) -> str:
    """Render a duration as 'Xm Ys'."""

    minutes = int(milliseconds // 60000)
    seconds = round((milliseconds % 60000) / 1000)
    if seconds == 60:
        minutes, seconds = minutes + 1, 0
    return f"{minutes}m {seconds}s"


def parse_duration(value: str | None) -> int:
    """Parse 'Xm Ys' into milliseconds; unknown formats count as 0."""

    match = _DURATION_PATTERN.search(value or "")
    if not match:
        return 0
    return int(match.group(1)) * 60000 + int(match.group(2)) * 1000


def record_processing(asset: dict[str, Any], cost: float, elapsed_ms: float) -> None:
    """Set cost and time for a fresh primary run."""

    asset["processingCost"] = round(cost, 4)
    asset["processingTime"] = format_duration(elapsed_ms)
    asset["processedAt"] = datetime.now(timezone.utc).isoformat()
    # Fresh totals; the next follow-up adds onto these.
    asset.pop(FOLLOWUP_MARKER, None)


def add_processing(asset: dict[str, Any], cost: float, elapsed_ms: float) -> None:
    """Add a later stage's cost and time onto the recorded totals."""

    asset["processingCost"] = round(float(asset.get("processingCost") or 0) + cost, 4)
    total_ms = parse_duration(asset.get("processingTime")) + elapsed_ms
    asset["processingTime"] = format_duration(total_ms)


def followup_applied(asset: dict[str, Any], job_id: int) -> bool:
    """True when this follow-up job's totals are already on the record."""

    return asset.get(FOLLOWUP_MARKER) == job_id


def mark_followup_applied(asset: dict[str, Any], job_id: int) -> None:
    asset[FOLLOWUP_MARKER] = job_id
