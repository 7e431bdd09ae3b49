"""Coverage index export.

The index is always rebuilt from the full metadata snapshot, never
patched, and is written into the same commit as the metadata change that
triggered it.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

from photolessons.services.repository import (
    INDEX_FILE,
    METADATA_FILE,
    RepositoryPublisher,
    WorkingCopy,
)
from photolessons.services.standards import PE_PATTERN

logger = logging.getLogger(__name__)

DCI_TAG = re.compile(r"\[\[NGSS:DCI:([^\]]+)\]\]")
CCC_TAG = re.compile(r"\[\[NGSS:CCC:([^\]]+)\]\]")

ContentReader = Callable[[str], str | None]


def _content_markdown(image: dict[str, Any], read_content: ContentReader) -> str:
    """Markdown used for core idea and crosscutting concept tags.

    Prefers the third-grade file, falling back to the combined file.
    """

    content_file = image.get("contentFile")
    if not content_file:
        return ""
    candidates = [content_file.replace(".json", "-third-grade.json"), content_file]
    for candidate in candidates:
        raw = read_content(candidate)
        if raw is None:
            continue
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            continue
        return payload.get("content") or ""
    return ""


def _add(bucket: dict[str, set[int]], code: str, image_id: int) -> None:
    bucket.setdefault(code, set()).add(image_id)


def _freeze(bucket: dict[str, set[int]]) -> dict[str, list[int]]:
    return {code: sorted(ids) for code, ids in sorted(bucket.items())}


def build_coverage_index(
    metadata: dict[str, Any], read_content: ContentReader
) -> dict[str, Any]:
    """Compute the coverage index from a metadata snapshot."""

    performance: dict[str, set[int]] = {}
    core_ideas: dict[str, set[int]] = {}
    concepts: dict[str, set[int]] = {}

    for image in metadata.get("images", []):
        image_id = image["id"]
        standards = image.get("ngssStandards")
        if isinstance(standards, dict):
            for codes in standards.values():
                if not isinstance(codes, list):
                    continue
                for code in codes:
                    if PE_PATTERN.match(code):
                        _add(performance, code, image_id)

        markdown = _content_markdown(image, read_content)
        for match in DCI_TAG.finditer(markdown):
            _add(core_ideas, match.group(1), image_id)
        for match in CCC_TAG.finditer(markdown):
            _add(concepts, match.group(1), image_id)

    all_standards = sorted(
        {f"PE: {code}" for code in performance}
        | {f"DCI: {code}" for code in core_ideas}
        | {f"CCC: {name}" for name in concepts}
    )
    return {
        "performanceExpectations": _freeze(performance),
        "disciplinaryCoreIdeas": _freeze(core_ideas),
        "crosscuttingConcepts": _freeze(concepts),
        "allStandards": all_standards,
    }


def rebuild_coverage_index(
    publisher: RepositoryPublisher, working_copy: WorkingCopy
) -> dict[str, Any]:
    """Rebuild the index from the working copy and stage it for commit."""

    metadata = working_copy.read_json(METADATA_FILE, default={"images": []})
    index = build_coverage_index(metadata, working_copy.read_text)
    publisher.mutate(working_copy, {INDEX_FILE: index})
    logger.info(
        "Rebuilt coverage index",
        extra={
            "event": "coverage_index_rebuilt",
            "context": {
                "images": len(metadata.get("images", [])),
                "performance_expectations": len(index["performanceExpectations"]),
                "core_ideas": len(index["disciplinaryCoreIdeas"]),
                "crosscutting_concepts": len(index["crosscuttingConcepts"]),
            },
        },
    )
    return index
