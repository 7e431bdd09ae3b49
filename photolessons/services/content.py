"""Generative content service client and the generation steps built on it."""

from __future__ import annotations

import base64
import io
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

import anthropic
from PIL import Image

from photolessons.errors import TransientExternalError
from photolessons.models import GRADE_LEVELS, GradeLevel
from photolessons.services.standards import (
    CATEGORY_TO_DOMAIN,
    DOMAIN_NAMES,
    standards_for_grade,
)

logger = logging.getLogger(__name__)

# USD per token.
INPUT_RATE = 1.0 / 1_000_000
CACHE_WRITE_RATE = 1.25 / 1_000_000
CACHE_READ_RATE = 0.10 / 1_000_000
OUTPUT_RATE = 5.0 / 1_000_000

CONTENT_MAX_TOKENS = 5000
KEYWORD_MAX_TOKENS = 300
FIVE_E_MAX_TOKENS = 6000
EDP_MAX_TOKENS = 2048

CONTENT_SYSTEM_PROMPT = (
    "You are an elementary science educator. Given a photograph, write a "
    "grade-appropriate markdown lesson guide. Cite NGSS performance "
    "expectations by code and tag core ideas as [[NGSS:DCI:<code>]] and "
    "crosscutting concepts as [[NGSS:CCC:<name>]]."
)

FIVE_E_SYSTEM_PROMPT = (
    "You are an elementary science curriculum designer. Given a photograph, "
    "write a markdown 5E lesson plan (Engage, Explore, Explain, Elaborate, "
    "Evaluate) for the requested grade."
)

EDP_SYSTEM_PROMPT = (
    "You are an NGSS Engineering Design Process coach. Given a photograph, "
    "turn what is visible into a grade-appropriate engineering challenge. "
    "List only elements that are directly observable, label inferences as "
    "such, and keep K-2 tasks free of technical terms."
)

EDP_PROMPT_TEMPLATE = (
    "Category: {category}\nPhoto: {filename}\n\n"
    "Write these sections with ### headers: Visible Elements in Photo, "
    "Reasonable Inferences, Engineering Task (K-2 and 3-5), EDP Phase Targeted, "
    "Suggested Materials, Estimated Time, Why This Works for Teachers."
)


@dataclass(frozen=True)
class Usage:
    """Token counters reported by the generative service."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_write_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def cost(self) -> float:
        return (
            self.input_tokens * INPUT_RATE
            + self.cache_write_tokens * CACHE_WRITE_RATE
            + self.cache_read_tokens * CACHE_READ_RATE
            + self.output_tokens * OUTPUT_RATE
        )


@dataclass(frozen=True)
class Generation:
    """Markdown text plus the usage it cost."""

    text: str
    usage: Usage


class ContentService(Protocol):
    def generate(
        self,
        image_bytes: bytes,
        media_type: str,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int = CONTENT_MAX_TOKENS,
    ) -> Generation:
        ...


class AnthropicContentService:
    """Generative content backed by the Anthropic messages API."""

    def __init__(self, api_key: str | None, model: str) -> None:
        self.client = anthropic.Anthropic(api_key=api_key)
        self.model = model

    def generate(
        self,
        image_bytes: bytes,
        media_type: str,
        prompt: str,
        *,
        system: str | None = None,
        max_tokens: int = CONTENT_MAX_TOKENS,
    ) -> Generation:
        request: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": media_type,
                                "data": base64.b64encode(image_bytes).decode("ascii"),
                            },
                            "cache_control": {"type": "ephemeral"},
                        },
                        {"type": "text", "text": prompt},
                    ],
                }
            ],
        }
        if system:
            request["system"] = [
                {"type": "text", "text": system, "cache_control": {"type": "ephemeral"}}
            ]
        try:
            response = self.client.messages.create(**request)
        except anthropic.APIError as exc:
            raise TransientExternalError(f"Generative service call failed: {exc}") from exc

        usage = response.usage
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        return Generation(
            text=text,
            usage=Usage(
                input_tokens=usage.input_tokens or 0,
                output_tokens=usage.output_tokens or 0,
                cache_write_tokens=getattr(usage, "cache_creation_input_tokens", 0) or 0,
                cache_read_tokens=getattr(usage, "cache_read_input_tokens", 0) or 0,
            ),
        )


@dataclass
class ContentBundle:
    """Per-grade markdown and the repository files it produced."""

    educational: dict[str, str] = field(default_factory=dict)
    files: dict[str, Any] = field(default_factory=dict)
    cost: float = 0.0


def generate_title(filename: str) -> str:
    """Build a readable title from a filename."""

    stem = Path(filename).stem
    words = re.sub(r"[_-]", " ", stem).split(" ")
    return " ".join(word[:1].upper() + word[1:] for word in words)


def detect_media_type(image_bytes: bytes) -> str:
    """Return the MIME type of an image from its content."""

    with Image.open(io.BytesIO(image_bytes)) as image:
        image_format = (image.format or "jpeg").lower()
    return f"image/{image_format}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_grade_prompt(category: str, filename: str, grade: GradeLevel) -> str:
    domain = CATEGORY_TO_DOMAIN.get(category, "")
    domain_name = DOMAIN_NAMES.get(domain, category)
    codes = standards_for_grade(category, grade.ngss_grade)
    listed = "\n".join(f"- {code}" for code in codes) or "No standards available."
    return (
        f"Category: {category}\n"
        f"NGSS Domain: {domain_name} ({domain} codes only)\n"
        f"Image: {filename}\n"
        f"Grade Level: {grade.name}\n\n"
        f"Performance expectations for {grade.ngss_grade}-{domain}:\n{listed}\n\n"
        "Use only the standards listed above."
    )


def _content_dir(category: str) -> str:
    return f"content/{category}"


def generate_grade_content(
    service: ContentService,
    image_bytes: bytes,
    media_type: str,
    category: str,
    filename: str,
    delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> ContentBundle:
    """Generate lesson content for every grade band, one call at a time.

    A failed call propagates; the job is retried as a whole.
    """

    stem = Path(filename).stem
    title = generate_title(filename)
    bundle = ContentBundle()
    for index, grade in enumerate(GRADE_LEVELS):
        if index and delay:
            sleep(delay)
        generation = service.generate(
            image_bytes,
            media_type,
            build_grade_prompt(category, filename, grade),
            system=CONTENT_SYSTEM_PROMPT,
            max_tokens=CONTENT_MAX_TOKENS,
        )
        bundle.cost += generation.usage.cost
        bundle.educational[grade.standards_key] = generation.text
        bundle.files[f"{_content_dir(category)}/{stem}-{grade.key}.json"] = {
            "title": title,
            "category": category,
            "imageFile": filename,
            "imagePath": f"images/{category}/{filename}",
            "gradeLevel": grade.name,
            "content": generation.text,
            "generatedAt": _now_iso(),
        }
        logger.info(
            "Grade content generated",
            extra={
                "event": "grade_content_generated",
                "context": {
                    "filename": filename,
                    "grade": grade.key,
                    "cost": round(generation.usage.cost, 6),
                    "cache_read_tokens": generation.usage.cache_read_tokens,
                },
            },
        )

    bundle.files[f"{_content_dir(category)}/{stem}.json"] = {
        "title": title,
        "category": category,
        "imageFile": filename,
        "imagePath": f"images/{category}/{filename}",
        "content": bundle.educational.get("grade3") or bundle.educational.get("kindergarten", ""),
        "generatedAt": _now_iso(),
        "educational": bundle.educational,
    }
    return bundle


def parse_keywords(text: str) -> list[str]:
    """Parse a JSON array of keywords, tolerating surrounding prose."""

    try:
        keywords = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("[")
        end = text.rfind("]") + 1
        if start == -1 or end <= start:
            raise ValueError("Could not find a JSON array in the response.")
        keywords = json.loads(text[start:end])
    if not isinstance(keywords, list) or len(keywords) < 3:
        raise ValueError("Expected an array of at least 3 keywords.")
    normalized = [str(keyword).strip().lower() for keyword in keywords]
    return [keyword for keyword in normalized if keyword]


def generate_keywords(
    service: ContentService,
    image_bytes: bytes,
    media_type: str,
    category: str,
) -> tuple[list[str], float]:
    """Generate search keywords; returns ([], 0.0) on any failure."""

    prompt = (
        "Generate 3-6 lowercase search keywords a K-5 teacher would use to find "
        f"this image. Science category: {category}. "
        "Return ONLY a JSON array of strings."
    )
    try:
        generation = service.generate(
            image_bytes, media_type, prompt, max_tokens=KEYWORD_MAX_TOKENS
        )
        keywords = parse_keywords(generation.text)
    except (TransientExternalError, ValueError) as exc:
        logger.warning(
            "Keyword generation failed",
            extra={
                "event": "keywords_failed",
                "context": {"category": category, "error": str(exc)},
            },
        )
        return [], 0.0
    return keywords, generation.usage.cost


def generate_five_e_content(
    service: ContentService,
    image_bytes: bytes,
    media_type: str,
    category: str,
    filename: str,
    delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> ContentBundle:
    """Generate 5E lesson plans for every grade band, sequentially."""

    stem = Path(filename).stem
    title = generate_title(filename)
    bundle = ContentBundle()
    for index, grade in enumerate(GRADE_LEVELS):
        if index and delay:
            sleep(delay)
        prompt = (
            f"Category: {category}\nImage: {filename}\nGrade Level: {grade.name}\n"
            "Write the 5E lesson plan."
        )
        generation = service.generate(
            image_bytes,
            media_type,
            prompt,
            system=FIVE_E_SYSTEM_PROMPT,
            max_tokens=FIVE_E_MAX_TOKENS,
        )
        bundle.cost += generation.usage.cost
        bundle.educational[grade.key] = generation.text
        bundle.files[f"{_content_dir(category)}/{stem}-5e-{grade.key}.json"] = {
            "title": f"{title} 5E Lesson Plan",
            "category": category,
            "imageFile": filename,
            "gradeLevel": grade.name,
            "content": generation.text,
            "generatedAt": _now_iso(),
        }
    return bundle


def generate_edp_content(
    service: ContentService,
    image_bytes: bytes,
    media_type: str,
    category: str,
    filename: str,
) -> ContentBundle:
    """Generate the engineering design challenge for a photo in one call."""

    stem = Path(filename).stem
    generation = service.generate(
        image_bytes,
        media_type,
        EDP_PROMPT_TEMPLATE.format(category=category, filename=filename),
        system=EDP_SYSTEM_PROMPT,
        max_tokens=EDP_MAX_TOKENS,
    )
    cost = generation.usage.cost
    bundle = ContentBundle(cost=cost)
    bundle.educational["edp"] = generation.text
    bundle.files[f"{_content_dir(category)}/{stem}-edp.json"] = {
        "title": generate_title(filename),
        "category": category,
        "imageFile": filename,
        "imagePath": f"images/{category}/{filename}",
        "content": generation.text,
        "inputTokens": generation.usage.input_tokens,
        "outputTokens": generation.usage.output_tokens,
        "cost": round(cost, 6),
        "generatedAt": _now_iso(),
    }
    return bundle
