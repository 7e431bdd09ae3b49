"""Lesson PDF rendering."""

from __future__ import annotations

import io
import re
import textwrap
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, ImageDraw, ImageFont

PAGE_SIZE = (1275, 1650)  # US Letter at 150 dpi
MARGIN = 90
LINE_HEIGHT = 22
WRAP_COLUMNS = 100
RESOLUTION = 150.0


@dataclass(frozen=True)
class PdfTemplate:
    """Header information printed on every lesson document."""

    title: str
    category: str
    grade_name: str
    kind: str = "Lesson Guide"


def _plain_lines(markdown: str) -> list[str]:
    lines: list[str] = []
    for raw in markdown.splitlines():
        text = re.sub(r"\[\[NGSS:[A-Z]+:([^\]]+)\]\]", r"\1", raw)
        text = re.sub(r"^[#>*\-\s]+", "", text).replace("**", "")
        if not text.strip():
            lines.append("")
            continue
        lines.extend(textwrap.wrap(text, WRAP_COLUMNS) or [""])
    return lines


class PdfRenderer:
    """Draws markdown text beneath the source photo and saves it as PDF."""

    def __init__(self) -> None:
        self.font = ImageFont.load_default()

    def _new_page(self, template: PdfTemplate) -> tuple[Image.Image, ImageDraw.ImageDraw, int]:
        page = Image.new("RGB", PAGE_SIZE, "white")
        draw = ImageDraw.Draw(page)
        draw.text((MARGIN, MARGIN), template.title, fill="black", font=self.font)
        subtitle = f"{template.kind} | {template.grade_name} | {template.category}"
        draw.text((MARGIN, MARGIN + LINE_HEIGHT), subtitle, fill="#555555", font=self.font)
        return page, draw, MARGIN + LINE_HEIGHT * 3

    def render(self, markdown: str, image_path: Path, template: PdfTemplate) -> bytes:
        pages: list[Image.Image] = []
        page, draw, cursor = self._new_page(template)

        with Image.open(image_path) as photo:
            photo = photo.convert("RGB")
            photo.thumbnail((PAGE_SIZE[0] - 2 * MARGIN, PAGE_SIZE[1] // 3))
            page.paste(photo, (MARGIN, cursor))
            cursor += photo.size[1] + LINE_HEIGHT

        for line in _plain_lines(markdown):
            if cursor > PAGE_SIZE[1] - MARGIN:
                pages.append(page)
                page, draw, cursor = self._new_page(template)
            draw.text((MARGIN, cursor), line, fill="black", font=self.font)
            cursor += LINE_HEIGHT
        pages.append(page)

        buffer = io.BytesIO()
        pages[0].save(
            buffer,
            format="PDF",
            save_all=True,
            append_images=pages[1:],
            resolution=RESOLUTION,
        )
        return buffer.getvalue()
