"""Image variant generation for the gallery media store."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

THUMB_HEIGHT = 600
WEBP_QUALITY = 80
PLACEHOLDER_WIDTH = 20


@dataclass(frozen=True)
class VariantResult:
    """Result of a variant generation attempt.

    Paths are relative to the media store root.
    """

    status: str
    message: str
    variants: dict[str, str] = field(default_factory=dict)


def variant_paths(category: str, filename: str) -> dict[str, str]:
    """Media-store paths for an image and its derived variants."""

    stem = Path(filename).stem
    return {
        "imagePath": f"images/{category}/{filename}",
        "thumbPath": f"images/{category}/thumbs/{filename}",
        "webpPath": f"images/{category}/webp/{stem}.webp",
        "placeholderPath": f"images/{category}/placeholders/{filename}",
    }


def _save(image: Image.Image, destination: Path, **params) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    if image.mode not in ("RGB", "L") and destination.suffix.lower() in (".jpg", ".jpeg"):
        image = image.convert("RGB")
    image.save(destination, **params)


class ImageOptimizer:
    """Writes the original photo plus thumbnail, WebP and placeholder."""

    def __init__(self, media_dir: Path) -> None:
        self.media_dir = Path(media_dir)

    def store_original(self, source: Path, category: str, filename: str) -> str:
        relative = variant_paths(category, filename)["imagePath"]
        destination = self.media_dir / relative
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
        return relative

    def generate_variants(self, source: Path, category: str, filename: str) -> VariantResult:
        paths = variant_paths(category, filename)
        try:
            with Image.open(source) as opened:
                image = ImageOps.exif_transpose(opened)
                width, height = image.size

                thumb_width = max(1, round(width * THUMB_HEIGHT / height))
                thumb = image.resize((thumb_width, THUMB_HEIGHT))
                _save(thumb, self.media_dir / paths["thumbPath"], format=opened.format)
                _save(
                    thumb,
                    self.media_dir / paths["webpPath"],
                    format="WEBP",
                    quality=WEBP_QUALITY,
                )

                placeholder_height = max(1, round(height * PLACEHOLDER_WIDTH / width))
                placeholder = image.resize((PLACEHOLDER_WIDTH, placeholder_height))
                _save(
                    placeholder,
                    self.media_dir / paths["placeholderPath"],
                    format=opened.format,
                )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Variant generation failed",
                extra={
                    "event": "variants_failed",
                    "context": {"source": str(source), "error": str(exc)},
                },
            )
            return VariantResult(status="failed", message=str(exc))

        variants = {key: value for key, value in paths.items() if key != "imagePath"}
        logger.info(
            "Generated image variants",
            extra={
                "event": "variants_generated",
                "context": {"filename": filename, "variants": sorted(variants)},
            },
        )
        return VariantResult(status="created", message="Variants generated.", variants=variants)
