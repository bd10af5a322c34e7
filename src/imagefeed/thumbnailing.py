"""Resize and encode fetched images according to a transform preset."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from PIL import Image, UnidentifiedImageError
from PIL.Image import Resampling

from imagefeed.config import TransformPreset
from imagefeed.errors import ImageTransformError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "thumbnailing"})


@dataclass(frozen=True)
class TransformedImage:
    """Encoded output of a transform and its final pixel size."""

    path: Path
    width: int
    height: int


def _get_resample_filter() -> Resampling:
    return Resampling.LANCZOS


def build_resized_image(image: Image.Image, max_side: int) -> Image.Image:
    """Produce an RGB copy of an image constrained to ``max_side`` pixels."""

    safe_side = max(1, int(max_side))
    resized = image.convert("RGB") if image.mode != "RGB" else image.copy()
    resized.thumbnail((safe_side, safe_side), resample=_get_resample_filter())
    return resized


def transform_image(source: Path, output_path: Path, preset: TransformPreset) -> TransformedImage:
    """Decode ``source``, resize it per ``preset`` and write a JPEG to ``output_path``.

    Raises :class:`ImageTransformError` when the file is not a decodable
    image or is smaller than the preset's minimum side.
    """

    try:
        with Image.open(source) as image:
            image.load()
            width, height = image.size
            if min(width, height) < preset.min_side:
                raise ImageTransformError(
                    f"image {width}x{height} is below the minimum side of {preset.min_side}px"
                )
            resized = build_resized_image(image, preset.max_side)
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise ImageTransformError(f"cannot decode image: {exc}") from exc

    output_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        resized.save(output_path, format="JPEG", quality=preset.quality)
    except OSError as exc:
        LOGGER.error(
            "transform_save_error",
            extra={"path": str(output_path), "max_side": preset.max_side, "quality": preset.quality, "error": str(exc)},
        )
        raise ImageTransformError(f"cannot encode image: {exc}") from exc

    return TransformedImage(path=output_path, width=resized.width, height=resized.height)


__all__ = ["TransformedImage", "build_resized_image", "transform_image"]
