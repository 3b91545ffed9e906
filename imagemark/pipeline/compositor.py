"""
Watermark Compositor

Decodes a JPEG/PNG base image and optional watermark, places the watermark
in the bottom-right corner at 15% of the base width, blends it at a fixed
50% opacity and re-encodes the result as JPEG.

Pure CPU work: no I/O, no shared state. Every decoded buffer is owned by one
call and closed before it returns.
"""

import io
from dataclasses import asdict, dataclass
from typing import Optional, Tuple, Type

from PIL import Image

from imagemark.core.exceptions import (
    CompositeError,
    DecodeError,
    EncodeError,
    WatermarkDecodeError,
)
from imagemark.core.logging import get_logger

logger = get_logger(__name__)

SUPPORTED_FORMATS = frozenset({"JPEG", "PNG"})
OUTPUT_MEDIA_TYPE = "image/jpeg"
JPEG_QUALITY = 50

WATERMARK_WIDTH_RATIO = 0.15
PADDING_RATIO = 0.01
# Uniform mask value; the watermark's own alpha is ignored
WATERMARK_OPACITY = 128


@dataclass(frozen=True)
class Placement:
    """Size and top-left offset of the resized watermark on the base."""
    width: int
    height: int
    x: int
    y: int


def compute_placement(
    base_size: Tuple[int, int],
    watermark_size: Tuple[int, int]
) -> Optional[Placement]:
    """
    Compute watermark geometry for a base of ``base_size``.

    All dimensions truncate toward zero from float intermediates. Returns
    None when the scaled watermark would be empty.

    >>> compute_placement((1000, 800), (200, 100))
    Placement(width=150, height=75, x=842, y=717)
    """
    base_width, base_height = base_size
    watermark_width, watermark_height = watermark_size

    target_width = int(base_width * WATERMARK_WIDTH_RATIO)
    if target_width <= 0 or watermark_width <= 0:
        return None

    scale = target_width / watermark_width
    target_height = int(watermark_height * scale)
    if target_height <= 0:
        return None

    padding = int(base_height * PADDING_RATIO)
    return Placement(
        width=target_width,
        height=target_height,
        x=base_width - target_width - padding,
        y=base_height - target_height - padding,
    )


def _decode(data: bytes, error_cls: Type[CompositeError], label: str) -> Image.Image:
    """Open and fully load ``data``, accepting only JPEG and PNG."""
    try:
        image = Image.open(io.BytesIO(data))
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise error_cls(f"Cannot decode {label}: {e}") from e

    if image.format not in SUPPORTED_FORMATS:
        fmt = image.format
        image.close()
        raise error_cls(
            f"Unsupported {label} format: {fmt}",
            details={"format": fmt}
        )

    try:
        image.load()
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
        image.close()
        raise error_cls(f"Corrupt {label}: {e}") from e

    return image


def _apply_watermark(output: Image.Image, watermark: Image.Image) -> Optional[Placement]:
    placement = compute_placement(output.size, watermark.size)
    if placement is None:
        logger.info(
            "watermark_skipped",
            base_size=output.size,
            watermark_size=watermark.size
        )
        return None

    with watermark.convert("RGB") as opaque:
        resized = opaque.resize(
            (placement.width, placement.height),
            Image.Resampling.BILINEAR
        )

    with resized, Image.new("L", resized.size, WATERMARK_OPACITY) as mask:
        output.paste(resized, (placement.x, placement.y), mask)

    return placement


def composite(base: bytes, watermark: Optional[bytes] = None) -> bytes:
    """
    Watermark ``base`` and return JPEG bytes.

    Args:
        base: JPEG or PNG encoded image
        watermark: optional JPEG or PNG encoded watermark

    Returns:
        JPEG encoded output at quality 50, same dimensions as ``base``

    Raises:
        DecodeError: base is not a supported or valid image
        WatermarkDecodeError: watermark is not a supported or valid image
        EncodeError: JPEG encoding failed
    """
    with _decode(base, DecodeError, "base image") as base_image:
        # Work on a copy; the decoded source is never drawn on
        output = base_image.convert("RGB")

    try:
        placement = None
        if watermark is not None:
            with _decode(watermark, WatermarkDecodeError, "watermark") as watermark_image:
                placement = _apply_watermark(output, watermark_image)

        buffer = io.BytesIO()
        try:
            output.save(buffer, format="JPEG", quality=JPEG_QUALITY)
        except (OSError, ValueError) as e:
            raise EncodeError(f"JPEG encoding failed: {e}") from e
    finally:
        output.close()

    result = buffer.getvalue()
    logger.info(
        "composite_completed",
        input_size=len(base),
        output_size=len(result),
        watermarked=placement is not None,
        placement=asdict(placement) if placement else None
    )
    return result
