import io

import pytest
from PIL import Image

from imagemark.core.exceptions import DecodeError, WatermarkDecodeError
from imagemark.pipeline.compositor import Placement, composite, compute_placement


def open_output(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


@pytest.mark.parametrize(
    "base_size, watermark_size, expected",
    [
        ((1000, 800), (200, 100), Placement(width=150, height=75, x=842, y=717)),
        ((2000, 1000), (400, 200), Placement(width=300, height=150, x=1690, y=840)),
        ((640, 480), (300, 100), Placement(width=96, height=32, x=540, y=444)),
    ],
)
def test_compute_placement(base_size, watermark_size, expected):
    assert compute_placement(base_size, watermark_size) == expected


def test_compute_placement_tiny_base_skips():
    # int(6 * 0.15) == 0
    assert compute_placement((6, 6), (10, 10)) is None


def test_compute_placement_flat_watermark_skips():
    # target height int(1 * 150 / 1000) == 0
    assert compute_placement((1000, 800), (1000, 1)) is None


def test_composite_without_watermark_reencodes_jpeg(image_bytes):
    output = composite(image_bytes(size=(120, 80), fmt="PNG"))

    with open_output(output) as image:
        assert image.format == "JPEG"
        assert image.size == (120, 80)
        assert image.mode == "RGB"


def test_composite_blends_watermark_bottom_right(image_bytes):
    base = image_bytes(size=(1000, 800), color=(255, 255, 255), fmt="JPEG")
    watermark = image_bytes(size=(200, 100), color=(0, 0, 0), fmt="PNG")

    output = composite(base, watermark)

    with open_output(output) as image:
        assert image.size == (1000, 800)
        # Center of the 150x75 watermark at (842, 717): half black over white
        r, g, b = image.getpixel((842 + 75, 717 + 37))
        assert 100 <= r <= 160
        assert 100 <= g <= 160
        # Far corner untouched
        assert image.getpixel((10, 10))[0] > 240
        # Padding strip right of the watermark untouched
        assert image.getpixel((995, 790))[0] > 240


def test_composite_ignores_watermark_alpha(image_bytes):
    base = image_bytes(size=(1000, 800), color=(255, 255, 255), fmt="PNG")
    # Fully transparent black still blends at the fixed opacity
    watermark = image_bytes(size=(200, 100), color=(0, 0, 0, 0), fmt="PNG")

    with open_output(composite(base, watermark)) as image:
        assert image.getpixel((842 + 75, 717 + 37))[0] < 200


def test_composite_accepts_rgba_base(image_bytes):
    base = image_bytes(size=(50, 50), color=(10, 20, 30, 128), fmt="PNG")

    with open_output(composite(base)) as image:
        assert image.mode == "RGB"
        assert image.size == (50, 50)


def test_composite_tiny_base_skips_watermark(image_bytes):
    base = image_bytes(size=(5, 5), fmt="PNG")
    watermark = image_bytes(size=(20, 20), color=(0, 0, 0), fmt="PNG")

    with open_output(composite(base, watermark)) as image:
        assert image.size == (5, 5)


def test_composite_does_not_modify_input(image_bytes):
    base = image_bytes(size=(200, 200), fmt="PNG")
    original = bytes(base)

    composite(base, image_bytes(size=(40, 40), color=(0, 0, 0), fmt="PNG"))

    assert base == original


def test_composite_rejects_unsupported_base_format(image_bytes):
    with pytest.raises(DecodeError):
        composite(image_bytes(fmt="GIF", mode="P", color=0))


def test_composite_rejects_garbage_base():
    with pytest.raises(DecodeError) as exc_info:
        composite(b"definitely not an image")
    assert exc_info.value.stage == "composite"


def test_composite_rejects_truncated_base(image_bytes):
    data = image_bytes(size=(300, 300), fmt="JPEG")
    with pytest.raises(DecodeError):
        composite(data[: len(data) // 2])


def test_composite_bad_watermark_is_distinct_error(image_bytes):
    base = image_bytes(size=(200, 200), fmt="PNG")

    with pytest.raises(WatermarkDecodeError):
        composite(base, b"\x89PNG broken")

    with pytest.raises(WatermarkDecodeError):
        composite(base, image_bytes(fmt="BMP"))


def test_composite_records_no_metrics(image_bytes):
    from prometheus_client import REGISTRY

    labels = {"stage": "composite", "status": "success"}
    before = REGISTRY.get_sample_value("pipeline_latency_seconds_count", labels)

    composite(image_bytes(size=(40, 40), fmt="PNG"))

    assert REGISTRY.get_sample_value("pipeline_latency_seconds_count", labels) == before
