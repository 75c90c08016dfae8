"""水印位置解析、文字排版与混合计算。"""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from image_converter.core.config import Anchor, ImageWatermark, TextWatermark, WatermarkSpec
from image_converter.core.exceptions import InvalidOverlayError, InvalidParametersError
from image_converter.core.models import PixelFormat, RasterImage
from image_converter.processing.watermark import (
    apply_watermark,
    blend,
    brand_watermark,
    copyright_watermark,
    glyph_width,
    measure_text,
    prepare_watermark,
    render_text_tile,
    resolve_position,
)


def _canvas(width: int = 200, height: int = 120, mode: str = "RGB", color=(0, 0, 0)) -> RasterImage:
    return RasterImage.from_pil(Image.new(mode, (width, height), color))


@pytest.mark.parametrize("anchor", list(Anchor))
@pytest.mark.parametrize("overlay_size", [(10, 10), (50, 20), (160, 80)])
def test_every_anchor_keeps_overlay_inside_margin(anchor: Anchor, overlay_size: tuple[int, int]) -> None:
    canvas_size = (200, 120)
    margin = 20

    x, y = resolve_position(canvas_size, overlay_size, anchor, margin)

    assert margin <= x and x + overlay_size[0] <= canvas_size[0] - margin
    assert margin <= y and y + overlay_size[1] <= canvas_size[1] - margin


def test_anchor_corners_and_center() -> None:
    assert resolve_position((200, 100), (40, 20), Anchor.TOP_LEFT, 10) == (10, 10)
    assert resolve_position((200, 100), (40, 20), Anchor.BOTTOM_RIGHT, 10) == (150, 70)
    assert resolve_position((200, 100), (40, 20), Anchor.MIDDLE_CENTER, 10) == (80, 40)
    assert resolve_position((200, 100), (40, 20), Anchor.BOTTOM_CENTER, 10) == (80, 70)


def test_explicit_position_bypasses_anchor_resolution() -> None:
    assert resolve_position((200, 100), (40, 20), (3, 190), 50) == (3, 190)


@pytest.mark.parametrize("text", ["A", "HELLO", "Watermark 2024"])
@pytest.mark.parametrize("spacing", [0.0, 1.0, 2.5, 7.3])
def test_text_width_follows_letter_spacing(text: str, spacing: float) -> None:
    font_size = 20
    expected = len(text) * glyph_width(font_size) + (len(text) - 1) * spacing

    assert abs(measure_text(text, font_size, spacing) - expected) <= 1


def test_text_tile_without_background_has_exact_width() -> None:
    spec = TextWatermark(text="ABC", font_size=10, letter_spacing=2.0, background=None)

    tile = render_text_tile(spec)

    assert tile.size == (measure_text("ABC", 10, 2.0), 10)
    assert tile.mode == "RGBA"
    alpha = np.asarray(tile)[..., 3]
    assert alpha.max() == spec.color[3]


def test_text_tile_background_is_padded() -> None:
    spec = TextWatermark(text="HI", font_size=16, background=(0, 0, 0, 100), padding=4)

    tile = render_text_tile(spec)

    assert tile.size == (measure_text("HI", 16, spec.letter_spacing) + 8, 24)
    assert tile.getpixel((0, 0)) == (0, 0, 0, 100)


def test_blend_is_linear_per_channel() -> None:
    canvas = np.full((4, 4, 3), 100, dtype=np.uint8)
    overlay = Image.new("RGBA", (2, 2), (200, 0, 50, 255))

    blend(canvas, overlay, (1, 1), 0.5)

    assert tuple(canvas[1, 1]) == (150, 50, 75)
    assert tuple(canvas[0, 0]) == (100, 100, 100)


def test_blend_updates_destination_alpha_and_clips() -> None:
    canvas = np.zeros((4, 4, 4), dtype=np.uint8)
    overlay = Image.new("RGBA", (3, 3), (255, 255, 255, 255))

    blend(canvas, overlay, (2, 2), 1.0)

    assert tuple(canvas[3, 3]) == (255, 255, 255, 255)
    assert tuple(canvas[1, 1]) == (0, 0, 0, 0)


def test_apply_text_watermark_returns_new_buffer() -> None:
    raster = _canvas()
    original = bytes(raster.data)
    spec = WatermarkSpec(text=TextWatermark(text="TEST", color=(255, 255, 255, 255), opacity=1.0, background=None))

    result = apply_watermark(raster, spec)

    assert raster.data == original
    assert result is not raster
    assert result.size == raster.size
    changed = np.argwhere(result.as_array().any(axis=2))
    assert changed.size
    # 默认右下角：所有改动都在右下区域
    assert changed[:, 0].min() >= 120 // 2
    assert changed[:, 1].min() >= 200 // 2


def test_grayscale_input_is_promoted_to_rgb() -> None:
    raster = _canvas(mode="L", color=0)

    result = apply_watermark(raster, WatermarkSpec(text=copyright_watermark("ACME")))

    assert result.pixel_format is PixelFormat.RGB


def test_image_overlay_is_scaled_and_blended(tmp_path: Path) -> None:
    overlay_path = tmp_path / "logo.png"
    Image.new("RGBA", (100, 50), (255, 0, 0, 255)).save(overlay_path)
    spec = WatermarkSpec(
        image=ImageWatermark(overlay_path=overlay_path, opacity=1.0, scale=0.2, position=Anchor.TOP_LEFT, margin=5)
    )

    result = apply_watermark(_canvas(), spec).as_array()

    assert tuple(result[5, 5]) == (255, 0, 0)
    assert tuple(result[5 + 9, 5 + 19]) == (255, 0, 0)
    assert tuple(result[5 + 10, 5]) == (0, 0, 0)
    assert tuple(result[5, 5 + 20]) == (0, 0, 0)


def test_invalid_overlay_raises(tmp_path: Path) -> None:
    broken = tmp_path / "broken.png"
    broken.write_text("not a png")

    with pytest.raises(InvalidOverlayError):
        apply_watermark(_canvas(), WatermarkSpec(image=ImageWatermark(overlay_path=broken)))


def test_empty_spec_returns_input_unchanged() -> None:
    raster = _canvas()

    assert apply_watermark(raster, None) is raster
    assert apply_watermark(raster, WatermarkSpec()) is raster


def test_presets_and_validation() -> None:
    assert copyright_watermark("Alice").text == "© Alice"
    assert brand_watermark("ACME").position is Anchor.BOTTOM_CENTER

    with pytest.raises(InvalidParametersError):
        TextWatermark(text="x", opacity=1.5)
    with pytest.raises(InvalidParametersError):
        TextWatermark(text="")


def test_prepared_watermark_matches_direct_application(tmp_path: Path) -> None:
    overlay_path = tmp_path / "logo.png"
    Image.new("RGBA", (40, 20), (0, 255, 0, 255)).save(overlay_path)
    spec = WatermarkSpec(
        text=TextWatermark(text="OK", position=Anchor.TOP_LEFT, background=None),
        image=ImageWatermark(overlay_path=overlay_path, scale=0.5),
    )

    prepared = prepare_watermark(spec)

    assert prepared is not None and prepared.overlay_error is None
    assert prepared.overlay.size == (20, 10)
    assert apply_watermark(_canvas(), prepared) == apply_watermark(_canvas(), spec)


def test_prepared_watermark_keeps_overlay_error(tmp_path: Path) -> None:
    broken = tmp_path / "broken.png"
    broken.write_text("not a png")

    prepared = prepare_watermark(WatermarkSpec(image=ImageWatermark(overlay_path=broken)))

    assert prepared is not None and prepared.overlay is None
    assert "broken.png" in prepared.overlay_error
    with pytest.raises(InvalidOverlayError):
        apply_watermark(_canvas(), prepared)
    assert prepare_watermark(None) is None
