"""文字与图片水印的合成。"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import numpy as np
from PIL import Image

from image_converter.core.config import Anchor, ImageWatermark, Position, TextWatermark, WatermarkSpec
from image_converter.core.exceptions import DecodeError, InvalidOverlayError, WatermarkError
from image_converter.core.models import PixelFormat, RasterImage
from image_converter.processing.codec import load_image

LOGGER = logging.getLogger(__name__)

_RESAMPLING = getattr(Image, "Resampling", Image)

# 水平/垂直对齐：0 起始边，1 居中，2 结束边
_ANCHOR_ALIGNMENT = {
    Anchor.TOP_LEFT: (0, 0),
    Anchor.TOP_CENTER: (1, 0),
    Anchor.TOP_RIGHT: (2, 0),
    Anchor.MIDDLE_LEFT: (0, 1),
    Anchor.MIDDLE_CENTER: (1, 1),
    Anchor.MIDDLE_RIGHT: (2, 1),
    Anchor.BOTTOM_LEFT: (0, 2),
    Anchor.BOTTOM_CENTER: (1, 2),
    Anchor.BOTTOM_RIGHT: (2, 2),
}

# 8x8 点阵字形，每行一个字节，高位在左。
_GLYPHS = {
    "A": (0x18, 0x24, 0x42, 0x42, 0x7E, 0x42, 0x42, 0x00),
    "B": (0x7C, 0x42, 0x42, 0x7C, 0x42, 0x42, 0x7C, 0x00),
    "C": (0x3C, 0x42, 0x40, 0x40, 0x40, 0x42, 0x3C, 0x00),
    "D": (0x78, 0x44, 0x42, 0x42, 0x42, 0x44, 0x78, 0x00),
    "E": (0x7E, 0x40, 0x40, 0x7C, 0x40, 0x40, 0x7E, 0x00),
    "F": (0x7E, 0x40, 0x40, 0x7C, 0x40, 0x40, 0x40, 0x00),
    "G": (0x3C, 0x42, 0x40, 0x4E, 0x42, 0x42, 0x3C, 0x00),
    "H": (0x42, 0x42, 0x42, 0x7E, 0x42, 0x42, 0x42, 0x00),
    "I": (0x7E, 0x18, 0x18, 0x18, 0x18, 0x18, 0x7E, 0x00),
    "J": (0x3E, 0x04, 0x04, 0x04, 0x44, 0x44, 0x38, 0x00),
    "K": (0x42, 0x44, 0x48, 0x70, 0x48, 0x44, 0x42, 0x00),
    "L": (0x40, 0x40, 0x40, 0x40, 0x40, 0x40, 0x7E, 0x00),
    "M": (0x42, 0x66, 0x5A, 0x42, 0x42, 0x42, 0x42, 0x00),
    "N": (0x42, 0x62, 0x52, 0x4A, 0x46, 0x42, 0x42, 0x00),
    "O": (0x3C, 0x42, 0x42, 0x42, 0x42, 0x42, 0x3C, 0x00),
    "P": (0x7C, 0x42, 0x42, 0x7C, 0x40, 0x40, 0x40, 0x00),
    "Q": (0x3C, 0x42, 0x42, 0x52, 0x4A, 0x44, 0x3A, 0x00),
    "R": (0x7C, 0x42, 0x42, 0x7C, 0x48, 0x44, 0x42, 0x00),
    "S": (0x3C, 0x42, 0x40, 0x3C, 0x02, 0x42, 0x3C, 0x00),
    "T": (0x7E, 0x18, 0x18, 0x18, 0x18, 0x18, 0x18, 0x00),
    "U": (0x42, 0x42, 0x42, 0x42, 0x42, 0x42, 0x3C, 0x00),
    "V": (0x42, 0x42, 0x42, 0x42, 0x24, 0x24, 0x18, 0x00),
    "W": (0x42, 0x42, 0x42, 0x42, 0x5A, 0x66, 0x42, 0x00),
    "X": (0x42, 0x24, 0x18, 0x18, 0x18, 0x24, 0x42, 0x00),
    "Y": (0x42, 0x42, 0x24, 0x18, 0x18, 0x18, 0x18, 0x00),
    "Z": (0x7E, 0x04, 0x08, 0x10, 0x20, 0x40, 0x7E, 0x00),
    "0": (0x3C, 0x46, 0x4A, 0x52, 0x52, 0x62, 0x3C, 0x00),
    "1": (0x18, 0x38, 0x18, 0x18, 0x18, 0x18, 0x7E, 0x00),
    "2": (0x3C, 0x42, 0x02, 0x3C, 0x40, 0x40, 0x7E, 0x00),
    "3": (0x3C, 0x42, 0x02, 0x1C, 0x02, 0x42, 0x3C, 0x00),
    "4": (0x08, 0x18, 0x28, 0x48, 0x7E, 0x08, 0x08, 0x00),
    "5": (0x7E, 0x40, 0x7C, 0x02, 0x02, 0x42, 0x3C, 0x00),
    "6": (0x3C, 0x40, 0x40, 0x7C, 0x42, 0x42, 0x3C, 0x00),
    "7": (0x7E, 0x02, 0x04, 0x08, 0x10, 0x20, 0x20, 0x00),
    "8": (0x3C, 0x42, 0x42, 0x3C, 0x42, 0x42, 0x3C, 0x00),
    "9": (0x3C, 0x42, 0x42, 0x3E, 0x02, 0x02, 0x3C, 0x00),
    "©": (0x3C, 0x42, 0x9D, 0xA1, 0xA1, 0x9D, 0x42, 0x3C),
    "@": (0x3C, 0x42, 0x9A, 0xAA, 0x9E, 0x80, 0x7C, 0x00),
    " ": (0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00),
    ".": (0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x18, 0x00),
    ",": (0x00, 0x00, 0x00, 0x00, 0x00, 0x18, 0x10, 0x20),
    ":": (0x00, 0x00, 0x18, 0x00, 0x00, 0x18, 0x00, 0x00),
    "-": (0x00, 0x00, 0x00, 0x7E, 0x00, 0x00, 0x00, 0x00),
    "_": (0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0xFF),
}
_FALLBACK_GLYPH = (0x3C, 0x42, 0x99, 0xA1, 0xA1, 0x99, 0x42, 0x3C)


def copyright_watermark(author: str) -> TextWatermark:
    """版权水印预设：右下角、小字号、半透明底色。"""

    return TextWatermark(
        text=f"© {author}",
        font_size=16,
        color=(255, 255, 255, 200),
        opacity=0.8,
        position=Anchor.BOTTOM_RIGHT,
        margin=15,
        letter_spacing=1.0,
        background=(0, 0, 0, 80),
    )


def brand_watermark(brand_name: str) -> TextWatermark:
    """品牌水印预设：下方居中、大字距、无底色。"""

    return TextWatermark(
        text=brand_name,
        font_size=24,
        color=(200, 200, 200, 180),
        opacity=0.6,
        position=Anchor.BOTTOM_CENTER,
        margin=30,
        letter_spacing=3.0,
        background=None,
    )


def resolve_position(
    canvas_size: Tuple[int, int],
    overlay_size: Tuple[int, int],
    position: Position,
    margin: int,
) -> Tuple[int, int]:
    """计算叠加层左上角坐标。

    锚点结果限制在 [margin, size - overlay - margin] 内；显式坐标原样返回。
    """

    if not isinstance(position, Anchor):
        x, y = position
        return int(x), int(y)

    h_align, v_align = _ANCHOR_ALIGNMENT[position]
    return (
        _align(canvas_size[0], overlay_size[0], margin, h_align),
        _align(canvas_size[1], overlay_size[1], margin, v_align),
    )


def _align(total: int, size: int, margin: int, alignment: int) -> int:
    if alignment == 0:
        offset = margin
    elif alignment == 1:
        offset = (total - size) // 2
    else:
        offset = total - size - margin
    upper = max(margin, total - size - margin)
    return max(margin, min(offset, upper))


def glyph_width(font_size: int) -> int:
    return max(1, font_size * 6 // 10)


def measure_text(text: str, font_size: int, letter_spacing: float) -> int:
    """文字总宽度：最后一个字形的起点加上字形宽度。"""

    if not text:
        return 0
    advance = glyph_width(font_size) + letter_spacing
    return int(round((len(text) - 1) * advance)) + glyph_width(font_size)


def _glyph_mask(char: str, width: int, height: int) -> Image.Image:
    pattern = _GLYPHS.get(char.upper(), _FALLBACK_GLYPH)
    bits = np.unpackbits(np.array(pattern, dtype=np.uint8)).reshape(8, 8) * 255
    return Image.fromarray(bits.astype(np.uint8)).resize((width, height), _RESAMPLING.NEAREST)


def render_text_tile(spec: TextWatermark) -> Image.Image:
    """将文字渲染为 RGBA 图块，背景框（若有）位于字形之下。"""

    text_width = measure_text(spec.text, spec.font_size, spec.letter_spacing)
    padding = spec.padding if spec.background is not None else 0
    size = (text_width + 2 * padding, spec.font_size + 2 * padding)

    glyphs = Image.new("RGBA", size, (0, 0, 0, 0))
    width = glyph_width(spec.font_size)
    advance = width + spec.letter_spacing
    color_block = Image.new("RGBA", (width, spec.font_size), spec.color)
    for index, char in enumerate(spec.text):
        x = padding + int(round(index * advance))
        glyphs.paste(color_block, (x, padding), mask=_glyph_mask(char, width, spec.font_size))

    if spec.background is None:
        return glyphs
    background = Image.new("RGBA", size, spec.background)
    return Image.alpha_composite(background, glyphs)


def load_overlay(spec: ImageWatermark) -> Image.Image:
    """加载并缩放水印图片，失败时抛出 InvalidOverlayError。"""

    try:
        raster = load_image(spec.overlay_path)
    except DecodeError as exc:
        raise InvalidOverlayError(f"无法加载水印图片: {spec.overlay_path}") from exc

    overlay = raster.to_pil().convert("RGBA")
    if spec.scale != 1.0:
        width = max(1, int(round(overlay.width * spec.scale)))
        height = max(1, int(round(overlay.height * spec.scale)))
        overlay = overlay.resize((width, height), _RESAMPLING.LANCZOS)
    return overlay


@dataclass(frozen=True, slots=True)
class PreparedWatermark:
    """批次内复用的水印：文字块与水印图片只生成一次，随任务发送到工作进程。

    水印图片加载失败时记录在 overlay_error 中，由每个使用它的单元各自失败。
    """

    spec: WatermarkSpec
    text_tile: Optional[RasterImage] = None
    overlay: Optional[RasterImage] = None
    overlay_error: Optional[str] = None


def prepare_watermark(spec: Optional[WatermarkSpec]) -> Optional[PreparedWatermark]:
    if spec is None or not spec.enabled:
        return None

    text_tile = None
    if spec.text is not None:
        try:
            text_tile = RasterImage.from_pil(render_text_tile(spec.text))
        except (OSError, ValueError) as exc:
            raise WatermarkError(f"文字水印生成失败: {exc}") from exc

    overlay = None
    overlay_error = None
    if spec.image is not None:
        try:
            overlay = RasterImage.from_pil(load_overlay(spec.image))
        except InvalidOverlayError as exc:
            LOGGER.warning("%s", exc)
            overlay_error = str(exc)
    return PreparedWatermark(spec, text_tile, overlay, overlay_error)


def blend(canvas: np.ndarray, overlay: Image.Image, position: Tuple[int, int], opacity: float) -> np.ndarray:
    """将 RGBA 叠加层按位置混合到可写的 (H, W, 3|4) 数组上，超出画布的部分被裁掉。

    每通道 out = src * a + dst * (1 - a)，其中 a = overlay_alpha / 255 * opacity。
    """

    x, y = position
    height, width = canvas.shape[:2]
    x0, y0 = max(x, 0), max(y, 0)
    x1, y1 = min(x + overlay.width, width), min(y + overlay.height, height)
    if x0 >= x1 or y0 >= y1:
        return canvas

    patch = np.asarray(overlay, dtype=np.float32)[y0 - y : y1 - y, x0 - x : x1 - x]
    alpha = patch[..., 3:4] / 255.0 * opacity
    region = canvas[y0:y1, x0:x1].astype(np.float32)
    region[..., :3] = patch[..., :3] * alpha + region[..., :3] * (1.0 - alpha)
    if canvas.shape[2] == 4:
        region[..., 3:4] = alpha * 255.0 + region[..., 3:4] * (1.0 - alpha)
    canvas[y0:y1, x0:x1] = np.clip(np.rint(region), 0, 255).astype(np.uint8)
    return canvas


def apply_watermark(
    raster: RasterImage, spec: Union[WatermarkSpec, PreparedWatermark, None]
) -> RasterImage:
    """先文字后图片叠加水印，返回新的 RasterImage；灰度图提升为 RGB。

    传入 WatermarkSpec 时每次调用都重新生成文字块并加载水印图片。
    """

    prepared = spec if isinstance(spec, PreparedWatermark) else prepare_watermark(spec)
    if prepared is None:
        return raster
    if prepared.overlay_error is not None:
        raise InvalidOverlayError(prepared.overlay_error)

    canvas = np.array(raster.as_array())
    if raster.pixel_format is PixelFormat.L:
        canvas = np.repeat(canvas[..., np.newaxis], 3, axis=2)

    text, image = prepared.spec.text, prepared.spec.image
    try:
        if text is not None and prepared.text_tile is not None:
            tile = prepared.text_tile.to_pil()
            xy = resolve_position(raster.size, tile.size, text.position, text.margin)
            blend(canvas, tile, xy, text.opacity)
        if image is not None and prepared.overlay is not None:
            overlay = prepared.overlay.to_pil()
            xy = resolve_position(raster.size, overlay.size, image.position, image.margin)
            blend(canvas, overlay, xy, image.opacity)
    except (OSError, ValueError) as exc:
        raise WatermarkError(f"水印合成失败: {exc}") from exc

    LOGGER.debug("水印合成完成 %dx%d", raster.width, raster.height)
    return RasterImage.from_array(canvas)
