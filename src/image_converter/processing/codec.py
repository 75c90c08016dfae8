"""图片编解码适配层：容器字节与 RasterImage 之间的转换。"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from image_converter.core.config import IMAGE_EXTENSIONS, QUALITY_CEILING, OutputFormat
from image_converter.core.exceptions import CorruptImageError, DecodeError, EncodeError, UnsupportedFormatError
from image_converter.core.models import PixelFormat, RasterImage

LOGGER = logging.getLogger(__name__)

_RESAMPLING = getattr(Image, "Resampling", Image)
_QUANTIZE = getattr(Image, "Quantize", Image)

_SIGNATURES: tuple[tuple[bytes, OutputFormat], ...] = (
    (b"\xff\xd8\xff", OutputFormat.JPEG),
    (b"\x89PNG\r\n\x1a\n", OutputFormat.PNG),
    (b"GIF87a", OutputFormat.GIF),
    (b"GIF89a", OutputFormat.GIF),
    (b"II*\x00", OutputFormat.TIFF),
    (b"MM\x00*", OutputFormat.TIFF),
    (b"BM", OutputFormat.BMP),
)

_SUFFIX_HINTS = {suffix: OutputFormat.from_suffix(suffix) for suffix in IMAGE_EXTENSIONS}


@dataclass(frozen=True, slots=True)
class EncodeParams:
    """编码参数。quality 为 None 表示该格式的最高保真度。"""

    quality: Optional[int] = None
    lossless: bool = False


def sniff_format(data: bytes) -> Optional[OutputFormat]:
    """根据文件头判断容器格式。"""

    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return OutputFormat.WEBP
    for signature, fmt in _SIGNATURES:
        if data.startswith(signature):
            return fmt
    return None


def load_image(path: Path) -> RasterImage:
    """读取并解码单个图片文件。"""

    try:
        data = path.read_bytes()
    except OSError as exc:
        raise DecodeError(f"无法读取文件: {path}") from exc

    suffix_format = _SUFFIX_HINTS.get(path.suffix.lower())
    try:
        return decode(data, suffix_format)
    except DecodeError as exc:
        raise type(exc)(f"{exc}: {path}") from exc


def decode(data: bytes, hint_format: Optional[OutputFormat] = None) -> RasterImage:
    """解码容器字节为 RasterImage。

    GIF 只取第一帧；EXIF 方向会被校正；像素格式统一为 L/RGB/RGBA。
    """

    detected = sniff_format(data)
    if detected is None:
        raise UnsupportedFormatError("无法识别的图片格式")
    if hint_format is not None and hint_format is not detected:
        LOGGER.debug("扩展名提示 %s 与文件头 %s 不一致，以文件头为准", hint_format.name, detected.name)

    try:
        with Image.open(io.BytesIO(data), formats=[detected.pil_format]) as img:
            img.seek(0)
            img.load()
            img = ImageOps.exif_transpose(img)
            return RasterImage.from_pil(_normalize_mode(img))
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError) as exc:
        LOGGER.debug("解码失败 (%s): %s", detected.name, exc)
        raise CorruptImageError(f"图片数据已损坏 ({detected.name})") from exc


def _normalize_mode(img: Image.Image) -> Image.Image:
    """将任意模式转换为 L、RGB 或 RGBA。"""

    if img.mode in {"L", "RGB", "RGBA"}:
        return img.copy()

    if img.mode == "P":
        return img.convert("RGBA" if "transparency" in img.info else "RGB")

    if img.mode in {"LA", "PA", "RGBa", "La"}:
        return img.convert("RGBA")

    if img.mode in {"I", "I;16", "I;16B", "I;16L"}:
        # 16 位灰度按高位截断到 8 位。
        return img.convert("I").point(lambda value: value * (1 / 256)).convert("L")

    if img.mode in {"1", "F"}:
        return img.convert("L")

    # CMYK、YCbCr、LAB 等
    return img.convert("RGB")


def encode(raster: RasterImage, fmt: OutputFormat, params: EncodeParams = EncodeParams()) -> bytes:
    """将 RasterImage 编码为指定格式的字节。"""

    encoder = _ENCODERS[fmt]
    buffer = io.BytesIO()
    try:
        encoder(raster.to_pil(), buffer, params)
    except (OSError, ValueError, KeyError) as exc:
        raise EncodeError(f"{fmt.name} 编码失败: {exc}") from exc
    return buffer.getvalue()


def resample(raster: RasterImage, scale: float) -> RasterImage:
    """按比例缩放（Lanczos），尺寸不小于 1x1。"""

    if scale >= 1.0:
        return raster
    width = max(1, int(round(raster.width * scale)))
    height = max(1, int(round(raster.height * scale)))
    if (width, height) == raster.size:
        return raster
    resized = raster.to_pil().resize((width, height), _RESAMPLING.LANCZOS)
    return RasterImage.from_pil(resized)


def palette_size(quality: int) -> int:
    """质量 -> 调色板颜色数，单调递增，QUALITY_CEILING 对应 256 色。"""

    exponent = 8.0 * max(1, min(quality, QUALITY_CEILING)) / QUALITY_CEILING
    return max(2, min(256, int(round(2 ** exponent))))


def _flatten_alpha(img: Image.Image) -> Image.Image:
    """去除 Alpha：通过白色背景混合生成 RGB。"""

    if img.mode != "RGBA":
        return img
    background = Image.new("RGB", img.size, (255, 255, 255))
    background.paste(img, mask=img.split()[-1])
    return background


def _quantize(img: Image.Image, colors: int) -> Image.Image:
    if img.mode == "L":
        img = img.convert("RGB")
    return img.quantize(colors=colors, method=_QUANTIZE.FASTOCTREE)


def _encode_jpeg(img: Image.Image, buffer: io.BytesIO, params: EncodeParams) -> None:
    quality = params.quality if params.quality is not None else QUALITY_CEILING
    img = _flatten_alpha(img)
    img.save(buffer, format="JPEG", quality=quality, optimize=True, subsampling=0 if quality >= 90 else 2)


def _encode_png(img: Image.Image, buffer: io.BytesIO, params: EncodeParams) -> None:
    if params.lossless or params.quality is None:
        img.save(buffer, format="PNG", optimize=True, compress_level=9)
        return
    _quantize(img, palette_size(params.quality)).save(buffer, format="PNG", optimize=True)


def _encode_webp(img: Image.Image, buffer: io.BytesIO, params: EncodeParams) -> None:
    if params.lossless:
        img.save(buffer, format="WEBP", lossless=True, quality=100, method=6)
        return
    quality = params.quality if params.quality is not None else QUALITY_CEILING
    img.save(buffer, format="WEBP", quality=quality, method=4)


def _encode_bmp(img: Image.Image, buffer: io.BytesIO, params: EncodeParams) -> None:
    _flatten_alpha(img).save(buffer, format="BMP")


def _encode_tiff(img: Image.Image, buffer: io.BytesIO, params: EncodeParams) -> None:
    img.save(buffer, format="TIFF", compression="tiff_deflate")


def _encode_gif(img: Image.Image, buffer: io.BytesIO, params: EncodeParams) -> None:
    colors = 256 if params.lossless or params.quality is None else palette_size(params.quality)
    _quantize(_flatten_alpha(img), colors).save(buffer, format="GIF", optimize=True)


_ENCODERS: dict[OutputFormat, Callable[[Image.Image, io.BytesIO, EncodeParams], None]] = {
    OutputFormat.JPEG: _encode_jpeg,
    OutputFormat.PNG: _encode_png,
    OutputFormat.WEBP: _encode_webp,
    OutputFormat.BMP: _encode_bmp,
    OutputFormat.TIFF: _encode_tiff,
    OutputFormat.GIF: _encode_gif,
}

_missing = set(OutputFormat) - set(_ENCODERS)
if _missing:
    raise RuntimeError(f"缺少编码器: {sorted(fmt.name for fmt in _missing)}")
