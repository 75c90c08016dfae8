"""处理任务的配置模型。

批次运行期间所有配置对象只读，可在工作进程之间共享。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple, Union

from image_converter.core.exceptions import InvalidParametersError
from image_converter.utils.colors import parse_color

QUALITY_FLOOR = 10
QUALITY_CEILING = 95
DEFAULT_TARGET_KB = 400
DEFAULT_DPI = 150


class OutputFormat(Enum):
    """受支持的栅格格式。"""

    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    BMP = "bmp"
    TIFF = "tiff"
    GIF = "gif"

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self]

    @property
    def pil_format(self) -> str:
        return self.name

    @property
    def supports_quality(self) -> bool:
        """是否存在可搜索的质量参数。"""

        return self in {OutputFormat.JPEG, OutputFormat.PNG, OutputFormat.WEBP, OutputFormat.GIF}

    @property
    def supports_alpha(self) -> bool:
        return self in {OutputFormat.PNG, OutputFormat.WEBP, OutputFormat.TIFF}

    @classmethod
    def from_suffix(cls, suffix: str) -> "OutputFormat":
        key = suffix.lower().lstrip(".")
        try:
            return _SUFFIXES[key]
        except KeyError:
            raise InvalidParametersError(f"不支持的图片格式: {suffix}") from None


_EXTENSIONS = {
    OutputFormat.JPEG: "jpg",
    OutputFormat.PNG: "png",
    OutputFormat.WEBP: "webp",
    OutputFormat.BMP: "bmp",
    OutputFormat.TIFF: "tiff",
    OutputFormat.GIF: "gif",
}

_SUFFIXES = {
    "jpg": OutputFormat.JPEG,
    "jpeg": OutputFormat.JPEG,
    "png": OutputFormat.PNG,
    "webp": OutputFormat.WEBP,
    "bmp": OutputFormat.BMP,
    "tif": OutputFormat.TIFF,
    "tiff": OutputFormat.TIFF,
    "gif": OutputFormat.GIF,
}

IMAGE_EXTENSIONS = frozenset(f".{suffix}" for suffix in _SUFFIXES)
PDF_EXTENSIONS = frozenset({".pdf"})


class CompressionMode(Enum):
    SIZE_TARGET = "size-target"
    ORIGINAL = "original"


class BatchMode(Enum):
    """批处理模式。"""

    IMAGE_CONVERT = "image-convert"
    IMAGE_TO_PDF = "image-to-pdf"
    PDF_TO_IMAGE = "pdf-to-image"
    WATERMARK_ONLY = "watermark-only"

    @property
    def source_extensions(self) -> frozenset[str]:
        if self is BatchMode.PDF_TO_IMAGE:
            return PDF_EXTENSIONS
        return IMAGE_EXTENSIONS


class PageOrientation(Enum):
    AUTO = "auto"
    LANDSCAPE = "landscape"
    PORTRAIT = "portrait"


class PageSize(Enum):
    """PDF 页面尺寸：ADAPTIVE 按图片物理尺寸生成页面，其余为固定纸张。"""

    ADAPTIVE = "adaptive"
    A3 = "a3"
    A4 = "a4"
    A5 = "a5"
    LETTER = "letter"
    LEGAL = "legal"

    @property
    def dimensions_mm(self) -> Optional[Tuple[float, float]]:
        """纵向纸张的 (宽, 高)，单位毫米；ADAPTIVE 返回 None。"""

        return _PAGE_SIZES_MM.get(self)


_PAGE_SIZES_MM = {
    PageSize.A3: (297.0, 420.0),
    PageSize.A4: (210.0, 297.0),
    PageSize.A5: (148.0, 210.0),
    PageSize.LETTER: (215.9, 279.4),
    PageSize.LEGAL: (215.9, 355.6),
}


class Anchor(Enum):
    """九宫格水印锚点。"""

    TOP_LEFT = "top-left"
    TOP_CENTER = "top-center"
    TOP_RIGHT = "top-right"
    MIDDLE_LEFT = "middle-left"
    MIDDLE_CENTER = "middle-center"
    MIDDLE_RIGHT = "middle-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_CENTER = "bottom-center"
    BOTTOM_RIGHT = "bottom-right"


# 锚点或显式像素坐标 (x, y)，后者跳过锚点解析。
Position = Union[Anchor, Tuple[int, int]]
RGBA = Tuple[int, int, int, int]


@dataclass(frozen=True, slots=True)
class CompressionTarget:
    """目标体积压缩参数。"""

    target_bytes: int
    mode: CompressionMode = CompressionMode.SIZE_TARGET
    min_quality: int = QUALITY_FLOOR
    max_quality: int = QUALITY_CEILING
    min_scale: float = 0.1
    max_scale: float = 1.0
    scale_step: float = 0.1
    max_probes_per_scale: int = 8
    tolerance: float = 0.02

    def __post_init__(self) -> None:
        if self.mode is CompressionMode.SIZE_TARGET and self.target_bytes <= 0:
            raise InvalidParametersError(f"目标大小必须大于 0: {self.target_bytes}")
        if not QUALITY_FLOOR <= self.min_quality <= self.max_quality <= QUALITY_CEILING:
            raise InvalidParametersError(
                f"质量范围必须位于 [{QUALITY_FLOOR}, {QUALITY_CEILING}]: ({self.min_quality}, {self.max_quality})"
            )
        if not 0 < self.min_scale <= self.max_scale <= 1.0:
            raise InvalidParametersError(f"缩放范围必须位于 (0, 1]: ({self.min_scale}, {self.max_scale})")
        if self.scale_step <= 0:
            raise InvalidParametersError("scale_step 必须大于 0")
        if self.max_probes_per_scale < 1:
            raise InvalidParametersError("max_probes_per_scale 至少为 1")
        if self.tolerance < 0:
            raise InvalidParametersError("tolerance 不能为负数")

    @classmethod
    def from_kb(cls, target_kb: int, **kwargs: Any) -> "CompressionTarget":
        return cls(target_bytes=target_kb * 1024, **kwargs)

    @classmethod
    def original(cls) -> "CompressionTarget":
        """原始质量模式：单次编码，不做搜索。"""

        return cls(target_bytes=0, mode=CompressionMode.ORIGINAL)

    @property
    def budget(self) -> float:
        """含容差的字节上限。"""

        return self.target_bytes * (1.0 + self.tolerance)


@dataclass(frozen=True, slots=True)
class TextWatermark:
    """文字水印配置。"""

    text: str
    font_size: int = 20
    color: RGBA = (255, 255, 255, 220)
    opacity: float = 0.8
    position: Position = Anchor.BOTTOM_RIGHT
    margin: int = 20
    letter_spacing: float = 2.0
    background: Optional[RGBA] = (0, 0, 0, 100)
    padding: int = 4

    def __post_init__(self) -> None:
        if not self.text:
            raise InvalidParametersError("文字水印内容不能为空")
        if self.font_size <= 0:
            raise InvalidParametersError("font_size 必须大于 0")
        _check_opacity(self.opacity)
        _check_margin(self.margin)


@dataclass(frozen=True, slots=True)
class ImageWatermark:
    """图片水印配置。"""

    overlay_path: Path
    opacity: float = 0.8
    scale: float = 0.2
    position: Position = Anchor.BOTTOM_RIGHT
    margin: int = 20

    def __post_init__(self) -> None:
        if self.scale <= 0:
            raise InvalidParametersError("图片水印缩放比例必须大于 0")
        _check_opacity(self.opacity)
        _check_margin(self.margin)


@dataclass(frozen=True, slots=True)
class WatermarkSpec:
    """一次批处理使用的水印集合：先文字，后图片。"""

    text: Optional[TextWatermark] = None
    image: Optional[ImageWatermark] = None

    @property
    def enabled(self) -> bool:
        return self.text is not None or self.image is not None


@dataclass(frozen=True, slots=True)
class PdfPageSpec:
    """图片转 PDF 的页面设置。"""

    dpi: float = DEFAULT_DPI
    margin_mm: float = 0.0
    orientation: PageOrientation = PageOrientation.AUTO
    page_size: PageSize = PageSize.ADAPTIVE
    image_encoding: str = "png"  # png | jpeg
    jpeg_quality: int = 95

    def __post_init__(self) -> None:
        if self.dpi <= 0:
            raise InvalidParametersError(f"DPI 必须大于 0: {self.dpi}")
        if self.margin_mm < 0:
            raise InvalidParametersError("页边距不能为负数")
        sheet = self.page_size.dimensions_mm
        if sheet is not None and 2 * self.margin_mm >= min(sheet):
            raise InvalidParametersError(f"页边距 {self.margin_mm}mm 超出 {self.page_size.name} 纸张")
        if self.image_encoding not in {"png", "jpeg"}:
            raise InvalidParametersError(f"未知的 PDF 图片编码: {self.image_encoding}")


@dataclass(slots=True)
class JobConfig:
    """单次批处理任务的配置集合。"""

    input_path: Path
    output_dir: Path
    mode: BatchMode = BatchMode.IMAGE_CONVERT
    output_format: Optional[OutputFormat] = None
    compression: CompressionTarget = field(default_factory=lambda: CompressionTarget.from_kb(DEFAULT_TARGET_KB))
    watermark: Optional[WatermarkSpec] = None
    pdf: PdfPageSpec = field(default_factory=PdfPageSpec)
    render_dpi: float = DEFAULT_DPI
    max_workers: Optional[int] = None
    progress_every: int = 1
    progress_interval: float = 0.2
    pdf_filename: Optional[str] = None
    report_filename: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ConverterDefaults:
    """界面层持久化的默认值，由调用方以普通结构传入。"""

    target_kb: int = DEFAULT_TARGET_KB
    output_format: OutputFormat = OutputFormat.PNG
    compression_mode: CompressionMode = CompressionMode.SIZE_TARGET
    dpi: float = DEFAULT_DPI
    margin_mm: float = 0.0
    orientation: PageOrientation = PageOrientation.AUTO
    page_size: PageSize = PageSize.ADAPTIVE
    max_workers: int = 4
    watermark_position: Anchor = Anchor.BOTTOM_RIGHT
    watermark_opacity: float = 0.8
    watermark_margin: int = 20
    letter_spacing: float = 2.0
    text_color: RGBA = (255, 255, 255, 220)
    text_size: int = 20

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "ConverterDefaults":
        """从字典（例如界面层读取的 JSON）构造默认值，忽略未知键。"""

        known = {name: values[name] for name in cls.__dataclass_fields__ if name in values}
        converters = {
            "output_format": lambda v: v if isinstance(v, OutputFormat) else OutputFormat.from_suffix(str(v)),
            "compression_mode": CompressionMode,
            "orientation": PageOrientation,
            "page_size": PageSize,
            "watermark_position": Anchor,
            "text_color": parse_color,
        }
        for name, convert in converters.items():
            if name in known and not isinstance(known[name], Enum):
                try:
                    known[name] = convert(known[name])
                except ValueError as exc:
                    raise InvalidParametersError(f"无法解析配置项 {name}: {known[name]!r}") from exc
        return cls(**known)

    def compression_target(self) -> CompressionTarget:
        if self.compression_mode is CompressionMode.ORIGINAL:
            return CompressionTarget.original()
        return CompressionTarget.from_kb(self.target_kb)

    def pdf_spec(self) -> PdfPageSpec:
        return PdfPageSpec(
            dpi=self.dpi,
            margin_mm=self.margin_mm,
            orientation=self.orientation,
            page_size=self.page_size,
        )

    def text_watermark(self, text: str) -> TextWatermark:
        return TextWatermark(
            text=text,
            font_size=self.text_size,
            color=self.text_color,
            opacity=self.watermark_opacity,
            position=self.watermark_position,
            margin=self.watermark_margin,
            letter_spacing=self.letter_spacing,
        )

    def job(self, input_path: Path, output_dir: Path, mode: BatchMode, **overrides: Any) -> JobConfig:
        """以默认值构建任务配置，overrides 覆盖对应字段。"""

        values: dict[str, Any] = {
            "output_format": self.output_format,
            "compression": self.compression_target(),
            "pdf": self.pdf_spec(),
            "render_dpi": self.dpi,
            "max_workers": self.max_workers,
        }
        values.update(overrides)
        return JobConfig(input_path=input_path, output_dir=output_dir, mode=mode, **values)


def _check_opacity(value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise InvalidParametersError(f"透明度必须位于 [0, 1]: {value}")


def _check_margin(value: int) -> None:
    if value < 0:
        raise InvalidParametersError("边距不能为负数")
