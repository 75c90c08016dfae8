"""核心数据模型定义。"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

import numpy as np
from PIL import Image

from image_converter.core.config import BatchMode


class PixelFormat(Enum):
    """栅格缓冲区的像素格式，值与 PIL 模式一致。"""

    L = "L"
    RGB = "RGB"
    RGBA = "RGBA"

    @property
    def bytes_per_pixel(self) -> int:
        return {"L": 1, "RGB": 3, "RGBA": 4}[self.value]

    @property
    def has_alpha(self) -> bool:
        return self is PixelFormat.RGBA


@dataclass(frozen=True, slots=True)
class RasterImage:
    """按行存储、无填充的内存像素缓冲区。"""

    width: int
    height: int
    pixel_format: PixelFormat
    data: bytes = field(repr=False)

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"图像尺寸必须为正数: {self.width}x{self.height}")
        expected = self.width * self.height * self.pixel_format.bytes_per_pixel
        if len(self.data) != expected:
            raise ValueError(f"像素数据长度 {len(self.data)} 与尺寸不符，期望 {expected}")

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height

    @classmethod
    def from_pil(cls, image: Image.Image) -> "RasterImage":
        """从 L/RGB/RGBA 模式的 PIL 图像构造。"""

        pixel_format = PixelFormat(image.mode)
        return cls(image.width, image.height, pixel_format, image.tobytes())

    @classmethod
    def from_array(cls, array: np.ndarray) -> "RasterImage":
        """从 (H, W) 或 (H, W, C) 的 uint8 数组构造。"""

        array = np.ascontiguousarray(array, dtype=np.uint8)
        if array.ndim == 2:
            pixel_format = PixelFormat.L
        else:
            pixel_format = {3: PixelFormat.RGB, 4: PixelFormat.RGBA}[array.shape[2]]
        return cls(array.shape[1], array.shape[0], pixel_format, array.tobytes())

    def to_pil(self) -> Image.Image:
        return Image.frombytes(self.pixel_format.value, self.size, self.data)

    def as_array(self) -> np.ndarray:
        """只读 numpy 视图，形状为 (H, W) 或 (H, W, C)。"""

        array = np.frombuffer(self.data, dtype=np.uint8)
        channels = self.pixel_format.bytes_per_pixel
        if channels == 1:
            return array.reshape(self.height, self.width)
        return array.reshape(self.height, self.width, channels)


@dataclass(frozen=True, slots=True)
class EncodingAttempt:
    """搜索过程中的一次编码尝试。"""

    quality: int
    scale: float
    size: int
    width: int
    height: int
    data: bytes = field(repr=False)


@dataclass(frozen=True, slots=True)
class CompressionResult:
    """压缩器输出：编码字节与最终采用的参数。"""

    data: bytes = field(repr=False)
    quality: int
    scale: float
    width: int
    height: int
    approximate: bool = False
    attempts: int = 1

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class WorkItem:
    """一个待处理单元：一张图片或 PDF 的一页。"""

    index: int
    mode: BatchMode
    source_path: Path
    output_path: Path
    page_index: Optional[int] = None

    @property
    def label(self) -> str:
        if self.page_index is None:
            return self.source_path.name
        return f"{self.source_path.name} (第 {self.page_index + 1} 页)"


@dataclass(slots=True)
class FileOutcome:
    """记录单个处理单元的结果（用于报告/日志）。"""

    source_path: Path
    status: str
    output_path: Optional[Path] = None
    message: Optional[str] = None
    page_index: Optional[int] = None
    quality: Optional[int] = None
    scale: Optional[float] = None
    approximate: bool = False

    @property
    def ok(self) -> bool:
        return self.status.startswith("processed")


@dataclass(frozen=True, slots=True)
class BatchReport:
    """批处理的最终统计，批次结束后不再变化。"""

    total: int
    succeeded: tuple[FileOutcome, ...]
    failed: tuple[FileOutcome, ...]
    cancelled: tuple[FileOutcome, ...] = ()

    @property
    def success_count(self) -> int:
        return len(self.succeeded)

    @property
    def failure_count(self) -> int:
        return len(self.failed)

    @property
    def was_cancelled(self) -> bool:
        return bool(self.cancelled)

    def failures(self) -> list[tuple[Path, str]]:
        """返回所有失败路径及原因。"""

        return [(record.source_path, record.message or record.status) for record in self.failed]

    def all_outcomes(self) -> list[FileOutcome]:
        """返回所有结果记录，方便生成报告。"""

        return [*self.succeeded, *self.failed, *self.cancelled]
