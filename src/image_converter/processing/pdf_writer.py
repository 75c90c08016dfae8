"""将栅格图像逐页写入新的 PDF 文档（PyMuPDF）。"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Tuple

import fitz

from image_converter.core.config import OutputFormat, PageOrientation, PdfPageSpec
from image_converter.core.exceptions import EncodeError, WriteError
from image_converter.core.models import RasterImage
from image_converter.processing.codec import EncodeParams, encode
from image_converter.processing.pdf_render import PDF_POINTS_PER_INCH

LOGGER = logging.getLogger(__name__)

MM_PER_INCH = 25.4


@dataclass(frozen=True, slots=True)
class PageGeometry:
    """单页几何信息，单位为 PDF 点。"""

    page_width: float
    page_height: float
    image_rect: Tuple[float, float, float, float]
    rotate: int = 0


def compute_page_geometry(width_px: int, height_px: int, spec: PdfPageSpec) -> PageGeometry:
    """根据像素尺寸、DPI、页边距、方向与纸张计算页面尺寸和图片位置。

    自适应页面 = 图片物理尺寸 + 两倍页边距；页边距为 0 时图片从 (0, 0) 铺满整页。
    固定纸张时图片等比缩放到页边距以内并居中，纸张方向跟随（旋转后的）图片。
    指定的方向与图片宽高比不一致时，图片旋转 90 度放置。
    """

    image_width = width_px * PDF_POINTS_PER_INCH / spec.dpi
    image_height = height_px * PDF_POINTS_PER_INCH / spec.dpi
    margin = _mm_to_points(spec.margin_mm)

    rotate = 0
    if spec.orientation is PageOrientation.LANDSCAPE and height_px > width_px:
        rotate = 90
    elif spec.orientation is PageOrientation.PORTRAIT and width_px > height_px:
        rotate = 90
    if rotate:
        image_width, image_height = image_height, image_width

    sheet = spec.page_size.dimensions_mm
    if sheet is None:
        return PageGeometry(
            page_width=image_width + 2 * margin,
            page_height=image_height + 2 * margin,
            image_rect=(margin, margin, margin + image_width, margin + image_height),
            rotate=rotate,
        )

    short_side, long_side = (_mm_to_points(value) for value in sorted(sheet))
    landscape = _is_landscape_sheet(spec.orientation, image_width, image_height)
    page_width, page_height = (long_side, short_side) if landscape else (short_side, long_side)
    usable_width = page_width - 2 * margin
    usable_height = page_height - 2 * margin
    fit = min(usable_width / image_width, usable_height / image_height)
    fitted_width = image_width * fit
    fitted_height = image_height * fit
    left = margin + (usable_width - fitted_width) / 2
    top = margin + (usable_height - fitted_height) / 2
    return PageGeometry(
        page_width=page_width,
        page_height=page_height,
        image_rect=(left, top, left + fitted_width, top + fitted_height),
        rotate=rotate,
    )


def _mm_to_points(value: float) -> float:
    return value * PDF_POINTS_PER_INCH / MM_PER_INCH


def _is_landscape_sheet(orientation: PageOrientation, image_width: float, image_height: float) -> bool:
    if orientation is PageOrientation.LANDSCAPE:
        return True
    if orientation is PageOrientation.PORTRAIT:
        return False
    return image_width > image_height


class PdfDocumentBuilder:
    """逐页累积图片，最后一次性写出 PDF。"""

    def __init__(self, spec: Optional[PdfPageSpec] = None) -> None:
        self.spec = spec or PdfPageSpec()
        self._document = fitz.open()

    def __enter__(self) -> "PdfDocumentBuilder":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def page_count(self) -> int:
        return self._document.page_count

    def add_page(self, raster: RasterImage) -> None:
        geometry = compute_page_geometry(raster.width, raster.height, self.spec)
        stream = self._encode(raster)
        try:
            page = self._document.new_page(width=geometry.page_width, height=geometry.page_height)
            page.insert_image(
                fitz.Rect(*geometry.image_rect),
                stream=stream,
                rotate=geometry.rotate,
                keep_proportion=False,
            )
        except (RuntimeError, ValueError) as exc:
            raise WriteError(f"无法添加第 {self.page_count} 页: {exc}") from exc
        LOGGER.debug(
            "添加 PDF 页面 %d: %.2fx%.2f pt, rotate=%d",
            self.page_count,
            geometry.page_width,
            geometry.page_height,
            geometry.rotate,
        )

    def save(self, path: Path) -> Path:
        """先写临时文件再替换，避免留下不完整的 PDF。"""

        if self.page_count == 0:
            raise WriteError("没有可写入的页面")

        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(path.name + ".part")
        try:
            self._document.save(temp_path, garbage=3, deflate=True)
            os.replace(temp_path, path)
        except (RuntimeError, ValueError, OSError) as exc:
            temp_path.unlink(missing_ok=True)
            raise WriteError(f"写入 PDF 失败: {path}") from exc
        LOGGER.info("PDF 已写入 %s (%d 页)", path, self.page_count)
        return path

    def close(self) -> None:
        self._document.close()

    def _encode(self, raster: RasterImage) -> bytes:
        # 默认以无损 PNG 嵌入；jpeg 模式使用固定的高质量参数。
        try:
            if self.spec.image_encoding == "jpeg":
                return encode(raster, OutputFormat.JPEG, EncodeParams(quality=self.spec.jpeg_quality))
            return encode(raster, OutputFormat.PNG, EncodeParams(lossless=True))
        except EncodeError as exc:
            raise WriteError(f"页面图片编码失败: {exc}") from exc


def write_document(images: Iterable[RasterImage], spec: PdfPageSpec, output_path: Path) -> int:
    """按顺序每张图片一页写出 PDF，返回页数。"""

    with PdfDocumentBuilder(spec) as builder:
        for raster in images:
            builder.add_page(raster)
        builder.save(output_path)
        return builder.page_count
