"""PDF 页面栅格化（PyMuPDF）。"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import fitz

from image_converter.core.config import DEFAULT_DPI
from image_converter.core.exceptions import RenderError
from image_converter.core.models import PixelFormat, RasterImage

LOGGER = logging.getLogger(__name__)

# PDF 用户空间单位为 1/72 英寸
PDF_POINTS_PER_INCH = 72.0


@contextmanager
def open_document(path: Path) -> Iterator[fitz.Document]:
    """以只读方式打开 PDF，失败时抛出 RenderError。"""

    try:
        document = fitz.open(path)
    except (RuntimeError, ValueError, OSError) as exc:
        raise RenderError(f"无法打开 PDF: {path}") from exc

    try:
        if not document.is_pdf:
            raise RenderError(f"不是有效的 PDF 文件: {path}")
        if document.needs_pass:
            raise RenderError(f"PDF 已加密: {path}")
        if document.page_count == 0:
            raise RenderError(f"PDF 不包含任何页面: {path}")
        yield document
    finally:
        document.close()


def get_page_count(path: Path) -> int:
    """返回 PDF 的总页数。"""

    with open_document(path) as document:
        return document.page_count


def render_page(document: fitz.Document, page_index: int, dpi: float = DEFAULT_DPI) -> RasterImage:
    """将单页渲染为 RGB 栅格（无 Alpha），缩放倍数为 dpi / 72。"""

    if not 0 <= page_index < document.page_count:
        raise RenderError(f"页码越界: {page_index + 1} / {document.page_count}")

    zoom = dpi / PDF_POINTS_PER_INCH
    try:
        page = document.load_page(page_index)
        pixmap = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False, colorspace=fitz.csRGB)
    except (RuntimeError, ValueError) as exc:
        raise RenderError(f"第 {page_index + 1} 页渲染失败: {exc}") from exc

    # samples 每行可能带 stride 填充，按宽度裁剪
    row_bytes = pixmap.width * 3
    samples = pixmap.samples
    if pixmap.stride != row_bytes:
        samples = b"".join(
            samples[row * pixmap.stride : row * pixmap.stride + row_bytes] for row in range(pixmap.height)
        )

    LOGGER.debug("渲染第 %d 页: %dx%d @ %s DPI", page_index + 1, pixmap.width, pixmap.height, dpi)
    return RasterImage(pixmap.width, pixmap.height, PixelFormat.RGB, bytes(samples))


def render_page_from_path(path: Path, page_index: int, dpi: float = DEFAULT_DPI) -> RasterImage:
    """独立打开文档并渲染一页，供工作进程使用。"""

    with open_document(path) as document:
        return render_page(document, page_index, dpi)
