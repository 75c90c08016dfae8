"""并发处理的工作单元。"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from image_converter.core.config import BatchMode, CompressionTarget, OutputFormat
from image_converter.core.exceptions import ImageConverterError, InvalidParametersError
from image_converter.core.models import FileOutcome, RasterImage, WorkItem
from image_converter.core.output_manager import write_atomic
from image_converter.processing.codec import load_image
from image_converter.processing.compressor import compress
from image_converter.processing.pdf_render import render_page_from_path
from image_converter.processing.watermark import PreparedWatermark, apply_watermark

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessingTask:
    """描述单个工作单元及其所需的只读配置。"""

    item: WorkItem
    output_format: Optional[OutputFormat]
    compression: CompressionTarget
    watermark: Optional[PreparedWatermark]
    render_dpi: float


@dataclass(slots=True)
class TaskResult:
    """工作进程的返回值。图片转 PDF 模式下携带待组装的页面。"""

    outcome: FileOutcome
    page: Optional[RasterImage] = None


def run_task(task: ProcessingTask) -> TaskResult:
    """在工作进程中执行单个工作单元，领域错误转为失败记录，其他异常记为 error-worker。"""

    handler = _HANDLERS[task.item.mode]
    try:
        return handler(task)
    except ImageConverterError as exc:
        LOGGER.warning("处理失败 %s：%s", task.item.label, exc)
        return _failure(task, exc.status, str(exc))
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("处理 %s 时出现未预期的异常", task.item.label)
        return _failure(task, "error-worker", str(exc) or type(exc).__name__)


def _failure(task: ProcessingTask, status: str, message: str) -> TaskResult:
    return TaskResult(
        FileOutcome(
            source_path=task.item.source_path,
            status=status,
            message=message,
            page_index=task.item.page_index,
        )
    )


def _load_source(task: ProcessingTask) -> RasterImage:
    item = task.item
    if item.page_index is not None:
        return render_page_from_path(item.source_path, item.page_index, task.render_dpi)
    return load_image(item.source_path)


def _encode_and_write(task: ProcessingTask, compression: CompressionTarget) -> TaskResult:
    if task.output_format is None:
        raise InvalidParametersError("未指定输出格式")

    raster = apply_watermark(_load_source(task), task.watermark)
    result = compress(raster, task.output_format, compression)
    write_atomic(task.item.output_path, result.data)

    message = None
    status = "processed"
    if result.approximate:
        status = "processed-approximate"
        message = f"无法达到目标大小，输出 {result.size} 字节"
    return TaskResult(
        FileOutcome(
            source_path=task.item.source_path,
            status=status,
            output_path=task.item.output_path,
            message=message,
            page_index=task.item.page_index,
            quality=result.quality,
            scale=result.scale,
            approximate=result.approximate,
        )
    )


def _convert(task: ProcessingTask) -> TaskResult:
    return _encode_and_write(task, task.compression)


def _watermark_only(task: ProcessingTask) -> TaskResult:
    if task.watermark is None:
        raise InvalidParametersError("仅加水印模式需要配置水印")
    return _encode_and_write(task, CompressionTarget.original())


def _prepare_pdf_page(task: ProcessingTask) -> TaskResult:
    raster = apply_watermark(_load_source(task), task.watermark)
    return TaskResult(
        FileOutcome(
            source_path=task.item.source_path,
            status="processed",
            output_path=task.item.output_path,
        ),
        page=raster,
    )


_HANDLERS: dict[BatchMode, Callable[[ProcessingTask], TaskResult]] = {
    BatchMode.IMAGE_CONVERT: _convert,
    BatchMode.PDF_TO_IMAGE: _convert,
    BatchMode.WATERMARK_ONLY: _watermark_only,
    BatchMode.IMAGE_TO_PDF: _prepare_pdf_page,
}

_missing = set(BatchMode) - set(_HANDLERS)
if _missing:
    raise RuntimeError(f"缺少处理模式: {sorted(mode.name for mode in _missing)}")
