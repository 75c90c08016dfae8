"""输入路径扫描与工作单元生成。"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Iterator, Union

from image_converter.core.config import BatchMode, JobConfig, OutputFormat
from image_converter.core.exceptions import InvalidParametersError, RenderError
from image_converter.core.models import WorkItem
from image_converter.core.output_manager import output_path_for
from image_converter.processing.pdf_render import get_page_count

LOGGER = logging.getLogger(__name__)

_DIGITS_RE = re.compile(r"(\d+)")


def natural_sort_key(name: str) -> tuple[Union[int, str], ...]:
    """自然排序键：page_2 排在 page_10 之前。"""

    parts = _DIGITS_RE.split(name.lower())
    return tuple(int(part) if part.isdigit() else part for part in parts)


def _iter_candidate_files(path: Path, extensions: frozenset[str]) -> Iterator[Path]:
    """遍历目录下一层的匹配文件，不递归。"""

    for candidate in path.iterdir():
        if candidate.is_file() and candidate.suffix.lower() in extensions:
            yield candidate


def collect_sources(input_path: Path, mode: BatchMode) -> list[Path]:
    """返回按自然顺序排列的源文件列表。"""

    if not input_path.exists():
        raise InvalidParametersError(f"输入路径不存在: {input_path}")

    extensions = mode.source_extensions
    if input_path.is_file():
        if input_path.suffix.lower() not in extensions:
            raise InvalidParametersError(f"不支持的输入文件类型: {input_path.name}")
        return [input_path]

    sources = sorted(_iter_candidate_files(input_path, extensions), key=lambda p: natural_sort_key(p.name))
    if not sources:
        raise InvalidParametersError(f"目录中没有可处理的文件: {input_path}")
    return sources


def resolve_output_format(config: JobConfig, source: Path) -> OutputFormat:
    """输出格式：显式配置优先；仅加水印时沿用源格式，其余默认 PNG。"""

    if config.output_format is not None:
        return config.output_format
    if config.mode is BatchMode.WATERMARK_ONLY:
        return OutputFormat.from_suffix(source.suffix)
    return OutputFormat.PNG


def collect_work_items(config: JobConfig) -> list[WorkItem]:
    """根据配置生成全部工作单元。PDF 源在派发前即按页展开，保证进度总数准确。"""

    sources = collect_sources(config.input_path, config.mode)
    items: list[WorkItem] = []

    for source in sources:
        if config.mode is BatchMode.PDF_TO_IMAGE:
            fmt = resolve_output_format(config, source)
            for page_index in range(_page_count_or_one(source)):
                items.append(
                    WorkItem(
                        index=len(items),
                        mode=config.mode,
                        source_path=source,
                        output_path=config.output_dir / f"{source.stem}_page_{page_index + 1}.{fmt.extension}",
                        page_index=page_index,
                    )
                )
            continue

        if config.mode is BatchMode.IMAGE_TO_PDF:
            # 页面由流水线统一写入同一个 PDF
            output_path = config.output_dir / pdf_output_name(config)
        else:
            output_path = output_path_for(source, config.output_dir, resolve_output_format(config, source))
        items.append(WorkItem(index=len(items), mode=config.mode, source_path=source, output_path=output_path))

    LOGGER.info("共生成 %d 个工作单元（%d 个源文件）", len(items), len(sources))
    return items


def pdf_output_name(config: JobConfig) -> str:
    if config.pdf_filename:
        name = config.pdf_filename
        return name if name.lower().endswith(".pdf") else f"{name}.pdf"
    stem = config.input_path.stem if config.input_path.is_file() else config.input_path.name
    return f"{stem or 'output'}.pdf"


def _page_count_or_one(source: Path) -> int:
    # 无法读取页数的 PDF 记为一个单元，在渲染阶段报告失败。
    try:
        return get_page_count(source)
    except RenderError as exc:
        LOGGER.warning("无法读取 PDF 页数 %s：%s", source.name, exc)
        return 1


def default_worker_count(cap: int = 4) -> int:
    """默认并发数：CPU 核数的 3/4，不超过 cap，至少为 1。"""

    cpus = os.cpu_count() or 1
    return max(1, min(cap, cpus * 3 // 4))
