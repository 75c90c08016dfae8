"""命令行入口。"""

from __future__ import annotations

import functools
import logging
import threading
from pathlib import Path
from typing import Callable, Optional, TypeVar

import typer
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)

from image_converter.core.config import (
    Anchor,
    BatchMode,
    CompressionTarget,
    ConverterDefaults,
    ImageWatermark,
    JobConfig,
    OutputFormat,
    PageOrientation,
    PageSize,
    PdfPageSpec,
    WatermarkSpec,
)
from image_converter.core.exceptions import ImageConverterError
from image_converter.core.models import BatchReport
from image_converter.core.progress import ProgressUpdate
from image_converter.processing.pipeline import iter_batch
from image_converter.utils.colors import parse_color
from image_converter.utils.logging import setup_logging

app = typer.Typer(help="批量图片格式转换、压缩、水印与 PDF 互转工具。")

LOGGER = logging.getLogger(__name__)
DEFAULTS = ConverterDefaults()
MAX_LISTED_FAILURES = 20

CommandT = TypeVar("CommandT", bound=Callable[..., None])


def _handle_errors(command: CommandT) -> CommandT:
    """将参数与批次级错误转换为带颜色的提示和退出码 2。"""

    @functools.wraps(command)
    def wrapper(*args, **kwargs):
        try:
            return command(*args, **kwargs)
        except ImageConverterError as exc:
            typer.secho(f"错误：{exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=2) from exc

    return wrapper  # type: ignore[return-value]


def _build_progress_callback(progress: Progress):
    task_id: Optional[int] = None

    def callback(update: ProgressUpdate) -> None:
        nonlocal task_id
        if update.total == 0:
            return
        if task_id is None:
            task_id = progress.add_task("处理中", total=update.total)
        progress.update(task_id, completed=update.processed, description=update.current or "处理中")
        if update.error:
            progress.log(f"[red]失败[/red] {update.error}")

    return callback


def _build_watermark(
    text: Optional[str],
    text_color: str,
    text_size: int,
    overlay: Optional[Path],
    overlay_scale: float,
    position: Anchor,
    opacity: float,
    margin: int,
    spacing: float,
) -> Optional[WatermarkSpec]:
    if not text and overlay is None:
        return None
    defaults = ConverterDefaults(
        watermark_position=position,
        watermark_opacity=opacity,
        watermark_margin=margin,
        letter_spacing=spacing,
        text_color=parse_color(text_color, default_alpha=DEFAULTS.text_color[3]),
        text_size=text_size,
    )
    image = None
    if overlay is not None:
        image = ImageWatermark(
            overlay_path=overlay.expanduser().resolve(),
            opacity=opacity,
            scale=overlay_scale,
            position=position,
            margin=margin,
        )
    return WatermarkSpec(text=defaults.text_watermark(text) if text else None, image=image)


def _run_job(job: JobConfig, verbose: bool) -> BatchReport:
    setup_logging(logging.DEBUG if verbose else logging.WARNING, rich_console=True)
    LOGGER.debug("CLI 参数解析完成: %s", job.mode.value)

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
    )
    callback = _build_progress_callback(progress)
    cancel_event = threading.Event()
    report: Optional[BatchReport] = None

    try:
        with progress:
            for event in iter_batch(job, cancel_event=cancel_event):
                if isinstance(event, BatchReport):
                    report = event
                else:
                    callback(event)
    except KeyboardInterrupt:
        typer.secho("已取消，已完成的文件保留在输出目录中。", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130) from None

    assert report is not None
    _print_summary(job, report)
    if report.failure_count:
        raise typer.Exit(code=1)
    return report


def _print_summary(job: JobConfig, report: BatchReport) -> None:
    typer.echo(
        f"处理完成：成功 {report.success_count} 个，失败 {report.failure_count} 个，"
        f"取消 {len(report.cancelled)} 个。"
    )
    for path, reason in report.failures()[:MAX_LISTED_FAILURES]:
        typer.secho(f"  {path.name}: {reason}", fg=typer.colors.RED)
    if report.failure_count > MAX_LISTED_FAILURES:
        typer.echo(f"  …… 另有 {report.failure_count - MAX_LISTED_FAILURES} 个失败")
    if job.report_filename:
        typer.echo(f"报告文件：{job.output_dir / job.report_filename}")


def _compression(target_kb: int, original: bool) -> CompressionTarget:
    if original:
        return CompressionTarget.original()
    return CompressionTarget.from_kb(target_kb)


@app.command("convert")
@_handle_errors
def convert_cli(  # noqa: PLR0913
    source: Path = typer.Argument(..., help="源图片文件或目录"),
    output: Path = typer.Option(..., "--output", "-o", help="输出目录"),
    output_format: OutputFormat = typer.Option(DEFAULTS.output_format, "--format", "-f", help="输出格式"),
    target_kb: int = typer.Option(DEFAULTS.target_kb, "--target-kb", help="目标文件大小 (KB)"),
    original: bool = typer.Option(False, "--original", help="保持原始质量，不做体积搜索"),
    text: Optional[str] = typer.Option(None, "--text", help="文字水印内容"),
    text_color: str = typer.Option("#FFFFFF", "--text-color", help="文字颜色 (HEX 或 r,g,b[,a])"),
    text_size: int = typer.Option(DEFAULTS.text_size, "--text-size", help="文字大小"),
    overlay: Optional[Path] = typer.Option(None, "--overlay", help="图片水印文件"),
    overlay_scale: float = typer.Option(0.2, "--overlay-scale", help="图片水印缩放比例"),
    position: Anchor = typer.Option(DEFAULTS.watermark_position, "--position", help="水印位置"),
    opacity: float = typer.Option(DEFAULTS.watermark_opacity, "--opacity", help="水印透明度 0.0~1.0"),
    margin: int = typer.Option(DEFAULTS.watermark_margin, "--margin", help="水印边距 (像素)"),
    spacing: float = typer.Option(DEFAULTS.letter_spacing, "--spacing", help="字符间距"),
    max_workers: int = typer.Option(DEFAULTS.max_workers, "--workers", "-w", help="并发进程数量"),
    report_name: str = typer.Option("report.csv", "--report", help="CSV 报告文件名，留空则不生成"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出调试日志"),
) -> None:
    """转换图片格式，并按目标大小压缩。"""

    job = JobConfig(
        input_path=source.expanduser().resolve(),
        output_dir=output.expanduser().resolve(),
        mode=BatchMode.IMAGE_CONVERT,
        output_format=output_format,
        compression=_compression(target_kb, original),
        watermark=_build_watermark(
            text, text_color, text_size, overlay, overlay_scale, position, opacity, margin, spacing
        ),
        max_workers=max_workers,
        report_filename=report_name or None,
    )
    _run_job(job, verbose)


@app.command("watermark")
@_handle_errors
def watermark_cli(  # noqa: PLR0913
    source: Path = typer.Argument(..., help="源图片文件或目录"),
    output: Path = typer.Option(..., "--output", "-o", help="输出目录"),
    text: Optional[str] = typer.Option(None, "--text", help="文字水印内容"),
    text_color: str = typer.Option("#FFFFFF", "--text-color", help="文字颜色 (HEX 或 r,g,b[,a])"),
    text_size: int = typer.Option(DEFAULTS.text_size, "--text-size", help="文字大小"),
    overlay: Optional[Path] = typer.Option(None, "--overlay", help="图片水印文件"),
    overlay_scale: float = typer.Option(0.2, "--overlay-scale", help="图片水印缩放比例"),
    position: Anchor = typer.Option(DEFAULTS.watermark_position, "--position", help="水印位置"),
    opacity: float = typer.Option(DEFAULTS.watermark_opacity, "--opacity", help="水印透明度 0.0~1.0"),
    margin: int = typer.Option(DEFAULTS.watermark_margin, "--margin", help="水印边距 (像素)"),
    spacing: float = typer.Option(DEFAULTS.letter_spacing, "--spacing", help="字符间距"),
    max_workers: int = typer.Option(DEFAULTS.max_workers, "--workers", "-w", help="并发进程数量"),
    report_name: str = typer.Option("report.csv", "--report", help="CSV 报告文件名，留空则不生成"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出调试日志"),
) -> None:
    """仅添加水印，保持源格式与原始质量。"""

    watermark = _build_watermark(text, text_color, text_size, overlay, overlay_scale, position, opacity, margin, spacing)
    if watermark is None:
        raise typer.BadParameter("至少需要 --text 或 --overlay 之一")
    job = JobConfig(
        input_path=source.expanduser().resolve(),
        output_dir=output.expanduser().resolve(),
        mode=BatchMode.WATERMARK_ONLY,
        compression=CompressionTarget.original(),
        watermark=watermark,
        max_workers=max_workers,
        report_filename=report_name or None,
    )
    _run_job(job, verbose)


@app.command("to-pdf")
@_handle_errors
def to_pdf_cli(  # noqa: PLR0913
    source: Path = typer.Argument(..., help="源图片文件或目录，目录中的图片按自然顺序成页"),
    output: Path = typer.Option(..., "--output", "-o", help="输出目录"),
    name: Optional[str] = typer.Option(None, "--name", help="PDF 文件名，默认取输入名"),
    dpi: float = typer.Option(DEFAULTS.dpi, "--dpi", help="页面换算 DPI"),
    margin_mm: float = typer.Option(DEFAULTS.margin_mm, "--margin-mm", help="页边距 (毫米)"),
    orientation: PageOrientation = typer.Option(DEFAULTS.orientation, "--orientation", help="页面方向"),
    page_size: PageSize = typer.Option(DEFAULTS.page_size, "--page-size", help="纸张尺寸，adaptive 按图片尺寸生成页面"),
    jpeg: bool = typer.Option(False, "--jpeg", help="以高质量 JPEG 嵌入页面图片（默认无损 PNG）"),
    text: Optional[str] = typer.Option(None, "--text", help="文字水印内容"),
    position: Anchor = typer.Option(DEFAULTS.watermark_position, "--position", help="水印位置"),
    max_workers: int = typer.Option(DEFAULTS.max_workers, "--workers", "-w", help="并发进程数量"),
    report_name: str = typer.Option("report.csv", "--report", help="CSV 报告文件名，留空则不生成"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出调试日志"),
) -> None:
    """将图片合并为 PDF，每张图片一页。"""

    watermark = None
    if text:
        watermark = WatermarkSpec(text=ConverterDefaults(watermark_position=position).text_watermark(text))
    job = JobConfig(
        input_path=source.expanduser().resolve(),
        output_dir=output.expanduser().resolve(),
        mode=BatchMode.IMAGE_TO_PDF,
        watermark=watermark,
        pdf=PdfPageSpec(
            dpi=dpi,
            margin_mm=margin_mm,
            orientation=orientation,
            page_size=page_size,
            image_encoding="jpeg" if jpeg else "png",
        ),
        max_workers=max_workers,
        pdf_filename=name,
        report_filename=report_name or None,
    )
    _run_job(job, verbose)


@app.command("from-pdf")
@_handle_errors
def from_pdf_cli(  # noqa: PLR0913
    source: Path = typer.Argument(..., help="源 PDF 文件或目录"),
    output: Path = typer.Option(..., "--output", "-o", help="输出目录"),
    output_format: OutputFormat = typer.Option(DEFAULTS.output_format, "--format", "-f", help="输出格式"),
    dpi: float = typer.Option(DEFAULTS.dpi, "--dpi", help="渲染 DPI"),
    target_kb: int = typer.Option(DEFAULTS.target_kb, "--target-kb", help="目标文件大小 (KB)"),
    original: bool = typer.Option(False, "--original", help="保持原始质量，不做体积搜索"),
    max_workers: int = typer.Option(DEFAULTS.max_workers, "--workers", "-w", help="并发进程数量"),
    report_name: str = typer.Option("report.csv", "--report", help="CSV 报告文件名，留空则不生成"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出调试日志"),
) -> None:
    """将 PDF 每页渲染为图片。"""

    job = JobConfig(
        input_path=source.expanduser().resolve(),
        output_dir=output.expanduser().resolve(),
        mode=BatchMode.PDF_TO_IMAGE,
        output_format=output_format,
        compression=_compression(target_kb, original),
        render_dpi=dpi,
        max_workers=max_workers,
        report_filename=report_name or None,
    )
    _run_job(job, verbose)


if __name__ == "__main__":
    app()
