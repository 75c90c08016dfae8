"""处理流水线：扫描、有界并发执行、进度汇总与报告输出。"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ProcessPoolExecutor, wait
from concurrent.futures.process import BrokenProcessPool
from functools import partial
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from image_converter.core.config import BatchMode, JobConfig, PdfPageSpec
from image_converter.core.exceptions import InvalidParametersError, WriteError
from image_converter.core.models import BatchReport, FileOutcome, RasterImage, WorkItem
from image_converter.core.progress import ProgressCallback, ProgressChannel, ProgressReporter, ProgressUpdate
from image_converter.core.report import write_csv_report
from image_converter.core.scanner import collect_work_items, default_worker_count, resolve_output_format
from image_converter.processing.pdf_writer import PdfDocumentBuilder
from image_converter.processing.watermark import PreparedWatermark, prepare_watermark
from image_converter.processing.worker import ProcessingTask, TaskResult, run_task

LOGGER = logging.getLogger(__name__)

TaskFactory = Callable[[WorkItem], ProcessingTask]


class PdfPageAssembler:
    """按工作单元序号组装 PDF 页面，乱序到达的页面先缓存。"""

    def __init__(self, spec: PdfPageSpec) -> None:
        self._builder = PdfDocumentBuilder(spec)
        self._pending: dict[int, Optional[RasterImage]] = {}
        self._next_index = 0
        self.error: Optional[WriteError] = None

    @property
    def page_count(self) -> int:
        return self._builder.page_count

    def add(self, index: int, page: Optional[RasterImage]) -> None:
        """登记第 index 个单元的页面；None 表示该单元失败，不产生页面。"""

        self._pending[index] = page
        while self._next_index in self._pending:
            self._insert(self._pending.pop(self._next_index))
            self._next_index += 1

    def finish(self, output_path: Path) -> Path:
        # 取消时序号可能有空洞，剩余页面按序号写入
        for index in sorted(self._pending):
            self._insert(self._pending.pop(index))
        if self.error is not None:
            raise self.error
        return self._builder.save(output_path)

    def close(self) -> None:
        self._builder.close()

    def _insert(self, page: Optional[RasterImage]) -> None:
        if page is None or self.error is not None:
            return
        try:
            self._builder.add_page(page)
        except WriteError as exc:
            self.error = exc


class _BatchState:
    """主进程内的结果汇总，只在调度线程中访问。"""

    def __init__(self, config: JobConfig, reporter: ProgressReporter) -> None:
        self.reporter = reporter
        self.succeeded: list[FileOutcome] = []
        self.failed: list[FileOutcome] = []
        self.deferred: list[FileOutcome] = []
        self.assembler = PdfPageAssembler(config.pdf) if config.mode is BatchMode.IMAGE_TO_PDF else None

    def record(self, item: WorkItem, result: TaskResult) -> None:
        outcome = result.outcome
        if self.assembler is not None:
            self.assembler.add(item.index, result.page if outcome.ok else None)
        if outcome.ok:
            # PDF 页面在文档写出后才算成功
            (self.deferred if self.assembler is not None else self.succeeded).append(outcome)
            self.reporter.advance(item.label)
        else:
            self.failed.append(outcome)
            self.reporter.advance(item.label, error=f"{item.label}: {outcome.message or outcome.status}")


def process_batch(
    config: JobConfig,
    progress_callback: ProgressCallback = None,
    cancel_event: Optional[threading.Event] = None,
) -> BatchReport:
    """批量处理入口：扫描、并发执行并返回最终报告。

    参数错误在派发任何任务之前抛出 InvalidParametersError；单个单元的失败只记录在报告中。
    """

    _validate(config)
    LOGGER.info("开始扫描输入路径 %s", config.input_path)
    items = collect_work_items(config)
    config.output_dir.mkdir(parents=True, exist_ok=True)
    make_task = partial(_build_task, config, prepare_watermark(config.watermark))
    total = len(items)
    workers = config.max_workers if config.max_workers is not None else default_worker_count()
    LOGGER.info("发现 %d 个工作单元，并发数 %d", total, workers)

    reporter = ProgressReporter(
        progress_callback,
        total,
        every=config.progress_every,
        interval=config.progress_interval,
    )
    state = _BatchState(config, reporter)
    reporter.start("开始执行处理任务")

    try:
        if workers <= 1:
            dispatched = _run_inline(items, state, cancel_event, make_task)
        else:
            dispatched = _run_pool(items, state, cancel_event, make_task, workers)

        cancelled = [
            FileOutcome(source_path=item.source_path, status="cancelled", page_index=item.page_index)
            for item in items[dispatched:]
        ]
        if cancelled:
            LOGGER.info("任务已取消，%d 个工作单元未执行", len(cancelled))

        if state.assembler is not None:
            _finish_pdf(config, items, state)
    finally:
        if state.assembler is not None:
            state.assembler.close()

    report = BatchReport(
        total=total,
        succeeded=tuple(state.succeeded),
        failed=tuple(state.failed),
        cancelled=tuple(cancelled),
    )
    _write_report(config, report)
    LOGGER.info(
        "处理完成：成功 %d，失败 %d，取消 %d",
        report.success_count,
        report.failure_count,
        len(report.cancelled),
    )
    reporter.finish(cancelled=report.was_cancelled, message="处理完成")
    return report


def iter_batch(
    config: JobConfig,
    cancel_event: Optional[threading.Event] = None,
    queue_size: int = 64,
) -> Iterator[Union[ProgressUpdate, BatchReport]]:
    """在后台线程运行批处理，依次产出进度更新，最后产出 BatchReport。

    批次级错误（如参数错误）在消费者一侧重新抛出。提前停止迭代会取消剩余任务。
    """

    channel = ProgressChannel(queue_size)
    stop = cancel_event or threading.Event()

    def produce() -> None:
        try:
            report = process_batch(config, channel.send, stop)
        except BaseException as exc:  # noqa: BLE001
            channel.fail(exc)
            return
        channel.close(report)

    thread = threading.Thread(target=produce, name="image-converter-batch", daemon=True)
    thread.start()
    finished = False
    try:
        yield from channel
        finished = True
    finally:
        if not finished:
            stop.set()
            channel.abandon()
        thread.join()


def _validate(config: JobConfig) -> None:
    if config.mode is BatchMode.WATERMARK_ONLY and (config.watermark is None or not config.watermark.enabled):
        raise InvalidParametersError("仅加水印模式需要配置文字或图片水印")
    if config.max_workers is not None and config.max_workers < 0:
        raise InvalidParametersError(f"并发数不能为负数: {config.max_workers}")
    if config.render_dpi <= 0:
        raise InvalidParametersError(f"DPI 必须大于 0: {config.render_dpi}")
    if config.output_dir.exists() and not config.output_dir.is_dir():
        raise InvalidParametersError(f"输出路径不是目录: {config.output_dir}")


def _build_task(config: JobConfig, watermark: Optional[PreparedWatermark], item: WorkItem) -> ProcessingTask:
    output_format = None if item.mode is BatchMode.IMAGE_TO_PDF else resolve_output_format(config, item.source_path)
    return ProcessingTask(
        item=item,
        output_format=output_format,
        compression=config.compression,
        watermark=watermark,
        render_dpi=config.render_dpi,
    )


def _is_cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def _run_inline(
    items: list[WorkItem],
    state: _BatchState,
    cancel_event: Optional[threading.Event],
    make_task: TaskFactory,
) -> int:
    dispatched = 0
    for item in items:
        if _is_cancelled(cancel_event):
            break
        dispatched += 1
        state.record(item, run_task(make_task(item)))
    return dispatched


def _run_pool(
    items: list[WorkItem],
    state: _BatchState,
    cancel_event: Optional[threading.Event],
    make_task: TaskFactory,
    workers: int,
) -> int:
    """滑动窗口调度：同时在途的任务不超过 workers 个，每次派发前检查取消标记。"""

    dispatched = 0
    in_flight: dict[Future[TaskResult], WorkItem] = {}

    with ProcessPoolExecutor(max_workers=workers) as executor:

        def fill() -> None:
            nonlocal dispatched
            while len(in_flight) < workers and dispatched < len(items) and not _is_cancelled(cancel_event):
                item = items[dispatched]
                dispatched += 1
                try:
                    in_flight[executor.submit(run_task, make_task(item))] = item
                except BrokenProcessPool as exc:
                    LOGGER.error("进程池已损坏，无法派发 %s", item.label)
                    state.record(item, _worker_failure(item, exc))

        fill()
        while in_flight:
            done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
            for future in done:
                item = in_flight.pop(future)
                try:
                    result = future.result()
                except Exception as exc:  # noqa: BLE001
                    LOGGER.exception("任务执行异常：%s", exc)
                    result = _worker_failure(item, exc)
                state.record(item, result)
            fill()

    return dispatched


def _worker_failure(item: WorkItem, exc: BaseException) -> TaskResult:
    return TaskResult(
        FileOutcome(
            source_path=item.source_path,
            status="error-worker",
            message=str(exc) or type(exc).__name__,
            page_index=item.page_index,
        )
    )


def _finish_pdf(config: JobConfig, items: list[WorkItem], state: _BatchState) -> None:
    assembler = state.assembler
    assert assembler is not None
    if not state.deferred:
        LOGGER.warning("没有可写入 PDF 的页面")
        return

    output_path = items[0].output_path
    try:
        assembler.finish(output_path)
    except WriteError as exc:
        LOGGER.error("PDF 写入失败：%s", exc)
        state.failed.extend(
            FileOutcome(
                source_path=outcome.source_path,
                status=exc.status,
                message=str(exc),
                page_index=outcome.page_index,
            )
            for outcome in state.deferred
        )
        return
    state.succeeded.extend(state.deferred)


def _write_report(config: JobConfig, report: BatchReport) -> None:
    if not config.report_filename:
        return
    try:
        write_csv_report(report, config.output_dir, config.report_filename)
    except OSError as exc:
        LOGGER.error("写入报告失败：%s", exc)
