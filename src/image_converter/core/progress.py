"""进度更新的数据模型与投递通道。"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Union

from image_converter.core.models import BatchReport

LOGGER = logging.getLogger(__name__)

STATUS_RUNNING = "running"
STATUS_COMPLETE = "complete"
STATUS_CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class ProgressUpdate:
    """批处理过程中的进度信息。"""

    processed: int
    total: int
    current: Optional[str] = None
    error: Optional[str] = None
    status: str = STATUS_RUNNING

    @property
    def is_final(self) -> bool:
        return self.status != STATUS_RUNNING


ProgressCallback = Optional[Callable[[ProgressUpdate], None]]


class ProgressReporter:
    """进度的唯一写入者，对中间事件按条数或时间间隔合并。

    首个事件即携带正确的 total；最终事件总会发出。
    """

    def __init__(
        self,
        callback: ProgressCallback,
        total: int,
        *,
        every: int = 1,
        interval: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._callback = callback
        self.total = total
        self.processed = 0
        self._every = max(1, every)
        self._interval = max(0.0, interval)
        self._clock = clock
        self._last_emitted = 0
        self._last_time = clock()
        self._finished = False

    def start(self, message: Optional[str] = None) -> None:
        self._emit(ProgressUpdate(processed=0, total=self.total, current=message))

    def advance(self, label: str, error: Optional[str] = None) -> None:
        """记录一个已完成的处理单元。"""

        self.processed = min(self.processed + 1, self.total)
        now = self._clock()
        due = (
            error is not None
            or self.processed == self.total
            or self.processed - self._last_emitted >= self._every
            or now - self._last_time >= self._interval
        )
        if due:
            self._emit(ProgressUpdate(processed=self.processed, total=self.total, current=label, error=error))

    def finish(self, cancelled: bool = False, message: Optional[str] = None) -> None:
        if self._finished:
            return
        self._finished = True
        status = STATUS_CANCELLED if cancelled else STATUS_COMPLETE
        processed = self.processed if cancelled else self.total
        self._emit(ProgressUpdate(processed=processed, total=self.total, current=message, status=status))

    def _emit(self, update: ProgressUpdate) -> None:
        self._last_emitted = update.processed
        self._last_time = self._clock()
        if self._callback is None:
            return
        self._callback(update)


_CLOSED = object()


class ProgressChannel:
    """有界的多生产者、单消费者通道。

    队列已满时丢弃中间进度；最终进度与批次报告阻塞投递，不会丢失。
    """

    def __init__(self, maxsize: int = 64) -> None:
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max(1, maxsize))
        self._dropped = 0
        self._lock = threading.Lock()
        self._abandoned = threading.Event()

    @property
    def dropped(self) -> int:
        return self._dropped

    def send(self, update: ProgressUpdate) -> None:
        if self._abandoned.is_set():
            return
        if update.is_final or update.error is not None:
            self._queue.put(update)
            return
        try:
            self._queue.put_nowait(update)
        except queue.Full:
            with self._lock:
                self._dropped += 1

    def close(self, report: BatchReport) -> None:
        self._put_terminal(report)

    def fail(self, exc: BaseException) -> None:
        self._put_terminal(exc)

    def abandon(self) -> None:
        """消费者提前退出：之后的投递全部忽略，并清空队列以唤醒阻塞的生产者。"""

        self._abandoned.set()
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return

    def _put_terminal(self, item: object) -> None:
        if self._abandoned.is_set():
            return
        self._queue.put(item)
        self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[Union[ProgressUpdate, BatchReport]]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                if self._dropped:
                    LOGGER.debug("进度通道合并丢弃了 %d 条中间更新", self._dropped)
                return
            if isinstance(item, BaseException):
                raise item
            yield item  # type: ignore[misc]
