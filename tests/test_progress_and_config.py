"""进度合并、投递通道与默认配置解析。"""

from __future__ import annotations

from pathlib import Path

import pytest

from image_converter.core.config import (
    Anchor,
    BatchMode,
    CompressionMode,
    ConverterDefaults,
    OutputFormat,
    PageOrientation,
    PageSize,
)
from image_converter.core.exceptions import InvalidParametersError
from image_converter.core.models import BatchReport
from image_converter.core.progress import ProgressChannel, ProgressReporter, ProgressUpdate
from image_converter.utils.colors import parse_color


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_reporter_coalesces_by_count() -> None:
    updates: list[ProgressUpdate] = []
    reporter = ProgressReporter(updates.append, 10, every=4, interval=60, clock=FakeClock())

    reporter.start()
    for index in range(10):
        reporter.advance(f"item {index}")
    reporter.finish()

    assert [update.processed for update in updates] == [0, 4, 8, 10, 10]
    assert updates[-1].status == "complete"


def test_reporter_flushes_after_interval_and_on_error() -> None:
    clock = FakeClock()
    updates: list[ProgressUpdate] = []
    reporter = ProgressReporter(updates.append, 100, every=50, interval=0.5, clock=clock)

    reporter.start()
    reporter.advance("a")
    clock.now = 1.0
    reporter.advance("b")
    reporter.advance("c", error="c: 解码失败")

    assert [update.processed for update in updates] == [0, 2, 3]
    assert updates[-1].error == "c: 解码失败"


def test_reporter_finish_is_emitted_once() -> None:
    updates: list[ProgressUpdate] = []
    reporter = ProgressReporter(updates.append, 3)

    reporter.advance("a")
    reporter.finish(cancelled=True)
    reporter.finish()

    assert len([update for update in updates if update.is_final]) == 1
    assert updates[-1].status == "cancelled"
    assert updates[-1].processed == 1


def test_channel_drops_intermediate_updates_but_keeps_final() -> None:
    channel = ProgressChannel(maxsize=2)
    report = BatchReport(total=5, succeeded=(), failed=())

    for processed in range(5):
        channel.send(ProgressUpdate(processed=processed, total=5))

    assert channel.dropped == 3

    # 消费者读取后终态事件才能入队
    received = []
    iterator = iter(channel)
    received.append(next(iterator))
    received.append(next(iterator))
    channel.send(ProgressUpdate(processed=5, total=5, status="complete"))
    received.append(next(iterator))
    channel.close(report)
    received.extend(iterator)

    assert [item.processed for item in received[:3]] == [0, 1, 5]
    assert received[-1] is report


def test_channel_reraises_batch_errors() -> None:
    channel = ProgressChannel()
    channel.fail(InvalidParametersError("输入路径不存在"))

    with pytest.raises(InvalidParametersError):
        list(channel)


def test_defaults_from_mapping() -> None:
    defaults = ConverterDefaults.from_mapping(
        {
            "target_kb": 250,
            "output_format": "jpg",
            "compression_mode": "original",
            "orientation": "landscape",
            "page_size": "letter",
            "watermark_position": "top-left",
            "text_color": [10, 20, 30, 40],
            "unknown_key": "ignored",
        }
    )

    assert defaults.target_kb == 250
    assert defaults.output_format is OutputFormat.JPEG
    assert defaults.compression_mode is CompressionMode.ORIGINAL
    assert defaults.orientation is PageOrientation.LANDSCAPE
    assert defaults.pdf_spec().page_size is PageSize.LETTER
    assert defaults.watermark_position is Anchor.TOP_LEFT
    assert defaults.text_color == (10, 20, 30, 40)
    assert defaults.compression_target().mode is CompressionMode.ORIGINAL


def test_defaults_build_job(tmp_path: Path) -> None:
    defaults = ConverterDefaults()

    job = defaults.job(tmp_path / "in", tmp_path / "out", BatchMode.IMAGE_TO_PDF, max_workers=2)

    assert job.compression.target_bytes == 400 * 1024
    assert job.pdf.dpi == 150
    assert job.pdf.margin_mm == 0.0
    assert job.max_workers == 2
    assert defaults.text_watermark("hi").letter_spacing == defaults.letter_spacing


def test_defaults_reject_bad_values() -> None:
    with pytest.raises(InvalidParametersError):
        ConverterDefaults.from_mapping({"orientation": "diagonal"})


@pytest.mark.parametrize(
    "value, expected",
    [
        ("#fff", (255, 255, 255, 255)),
        ("00FF7F", (0, 255, 127, 255)),
        ("#11223344", (17, 34, 51, 68)),
        ("#f008", (255, 0, 0, 136)),
        ("10, 20, 30", (10, 20, 30, 255)),
        ([1, 2, 3, 4], (1, 2, 3, 4)),
    ],
)
def test_parse_color(value, expected: tuple[int, int, int, int]) -> None:
    assert parse_color(value) == expected


def test_parse_color_uses_default_alpha() -> None:
    assert parse_color("#000000", default_alpha=200) == (0, 0, 0, 200)


@pytest.mark.parametrize("value", ["#12", "", "1,2", "300,0,0", "a,b,c"])
def test_parse_color_rejects_garbage(value: str) -> None:
    with pytest.raises(InvalidParametersError):
        parse_color(value)
