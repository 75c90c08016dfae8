"""输入扫描与工作单元生成。"""

from __future__ import annotations

from pathlib import Path

import fitz
import pytest
from PIL import Image

from image_converter.core.config import BatchMode, JobConfig, OutputFormat
from image_converter.core.exceptions import InvalidParametersError
from image_converter.core.scanner import (
    collect_work_items,
    default_worker_count,
    natural_sort_key,
    pdf_output_name,
)


def _make_pdf(path: Path, pages: int) -> Path:
    document = fitz.open()
    for _ in range(pages):
        document.new_page(width=200, height=100)
    document.save(path)
    document.close()
    return path


def test_natural_sort_orders_numbers_by_value() -> None:
    names = ["page_10.png", "page_2.png", "Page_1.png", "page_100.png", "cover.png"]

    assert sorted(names, key=natural_sort_key) == [
        "cover.png",
        "Page_1.png",
        "page_2.png",
        "page_10.png",
        "page_100.png",
    ]


def test_directory_scan_is_flat_filtered_and_ordered(tmp_path: Path) -> None:
    source = tmp_path / "input"
    (source / "nested").mkdir(parents=True)
    for name in ("img_10.png", "img_2.JPG", "img_1.webp"):
        Image.new("RGB", (8, 8)).save(source / name, format="PNG")
    Image.new("RGB", (8, 8)).save(source / "nested" / "img_0.png")
    (source / "notes.txt").write_text("hello")

    items = collect_work_items(JobConfig(input_path=source, output_dir=tmp_path / "out"))

    assert [item.source_path.name for item in items] == ["img_1.webp", "img_2.JPG", "img_10.png"]
    assert [item.index for item in items] == [0, 1, 2]
    assert [item.output_path.name for item in items] == ["img_1.png", "img_2.png", "img_10.png"]


def test_output_extension_follows_format(tmp_path: Path) -> None:
    image = tmp_path / "photo.png"
    Image.new("RGB", (8, 8)).save(image)

    config = JobConfig(input_path=image, output_dir=tmp_path / "out", output_format=OutputFormat.JPEG)
    watermark_config = JobConfig(input_path=image, output_dir=tmp_path / "out", mode=BatchMode.WATERMARK_ONLY)

    assert collect_work_items(config)[0].output_path == tmp_path / "out" / "photo.jpg"
    assert collect_work_items(watermark_config)[0].output_path == tmp_path / "out" / "photo.png"


def test_pdf_sources_expand_to_pages(tmp_path: Path) -> None:
    source = tmp_path / "docs"
    source.mkdir()
    _make_pdf(source / "b.pdf", 2)
    _make_pdf(source / "a.pdf", 3)
    (source / "broken.pdf").write_bytes(b"not a pdf")

    items = collect_work_items(
        JobConfig(input_path=source, output_dir=tmp_path / "out", mode=BatchMode.PDF_TO_IMAGE)
    )

    assert [item.output_path.name for item in items] == [
        "a_page_1.png",
        "a_page_2.png",
        "a_page_3.png",
        "b_page_1.png",
        "b_page_2.png",
        "broken_page_1.png",
    ]
    assert [item.page_index for item in items] == [0, 1, 2, 0, 1, 0]
    assert items[0].label == "a.pdf (第 1 页)"


def test_image_to_pdf_items_share_one_output(tmp_path: Path) -> None:
    source = tmp_path / "scans"
    source.mkdir()
    for index in range(3):
        Image.new("RGB", (8, 8)).save(source / f"{index}.png")

    config = JobConfig(input_path=source, output_dir=tmp_path / "out", mode=BatchMode.IMAGE_TO_PDF)
    items = collect_work_items(config)

    assert {item.output_path for item in items} == {tmp_path / "out" / "scans.pdf"}
    config.pdf_filename = "merged"
    assert pdf_output_name(config) == "merged.pdf"


def test_invalid_inputs_are_rejected(tmp_path: Path) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()
    text_file = tmp_path / "readme.txt"
    text_file.write_text("x")

    with pytest.raises(InvalidParametersError):
        collect_work_items(JobConfig(input_path=tmp_path / "missing", output_dir=tmp_path))
    with pytest.raises(InvalidParametersError):
        collect_work_items(JobConfig(input_path=empty, output_dir=tmp_path))
    with pytest.raises(InvalidParametersError):
        collect_work_items(JobConfig(input_path=text_file, output_dir=tmp_path))


def test_default_worker_count_is_bounded() -> None:
    assert 1 <= default_worker_count(4) <= 4
    assert default_worker_count(1) == 1
    assert default_worker_count(0) == 1
