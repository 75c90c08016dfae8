"""PDF 页面几何、写出与渲染。"""

from __future__ import annotations

from pathlib import Path

import fitz
import numpy as np
import pytest
from PIL import Image

from image_converter.core.config import PageOrientation, PageSize, PdfPageSpec
from image_converter.core.exceptions import InvalidParametersError, RenderError, WriteError
from image_converter.core.models import PixelFormat, RasterImage
from image_converter.processing.pdf_render import get_page_count, open_document, render_page, render_page_from_path
from image_converter.processing.pdf_writer import PdfDocumentBuilder, compute_page_geometry, write_document


def _raster(width: int, height: int, color=(30, 120, 200)) -> RasterImage:
    return RasterImage.from_pil(Image.new("RGB", (width, height), color))


def test_zero_margin_page_matches_image_physical_size() -> None:
    geometry = compute_page_geometry(1500, 844, PdfPageSpec(dpi=150, margin_mm=0.0))

    assert geometry.page_width == pytest.approx(720.0)
    assert geometry.page_height == pytest.approx(405.12)
    assert geometry.image_rect[:2] == (0.0, 0.0)
    assert geometry.image_rect[2:] == pytest.approx((720.0, 405.12))
    assert geometry.rotate == 0


def test_margin_is_added_on_both_sides() -> None:
    geometry = compute_page_geometry(300, 150, PdfPageSpec(dpi=300, margin_mm=25.4))

    assert geometry.page_width == pytest.approx(72 + 144)
    assert geometry.page_height == pytest.approx(36 + 144)
    assert geometry.image_rect == pytest.approx((72.0, 72.0, 144.0, 108.0))


@pytest.mark.parametrize(
    "orientation, size, rotate, landscape",
    [
        (PageOrientation.AUTO, (400, 200), 0, True),
        (PageOrientation.AUTO, (200, 400), 0, False),
        (PageOrientation.LANDSCAPE, (200, 400), 90, True),
        (PageOrientation.PORTRAIT, (400, 200), 90, False),
        (PageOrientation.PORTRAIT, (200, 400), 0, False),
    ],
)
def test_orientation(orientation: PageOrientation, size: tuple[int, int], rotate: int, landscape: bool) -> None:
    geometry = compute_page_geometry(*size, PdfPageSpec(orientation=orientation))

    assert geometry.rotate == rotate
    assert (geometry.page_width > geometry.page_height) is landscape


def test_write_document_single_page_example(tmp_path: Path) -> None:
    output = tmp_path / "out.pdf"

    pages = write_document([_raster(1500, 844)], PdfPageSpec(dpi=150), output)

    assert pages == 1
    assert not (tmp_path / "out.pdf.part").exists()
    with fitz.open(output) as document:
        page = document[0]
        assert page.rect.width == pytest.approx(720.0, abs=0.01)
        assert page.rect.height == pytest.approx(405.12, abs=0.01)
        bbox = page.get_image_info()[0]["bbox"]
        assert bbox[0] == pytest.approx(0.0, abs=0.01)
        assert bbox[1] == pytest.approx(0.0, abs=0.01)


def test_round_trip_preserves_pixel_size(tmp_path: Path) -> None:
    output = tmp_path / "round.pdf"
    sizes = [(640, 480), (333, 517)]
    write_document([_raster(*size) for size in sizes], PdfPageSpec(dpi=150), output)

    assert get_page_count(output) == 2
    with open_document(output) as document:
        for index, (width, height) in enumerate(sizes):
            rendered = render_page(document, index, dpi=150)
            assert rendered.pixel_format is PixelFormat.RGB
            assert abs(rendered.width - width) <= 1
            assert abs(rendered.height - height) <= 1


def test_lossless_embedding_keeps_colors(tmp_path: Path) -> None:
    output = tmp_path / "color.pdf"
    write_document([_raster(120, 80, (10, 200, 90))], PdfPageSpec(dpi=72), output)

    rendered = render_page_from_path(output, 0, dpi=72).as_array()

    center = rendered[40, 60].astype(int)
    assert np.abs(center - np.array([10, 200, 90])).max() <= 2


def test_pages_keep_sequence_order(tmp_path: Path) -> None:
    output = tmp_path / "order.pdf"
    colors = [(255, 0, 0), (0, 255, 0), (0, 0, 255)]
    write_document([_raster(50, 50, color) for color in colors], PdfPageSpec(dpi=72), output)

    for index, color in enumerate(colors):
        pixel = render_page_from_path(output, index, dpi=72).as_array()[25, 25]
        assert int(np.argmax(pixel)) == int(np.argmax(color))


def test_render_errors(tmp_path: Path) -> None:
    broken = tmp_path / "broken.pdf"
    broken.write_bytes(b"%PDF-1.4\n garbage without objects")
    missing = tmp_path / "missing.pdf"

    with pytest.raises(RenderError):
        get_page_count(broken)
    with pytest.raises(RenderError):
        get_page_count(missing)

    good = tmp_path / "good.pdf"
    write_document([_raster(20, 20)], PdfPageSpec(), good)
    with pytest.raises(RenderError):
        render_page_from_path(good, 3)


def test_builder_refuses_empty_document(tmp_path: Path) -> None:
    with PdfDocumentBuilder() as builder:
        with pytest.raises(WriteError):
            builder.save(tmp_path / "empty.pdf")
    assert not (tmp_path / "empty.pdf").exists()


def test_page_spec_validation() -> None:
    with pytest.raises(InvalidParametersError):
        PdfPageSpec(dpi=0)
    with pytest.raises(InvalidParametersError):
        PdfPageSpec(margin_mm=-1)
    with pytest.raises(InvalidParametersError):
        PdfPageSpec(image_encoding="tiff")


A4_SHORT = 210 * 72 / 25.4
A4_LONG = 297 * 72 / 25.4


def test_fixed_sheet_fits_and_centres_image() -> None:
    geometry = compute_page_geometry(1000, 500, PdfPageSpec(dpi=150, page_size=PageSize.A4, margin_mm=10))

    margin = 10 * 72 / 25.4
    assert (geometry.page_width, geometry.page_height) == pytest.approx((A4_LONG, A4_SHORT))
    left, top, right, bottom = geometry.image_rect
    assert right - left == pytest.approx(A4_LONG - 2 * margin)
    assert (right - left) / (bottom - top) == pytest.approx(2.0)
    assert left == pytest.approx(margin)
    assert top - margin == pytest.approx(geometry.page_height - margin - bottom)


@pytest.mark.parametrize(
    "orientation, size, rotate, landscape",
    [
        (PageOrientation.AUTO, (300, 600), 0, False),
        (PageOrientation.LANDSCAPE, (300, 600), 90, True),
        (PageOrientation.PORTRAIT, (600, 300), 90, False),
    ],
)
def test_fixed_sheet_orientation(
    orientation: PageOrientation, size: tuple[int, int], rotate: int, landscape: bool
) -> None:
    geometry = compute_page_geometry(*size, PdfPageSpec(page_size=PageSize.LETTER, orientation=orientation))

    letter = sorted(value * 72 / 25.4 for value in (215.9, 279.4))
    expected = (letter[1], letter[0]) if landscape else tuple(letter)
    assert (geometry.page_width, geometry.page_height) == pytest.approx(expected)
    assert geometry.rotate == rotate


def test_fixed_sheet_scales_small_images_up(tmp_path: Path) -> None:
    output = tmp_path / "a5.pdf"

    write_document([_raster(50, 100)], PdfPageSpec(dpi=300, page_size=PageSize.A5), output)

    with fitz.open(output) as document:
        page = document[0]
        assert page.rect.width == pytest.approx(148 * 72 / 25.4, abs=0.01)
        assert page.rect.height == pytest.approx(210 * 72 / 25.4, abs=0.01)
        bbox = fitz.Rect(page.get_image_info()[0]["bbox"])
        assert bbox.height == pytest.approx(page.rect.height, abs=0.01)
        assert bbox.x0 == pytest.approx(page.rect.width - bbox.x1, abs=0.01)


def test_margin_larger_than_sheet_is_rejected() -> None:
    with pytest.raises(InvalidParametersError):
        PdfPageSpec(page_size=PageSize.A5, margin_mm=80)
    assert PdfPageSpec(margin_mm=80).page_size is PageSize.ADAPTIVE
