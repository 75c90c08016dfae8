"""报告生成工具。"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Optional

from image_converter.core.models import BatchReport

HEADER = ["source_path", "page", "output_path", "status", "message", "quality", "scale", "approximate"]


def write_csv_report(report: BatchReport, output_dir: Path, filename: str) -> Path:
    """将处理结果写入 CSV 报告。"""

    report_path = output_dir / filename
    report_path.parent.mkdir(parents=True, exist_ok=True)
    with report_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(HEADER)
        for record in report.all_outcomes():
            writer.writerow(
                [
                    str(record.source_path),
                    "" if record.page_index is None else record.page_index + 1,
                    str(record.output_path) if record.output_path else "",
                    record.status,
                    record.message or "",
                    "" if record.quality is None else record.quality,
                    _format_scale(record.scale),
                    "yes" if record.approximate else "",
                ]
            )
    return report_path


def _format_scale(value: Optional[float]) -> str:
    if value is None:
        return ""
    return f"{value:.2f}"
