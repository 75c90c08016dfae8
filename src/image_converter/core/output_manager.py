"""输出命名与写入模块。"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from image_converter.core.config import OutputFormat
from image_converter.core.exceptions import EncodeError

LOGGER = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".part"


def output_path_for(source: Path, output_dir: Path, fmt: OutputFormat) -> Path:
    """输出文件名 = 源文件名主干 + 输出格式的标准扩展名。同名文件直接覆盖。"""

    return output_dir / f"{source.stem}.{fmt.extension}"


def write_atomic(destination: Path, data: bytes) -> Path:
    """写入临时文件后原子替换，中断时不会留下半个文件。"""

    destination.parent.mkdir(parents=True, exist_ok=True)
    temp_path = destination.with_name(destination.name + PARTIAL_SUFFIX)
    try:
        with temp_path.open("wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, destination)
    except OSError as exc:
        temp_path.unlink(missing_ok=True)
        raise EncodeError(f"写入文件失败: {destination}") from exc

    LOGGER.debug("写入 %s (%d 字节)", destination.name, len(data))
    return destination
