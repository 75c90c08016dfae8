"""日志初始化。"""

from __future__ import annotations

import logging

from rich.logging import RichHandler

# Pillow 在 DEBUG 级别会逐块打印 PNG 流信息。
_NOISY_LOGGERS = ("PIL",)


def setup_logging(level: int = logging.INFO, *, rich_console: bool = False) -> None:
    """初始化项目日志配置。

    rich_console 为 True 时使用 rich 输出，便于与命令行进度条共存。
    """

    if rich_console:
        logging.basicConfig(
            level=level,
            format="[%(processName)s] %(name)s: %(message)s",
            handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        )
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(processName)s] %(levelname)s %(name)s: %(message)s",
        )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))
