"""颜色解析：HEX 字符串、逗号分隔的分量或现成的序列统一为 RGBA。"""

from __future__ import annotations

import re
from typing import Sequence, Tuple, Union

from image_converter.core.exceptions import InvalidParametersError

RGBA = Tuple[int, int, int, int]
ColorInput = Union[str, Sequence[int]]

HEX_COLOR_RE = re.compile(r"^#?([0-9a-fA-F]{3,4}|[0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")


def parse_color(value: ColorInput, default_alpha: int = 255) -> RGBA:
    """解析 ``#RGB``/``#RGBA``/``#RRGGBB``/``#RRGGBBAA``、``"r,g,b[,a]"`` 或 3~4 元序列。"""

    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise InvalidParametersError("颜色值不能为空")
        if "," in text:
            return _from_components(text.split(","), default_alpha, value)
        return _from_hex(text, default_alpha)
    return _from_components(list(value), default_alpha, value)


def _from_hex(text: str, default_alpha: int) -> RGBA:
    match = HEX_COLOR_RE.match(text)
    if not match:
        raise InvalidParametersError(f"无法解析颜色值: {text}")
    digits = match.group(1)
    if len(digits) in (3, 4):
        digits = "".join(ch * 2 for ch in digits)
    channels = [int(digits[offset : offset + 2], 16) for offset in range(0, len(digits), 2)]
    if len(channels) == 3:
        channels.append(default_alpha)
    return _as_rgba(channels)


def _from_components(parts: Sequence, default_alpha: int, original: ColorInput) -> RGBA:
    if len(parts) not in (3, 4):
        raise InvalidParametersError(f"颜色需要 3 或 4 个分量: {original!r}")
    try:
        channels = [int(str(part).strip()) for part in parts]
    except ValueError as exc:
        raise InvalidParametersError(f"无法解析颜色值: {original!r}") from exc
    if any(not 0 <= channel <= 255 for channel in channels):
        raise InvalidParametersError(f"颜色分量必须位于 [0, 255]: {original!r}")
    if len(channels) == 3:
        channels.append(default_alpha)
    return _as_rgba(channels)


def _as_rgba(channels: Sequence[int]) -> RGBA:
    r, g, b, a = channels
    return r, g, b, a
