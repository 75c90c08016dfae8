"""按目标体积压缩：在缩放比例与质量两个维度上搜索编码参数。"""

from __future__ import annotations

import logging
import math
from functools import partial, reduce
from typing import Iterator, Optional, Tuple

from image_converter.core.config import CompressionMode, CompressionTarget, OutputFormat
from image_converter.core.exceptions import InvalidParametersError
from image_converter.core.models import CompressionResult, EncodingAttempt, RasterImage
from image_converter.processing.codec import EncodeParams, encode, resample

LOGGER = logging.getLogger(__name__)

_SCALE_EPSILON = 1e-6


def compress(raster: RasterImage, fmt: OutputFormat, target: CompressionTarget) -> CompressionResult:
    """将图像编码为 fmt，使结果尽量不超过 target 指定的体积。

    ORIGINAL 模式只编码一次；SIZE_TARGET 模式返回预算内尺寸最大、质量最高的一次尝试，
    全部超出预算时返回体积最小的一次并标记 approximate。
    """

    if target.mode is CompressionMode.ORIGINAL:
        return _encode_original(raster, fmt, target)

    if target.target_bytes <= 0:
        raise InvalidParametersError(f"目标大小必须大于 0: {target.target_bytes}")

    fold = partial(_keep_better, target.budget)
    best, attempts = reduce(fold, _search_attempts(raster, fmt, target), (None, 0))
    assert best is not None

    approximate = best.size > target.budget
    if approximate:
        LOGGER.debug(
            "无法压缩到 %d 字节以内，采用最小结果 %d 字节 (scale=%.2f, quality=%d)",
            target.target_bytes,
            best.size,
            best.scale,
            best.quality,
        )
    return CompressionResult(
        data=best.data,
        quality=best.quality,
        scale=best.scale,
        width=best.width,
        height=best.height,
        approximate=approximate,
        attempts=attempts,
    )


def _encode_original(raster: RasterImage, fmt: OutputFormat, target: CompressionTarget) -> CompressionResult:
    # JPEG 没有无损模式，取质量上限；其余格式无损编码（GIF 为 256 色）。
    if fmt is OutputFormat.JPEG:
        params = EncodeParams(quality=target.max_quality)
    else:
        params = EncodeParams(lossless=True)
    data = encode(raster, fmt, params)
    return CompressionResult(
        data=data,
        quality=target.max_quality,
        scale=1.0,
        width=raster.width,
        height=raster.height,
    )


def _keep_better(
    budget: float,
    state: Tuple[Optional[EncodingAttempt], int],
    candidate: EncodingAttempt,
) -> Tuple[Optional[EncodingAttempt], int]:
    best, count = state
    if best is None:
        return candidate, count + 1

    best_fits = best.size <= budget
    candidate_fits = candidate.size <= budget
    if best_fits != candidate_fits:
        return (candidate if candidate_fits else best), count + 1
    if candidate_fits:
        better = (candidate.scale, candidate.quality) > (best.scale, best.quality)
    else:
        better = candidate.size < best.size
    return (candidate if better else best), count + 1


def _search_attempts(raster: RasterImage, fmt: OutputFormat, target: CompressionTarget) -> Iterator[EncodingAttempt]:
    """按需生成编码尝试。

    外层从 max_scale 逐级缩小，内层对质量做二分；命中容差区间、某一缩放级别出现
    预算内结果或到达最小缩放时停止。
    """

    budget = target.budget
    lower_bound = target.target_bytes * (1.0 - target.tolerance)
    scale = target.max_scale

    while True:
        scaled = resample(raster, scale)
        fitted = False
        smallest: Optional[int] = None

        for attempt in _quality_probes(scaled, fmt, scale, target):
            yield attempt
            if attempt.size <= budget:
                fitted = True
                if attempt.size >= lower_bound:
                    return
            smallest = attempt.size if smallest is None else min(smallest, attempt.size)

        if fitted or scale <= target.min_scale + _SCALE_EPSILON:
            return
        assert smallest is not None
        scale = _next_scale(scale, smallest, target)


def _quality_probes(
    scaled: RasterImage,
    fmt: OutputFormat,
    scale: float,
    target: CompressionTarget,
) -> Iterator[EncodingAttempt]:
    if not fmt.supports_quality:
        yield _attempt(scaled, fmt, scale, target.max_quality, EncodeParams())
        return

    low, high = target.min_quality, target.max_quality
    quality = high
    for _ in range(target.max_probes_per_scale):
        attempt = _attempt(scaled, fmt, scale, quality, EncodeParams(quality=quality))
        yield attempt
        if attempt.size <= target.budget:
            low = quality + 1
        else:
            high = quality - 1
        if low > high:
            return
        quality = (low + high) // 2


def _attempt(
    scaled: RasterImage,
    fmt: OutputFormat,
    scale: float,
    quality: int,
    params: EncodeParams,
) -> EncodingAttempt:
    data = encode(scaled, fmt, params)
    LOGGER.debug("探测 %s scale=%.2f quality=%d -> %d 字节", fmt.name, scale, quality, len(data))
    return EncodingAttempt(
        quality=quality,
        scale=scale,
        size=len(data),
        width=scaled.width,
        height=scaled.height,
        data=data,
    )


def _next_scale(scale: float, smallest_size: int, target: CompressionTarget) -> float:
    """下一级缩放：至少降一级，并按面积比估算可跳过的级数。"""

    step = target.scale_step
    candidate = scale - step
    estimate = scale * math.sqrt(target.budget / max(1, smallest_size))
    if estimate < candidate:
        skipped = math.floor((candidate - estimate) / step + _SCALE_EPSILON)
        candidate -= skipped * step
    return round(max(target.min_scale, candidate), 6)
