"""Volatility and volume indicators."""
from __future__ import annotations

import math
from typing import Sequence

from .models import Candle


def true_ranges(candles: Sequence[Candle]) -> list[float]:
    ranges: list[float] = []
    for idx, candle in enumerate(candles):
        if idx == 0:
            ranges.append(candle.high - candle.low)
            continue
        prev_close = candles[idx - 1].close
        ranges.append(
            max(
                candle.high - candle.low,
                abs(candle.high - prev_close),
                abs(candle.low - prev_close),
            )
        )
    return ranges


def average_true_range(candles: Sequence[Candle], period: int) -> list[float]:
    """Wilder ATR series.

    The first value is the mean of the first `period` true ranges (the first
    true range uses the previous close, so the series starts at candle 1).
    Later values are smoothed as (prev * (period - 1) + tr) / period.
    """
    if period < 1:
        raise ValueError("period must be >= 1")
    ranges = true_ranges(candles)[1:]
    if len(ranges) < period:
        return []
    atr = sum(ranges[:period]) / period
    series = [atr]
    for tr in ranges[period:]:
        atr = (atr * (period - 1) + tr) / period
        series.append(atr)
    return series


def latest_atr(candles: Sequence[Candle], period: int) -> float | None:
    series = average_true_range(candles, period)
    return series[-1] if series else None


def volume_threshold(volumes: Sequence[float], method: str, param: float) -> float:
    """Volume level a breakout candle must reach.

    Zero volumes are ignored. An empty window yields 0, so any volume passes.
    """
    values = [v for v in volumes if v and v > 0]
    if not values:
        return 0.0
    count = len(values)
    if method == "percentile":
        ordered = sorted(values)
        return ordered[math.floor(param / 100 * (count - 1))]
    if method == "sma":
        return sum(values) / count * param
    if method == "ema":
        k = 2 / (count + 1)
        ema = values[0]
        for value in values[1:]:
            ema = value * k + ema * (1 - k)
        return ema * param
    if method == "stddev":
        mean = sum(values) / count
        variance = sum((v - mean) ** 2 for v in values) / count
        return mean + math.sqrt(variance) * param
    raise ValueError(f"Unknown volume method: {method}")
