"""Order block detection from swing breakouts."""
from __future__ import annotations

from dataclasses import dataclass, field

from .indicators import volume_threshold
from .models import Candle, Confidence, ObType


@dataclass(frozen=True)
class DetectorParams:
    swing_length: int = 10
    volume_lookback: int = 20
    volume_method: str = "percentile"
    volume_param: float = 70.0
    max_atr_multiplier: float = 3.5


@dataclass(frozen=True)
class OrderBlock:
    ob_type: ObType
    top: float
    bottom: float
    creation_index: int
    swing_index: int
    ob_candle: Candle
    confirmation: Candle
    confidence: Confidence
    volume_aggregate: float
    breakout_threshold: float
    is_valid: bool = True

    @property
    def size(self) -> float:
        return self.top - self.bottom

    @property
    def breakout_price(self) -> float:
        return self.confirmation.close


@dataclass(frozen=True)
class DetectionResult:
    bullish: list[OrderBlock] = field(default_factory=list)
    bearish: list[OrderBlock] = field(default_factory=list)

    @property
    def all(self) -> list[OrderBlock]:
        return sorted(self.bullish + self.bearish, key=lambda ob: ob.creation_index)


@dataclass
class _Swing:
    index: int
    price: float
    crossed: bool = False


def _volumes(candles: list[Candle]) -> list[float]:
    return [c.volume for c in candles]


def _range_candle(window: list[Candle], ob_type: ObType) -> Candle:
    chosen = window[0]
    for candle in window[1:]:
        if ob_type is ObType.BULLISH and candle.body_low < chosen.body_low:
            chosen = candle
        elif ob_type is ObType.BEARISH and candle.body_high > chosen.body_high:
            chosen = candle
    return chosen


def _build(
    candles: list[Candle],
    idx: int,
    swing: _Swing,
    ob_type: ObType,
    params: DetectorParams,
    breakout_threshold: float,
) -> OrderBlock:
    window = candles[swing.index : idx]
    range_candle = _range_candle(window, ob_type)
    zone_threshold = volume_threshold(
        _volumes(window), params.volume_method, params.volume_param
    )
    confidence = Confidence.HIGH if range_candle.volume >= zone_threshold else Confidence.LOW
    aggregate = sum(c.volume for c in candles[max(0, idx - 2) : idx + 1])
    return OrderBlock(
        ob_type=ob_type,
        top=range_candle.body_high,
        bottom=range_candle.body_low,
        creation_index=idx,
        swing_index=swing.index,
        ob_candle=range_candle,
        confirmation=candles[idx],
        confidence=confidence,
        volume_aggregate=aggregate,
        breakout_threshold=breakout_threshold,
    )


def detect_order_blocks(
    candles: list[Candle],
    params: DetectorParams | None = None,
    atr: float | None = None,
) -> DetectionResult:
    """Detect bullish and bearish order blocks.

    A swing high at index r is confirmed at i = r + swing_length when its high
    exceeds every high in (r, i]. A close beyond the latest uncrossed swing on
    sufficient volume confirms an order block built from the candle between
    the swing and the breakout with the most extreme body. Each swing yields
    at most one order block.
    """
    params = params or DetectorParams()
    result = DetectionResult()
    length = params.swing_length
    if len(candles) <= length:
        return result

    swing_high: _Swing | None = None
    swing_low: _Swing | None = None

    for idx in range(length, len(candles)):
        ref = idx - length
        after = candles[ref + 1 : idx + 1]
        if candles[ref].high > max(c.high for c in after):
            swing_high = _Swing(index=ref, price=candles[ref].high)
        if candles[ref].low < min(c.low for c in after):
            swing_low = _Swing(index=ref, price=candles[ref].low)

        candle = candles[idx]
        lookback = candles[max(0, idx - params.volume_lookback) : idx]
        threshold = volume_threshold(_volumes(lookback), params.volume_method, params.volume_param)
        volume_ok = candle.volume >= threshold

        if swing_high and not swing_high.crossed and candle.close > swing_high.price and volume_ok:
            swing_high.crossed = True
            ob = _build(candles, idx, swing_high, ObType.BULLISH, params, threshold)
            if atr is None or ob.size <= atr * params.max_atr_multiplier:
                result.bullish.append(ob)

        if swing_low and not swing_low.crossed and candle.close < swing_low.price and volume_ok:
            swing_low.crossed = True
            ob = _build(candles, idx, swing_low, ObType.BEARISH, params, threshold)
            if atr is None or ob.size <= atr * params.max_atr_multiplier:
                result.bearish.append(ob)

    return result
