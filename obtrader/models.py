"""Core value types and enumerations shared across the bot."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ObType(str, Enum):
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1

    @classmethod
    def for_ob(cls, ob_type: ObType) -> "Side":
        return cls.LONG if ob_type is ObType.BULLISH else cls.SHORT


class Confidence(str, Enum):
    HIGH = "high"
    LOW = "low"


class PositionStatus(str, Enum):
    PENDING = "PENDING"
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ProcessedReason(str, Enum):
    POSITION_OPENED = "position_opened"
    POSITION_ADDED = "position_added"
    EXPIRED_MAX_AGE = "expired_max_age"
    SIZE_TOO_SMALL = "size_too_small"
    ORDER_FAILED = "order_failed"
    PRICE_TOO_FAR = "price_too_far"
    TOO_OLD = "too_old"
    WEEKEND_FORMATION = "weekend_formation"


class ExitReason(str, Enum):
    STOP_LOSS_TRIGGERED = "STOP_LOSS_TRIGGERED"
    REVERSAL_OB = "REVERSAL_OB"
    TRAILING_STOP = "TRAILING_STOP"
    EMERGENCY_CLOSE = "EMERGENCY_CLOSE"


def htf_target_reason(timeframe: str) -> str:
    return f"HTF_TARGET_{timeframe}"


class TradeEventType(str, Enum):
    OPEN = "OPEN"
    ADD = "ADD"
    CLOSE = "CLOSE"


@dataclass(frozen=True)
class Candle:
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    index: int = 0

    @property
    def body_low(self) -> float:
        return min(self.open, self.close)

    @property
    def body_high(self) -> float:
        return max(self.open, self.close)


def reindex(candles: list[Candle]) -> list[Candle]:
    """Return candles sorted by time with positional indexes and no duplicate timestamps."""
    seen: set[datetime] = set()
    ordered: list[Candle] = []
    for candle in sorted(candles, key=lambda c: c.timestamp):
        if candle.timestamp in seen:
            continue
        seen.add(candle.timestamp)
        ordered.append(candle)
    return [
        Candle(
            timestamp=c.timestamp,
            open=c.open,
            high=c.high,
            low=c.low,
            close=c.close,
            volume=c.volume,
            index=i,
        )
        for i, c in enumerate(ordered)
    ]
