"""Risk-based position sizing."""
from __future__ import annotations

from dataclasses import dataclass
import math

from .config import MarketRules
from .errors import InsufficientMargin, InvalidStopDistance

MARGIN_BUFFER = 0.95


def floor_to_increment(value: float, increment: float) -> float:
    """Floor value to a multiple of increment, tolerant of float noise."""
    if increment <= 0:
        return value
    steps = math.floor(value / increment + 1e-9)
    decimals = max(0, -math.floor(math.log10(increment))) + 2
    return round(steps * increment, decimals)


def round_price(price: float, precision: int) -> float:
    return round(price, precision)


@dataclass(frozen=True)
class SizeResult:
    risk_amount: float
    risk_distance: float
    raw_size: float
    size: float
    position_value: float
    required_margin: float
    too_small: bool


class PositionSizer:
    """Sizes positions so that a stop-out loses a fixed share of the balance.

    Leverage only affects the margin requirement, never the size.
    """

    def __init__(self, rules: MarketRules, margin_buffer: float = MARGIN_BUFFER) -> None:
        self.rules = rules
        self.margin_buffer = margin_buffer

    def risk_amount(
        self,
        balance: float,
        risk_percent: float,
        addition_number: int = 0,
        scale_down_factor: float = 1.0,
    ) -> float:
        amount = balance * risk_percent / 100
        if addition_number > 0:
            amount *= scale_down_factor**addition_number
        return amount

    def size(
        self,
        balance: float,
        risk_percent: float,
        leverage: int,
        entry_price: float,
        stop_loss: float,
        addition_number: int = 0,
        scale_down_factor: float = 1.0,
    ) -> SizeResult:
        risk_distance = abs(entry_price - stop_loss)
        if risk_distance <= 0:
            raise InvalidStopDistance(
                "Stop loss equals entry price",
                details={"entry_price": entry_price, "stop_loss": stop_loss},
            )
        risk = self.risk_amount(balance, risk_percent, addition_number, scale_down_factor)
        raw_size = risk / risk_distance
        size = floor_to_increment(raw_size, self.rules.size_increment)
        position_value = size * entry_price
        required_margin = position_value / leverage
        result = SizeResult(
            risk_amount=risk,
            risk_distance=risk_distance,
            raw_size=raw_size,
            size=size,
            position_value=position_value,
            required_margin=required_margin,
            too_small=size < self.rules.min_size,
        )
        if not result.too_small and required_margin > balance * self.margin_buffer:
            raise InsufficientMargin(
                f"Required margin {required_margin:.2f} exceeds available {balance * self.margin_buffer:.2f}",
                details={"required_margin": required_margin, "balance": balance, "size": size},
            )
        return result
