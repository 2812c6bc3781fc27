"""Exchange client interface and result types."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from obtrader.models import Side


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"


class OrderState(str, Enum):
    FILLED = "filled"
    RESTING = "resting"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class OrderResult:
    success: bool
    order_id: Optional[str] = None
    state: OrderState = OrderState.UNKNOWN
    execution_price: Optional[float] = None
    executed_size: float = 0.0
    fee: float = 0.0
    stop_loss_order_id: Optional[str] = None
    liquidation_price: Optional[float] = None
    error: Optional[str] = None

    @property
    def filled(self) -> bool:
        return self.success and self.state is OrderState.FILLED


@dataclass(frozen=True)
class OrderStatus:
    state: OrderState
    avg_price: Optional[float] = None
    filled_size: float = 0.0
    fee: float = 0.0
    stop_loss_order_id: Optional[str] = None
    liquidation_price: Optional[float] = None


@dataclass(frozen=True)
class CloseResult:
    success: bool
    execution_price: Optional[float] = None
    fee: float = 0.0
    error: Optional[str] = None


@dataclass(frozen=True)
class LivePosition:
    symbol: str
    side: Side
    size: float
    entry_price: float
    liquidation_price: Optional[float] = None


@dataclass(frozen=True)
class StopUpdateResult:
    success: bool
    new_order_id: Optional[str] = None
    error: Optional[str] = None


class ExchangeClient(Protocol):
    def get_price(self, symbol: str) -> float: ...

    def get_balance(self) -> float: ...

    def place_order(
        self,
        symbol: str,
        side: Side,
        size: float,
        price: float,
        stop_loss: float,
        order_type: OrderType,
    ) -> OrderResult: ...

    def get_order_status(self, symbol: str, order_id: str) -> OrderStatus: ...

    def cancel_order(self, symbol: str, order_id: str) -> bool: ...

    def close_position(self, symbol: str, size: float, price: float) -> CloseResult: ...

    def get_live_position(self, symbol: str) -> Optional[LivePosition]: ...

    def update_stop_loss(
        self, symbol: str, order_id: Optional[str], new_price: float
    ) -> StopUpdateResult: ...
