"""Order execution package."""

from .exchange import (
    CloseResult,
    ExchangeClient,
    LivePosition,
    OrderResult,
    OrderState,
    OrderStatus,
    OrderType,
    StopUpdateResult,
)
from .hyperliquid import HyperliquidExchange
from .retry import exponential_backoff, retry_with_backoff
from .simulated import SimulatedExchange, liquidation_price
from .state_machine import POSITION_STATES, PositionStateMachine

__all__ = [
    "CloseResult",
    "ExchangeClient",
    "HyperliquidExchange",
    "LivePosition",
    "OrderResult",
    "OrderState",
    "OrderStatus",
    "OrderType",
    "POSITION_STATES",
    "PositionStateMachine",
    "SimulatedExchange",
    "StopUpdateResult",
    "exponential_backoff",
    "liquidation_price",
    "retry_with_backoff",
]
