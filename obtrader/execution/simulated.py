"""Deterministic simulated exchange for paper runs and tests."""
from __future__ import annotations

from dataclasses import asdict, dataclass
import json
import logging
from pathlib import Path
import tempfile
from typing import Callable, Optional

from obtrader.config import MAKER_FEE, TAKER_FEE, MarketRules
from obtrader.errors import DataUnavailable, ExchangeError
from obtrader.models import Side

from .exchange import (
    CloseResult,
    LivePosition,
    OrderResult,
    OrderState,
    OrderStatus,
    OrderType,
    StopUpdateResult,
)

logger = logging.getLogger(__name__)

LIQUIDATION_BUFFER = 0.001


def liquidation_price(entry: float, side: Side, leverage: int, mmr: float) -> float:
    distance = 1 / leverage - mmr - LIQUIDATION_BUFFER
    if side is Side.LONG:
        return entry * (1 - distance)
    return entry * (1 + distance)


@dataclass
class _SimPosition:
    side: Side
    size: float
    entry_price: float
    liquidation_price: float
    stop_loss: float
    stop_order_id: str


@dataclass
class _SimOrder:
    order_id: str
    symbol: str
    side: Side
    size: float
    price: float
    stop_loss: float
    order_type: OrderType
    state: OrderState
    avg_price: Optional[float] = None
    fee: float = 0.0
    stop_loss_order_id: Optional[str] = None


def _write_state(state: dict, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=path.parent) as handle:
        json.dump(state, handle, sort_keys=True)
        handle.flush()
        temp_path = Path(handle.name)
    temp_path.replace(path)


class SimulatedExchange:
    """In-memory exchange with optional JSON persistence between runs.

    Market orders fill immediately at the mark price with the taker fee.
    Limit orders rest until the mark trades through the limit price and then
    fill at the limit with the maker fee. Protective stops trigger when the
    live position is queried after the mark crosses them.
    """

    def __init__(
        self,
        markets: dict[str, MarketRules],
        balance: float = 10000.0,
        leverage: int = 2,
        state_path: str | Path | None = None,
        price_feed: Callable[[str], float] | None = None,
    ) -> None:
        self.markets = markets
        self.leverage = leverage
        self.state_path = Path(state_path) if state_path else None
        self.price_feed = price_feed
        self.balance = balance
        self.prices: dict[str, float] = {}
        self.positions: dict[str, _SimPosition] = {}
        self.orders: dict[str, _SimOrder] = {}
        self._next_id = 1
        self._load()

    def _load(self) -> None:
        if self.state_path is None or not self.state_path.exists():
            return
        data = json.loads(self.state_path.read_text(encoding="utf-8"))
        self.balance = data["balance"]
        self._next_id = data["next_id"]
        self.positions = {
            symbol: _SimPosition(**{**raw, "side": Side(raw["side"])})
            for symbol, raw in data["positions"].items()
        }
        self.orders = {
            order_id: _SimOrder(
                **{
                    **raw,
                    "side": Side(raw["side"]),
                    "order_type": OrderType(raw["order_type"]),
                    "state": OrderState(raw["state"]),
                }
            )
            for order_id, raw in data["orders"].items()
        }

    def _save(self) -> None:
        if self.state_path is None:
            return
        _write_state(
            {
                "balance": self.balance,
                "next_id": self._next_id,
                "positions": {s: asdict(p) for s, p in self.positions.items()},
                "orders": {o: asdict(order) for o, order in self.orders.items()},
            },
            self.state_path,
        )

    def _new_id(self) -> str:
        order_id = f"sim-{self._next_id}"
        self._next_id += 1
        return order_id

    def _rules(self, symbol: str) -> MarketRules:
        try:
            return self.markets[symbol]
        except KeyError as exc:
            raise ExchangeError(f"Unknown market {symbol}") from exc

    def set_price(self, symbol: str, price: float) -> None:
        self.prices[symbol] = price

    def get_price(self, symbol: str) -> float:
        if symbol in self.prices:
            return self.prices[symbol]
        if self.price_feed is not None:
            return self.price_feed(symbol)
        raise DataUnavailable(f"No price for {symbol}")

    def get_balance(self) -> float:
        return self.balance

    def _fill(self, order: _SimOrder, price: float, fee_rate: float) -> None:
        rules = self._rules(order.symbol)
        fee = order.size * price * fee_rate
        self.balance -= fee
        current = self.positions.get(order.symbol)
        if current is None:
            stop_id = self._new_id()
            current = _SimPosition(
                side=order.side,
                size=order.size,
                entry_price=price,
                liquidation_price=0.0,
                stop_loss=order.stop_loss,
                stop_order_id=stop_id,
            )
            self.positions[order.symbol] = current
        else:
            if current.side is not order.side:
                raise ExchangeError("Simulated exchange does not net opposite positions")
            total = current.size + order.size
            current.entry_price = (
                current.entry_price * current.size + price * order.size
            ) / total
            current.size = total
            current.stop_loss = (
                max(current.stop_loss, order.stop_loss)
                if order.side is Side.LONG
                else min(current.stop_loss, order.stop_loss)
            )
        current.liquidation_price = liquidation_price(
            current.entry_price, current.side, self.leverage, rules.maintenance_margin_rate
        )
        order.state = OrderState.FILLED
        order.avg_price = price
        order.fee = fee
        order.stop_loss_order_id = current.stop_order_id

    def _result(self, order: _SimOrder) -> OrderResult:
        position = self.positions.get(order.symbol)
        return OrderResult(
            success=True,
            order_id=order.order_id,
            state=order.state,
            execution_price=order.avg_price,
            executed_size=order.size if order.state is OrderState.FILLED else 0.0,
            fee=order.fee,
            stop_loss_order_id=order.stop_loss_order_id,
            liquidation_price=position.liquidation_price if position else None,
        )

    def place_order(
        self,
        symbol: str,
        side: Side,
        size: float,
        price: float,
        stop_loss: float,
        order_type: OrderType,
    ) -> OrderResult:
        rules = self._rules(symbol)
        if size < rules.min_size:
            return OrderResult(success=False, state=OrderState.REJECTED, error="size below minimum")
        order = _SimOrder(
            order_id=self._new_id(),
            symbol=symbol,
            side=side,
            size=size,
            price=price,
            stop_loss=stop_loss,
            order_type=order_type,
            state=OrderState.RESTING,
        )
        self.orders[order.order_id] = order
        if order_type is OrderType.MARKET:
            self._fill(order, self.get_price(symbol), TAKER_FEE)
        else:
            self._try_fill_limit(order)
        self._save()
        logger.info("Simulated %s %s %s %.6f -> %s", order_type.value, side.value, symbol, size, order.state.value)
        return self._result(order)

    def _try_fill_limit(self, order: _SimOrder) -> None:
        mark = self.get_price(order.symbol)
        crossed = mark <= order.price if order.side is Side.LONG else mark >= order.price
        if crossed:
            self._fill(order, order.price, MAKER_FEE)

    def get_order_status(self, symbol: str, order_id: str) -> OrderStatus:
        order = self.orders.get(order_id)
        if order is None:
            return OrderStatus(state=OrderState.UNKNOWN)
        if order.state is OrderState.RESTING:
            self._try_fill_limit(order)
            self._save()
        position = self.positions.get(symbol)
        return OrderStatus(
            state=order.state,
            avg_price=order.avg_price,
            filled_size=order.size if order.state is OrderState.FILLED else 0.0,
            fee=order.fee,
            stop_loss_order_id=order.stop_loss_order_id,
            liquidation_price=position.liquidation_price if position else None,
        )

    def cancel_order(self, symbol: str, order_id: str) -> bool:
        order = self.orders.get(order_id)
        if order is None or order.state is not OrderState.RESTING:
            return False
        order.state = OrderState.CANCELLED
        self._save()
        return True

    def _settle(self, symbol: str, price: float, fee_rate: float) -> CloseResult:
        position = self.positions.pop(symbol)
        pnl = (price - position.entry_price) * position.size * position.side.sign
        fee = position.size * price * fee_rate
        self.balance += pnl - fee
        self._save()
        return CloseResult(success=True, execution_price=price, fee=fee)

    def close_position(self, symbol: str, size: float, price: float) -> CloseResult:
        if symbol not in self.positions:
            return CloseResult(success=False, error="no open position")
        return self._settle(symbol, self.get_price(symbol), TAKER_FEE)

    def get_live_position(self, symbol: str) -> Optional[LivePosition]:
        position = self.positions.get(symbol)
        if position is None:
            return None
        mark = self.get_price(symbol)
        stopped = (
            mark <= position.stop_loss
            if position.side is Side.LONG
            else mark >= position.stop_loss
        )
        if stopped:
            logger.info("Simulated stop triggered for %s at %.2f", symbol, position.stop_loss)
            self._settle(symbol, position.stop_loss, TAKER_FEE)
            return None
        return LivePosition(
            symbol=symbol,
            side=position.side,
            size=position.size,
            entry_price=position.entry_price,
            liquidation_price=position.liquidation_price,
        )

    def update_stop_loss(
        self, symbol: str, order_id: Optional[str], new_price: float
    ) -> StopUpdateResult:
        position = self.positions.get(symbol)
        if position is None:
            return StopUpdateResult(success=False, error="no open position")
        position.stop_loss = new_price
        position.stop_order_id = self._new_id()
        self._save()
        return StopUpdateResult(success=True, new_order_id=position.stop_order_id)
