"""Live exchange client for Hyperliquid perpetuals.

Read-only calls go to the public info endpoint. Trading actions are posted
to the exchange endpoint with a signature produced by an injected signer;
key handling and the signing scheme live outside this package.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

import requests

from obtrader.config import TAKER_FEE, MarketRules
from obtrader.errors import DataUnavailable, ExchangeError, TransientError
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

BASE_URL = "https://api.hyperliquid.xyz"
MARKET_SLIPPAGE = 0.05
REQUEST_TIMEOUT = 15

Signer = Callable[[dict[str, Any], int], dict[str, Any]]

_STATUS_MAP = {
    "filled": OrderState.FILLED,
    "open": OrderState.RESTING,
    "canceled": OrderState.CANCELLED,
    "cancelled": OrderState.CANCELLED,
    "marginCanceled": OrderState.CANCELLED,
    "rejected": OrderState.REJECTED,
}


class HyperliquidExchange:
    def __init__(
        self,
        markets: dict[str, MarketRules],
        account_address: str,
        signer: Signer | None = None,
        base_url: str = BASE_URL,
        session: requests.Session | None = None,
    ) -> None:
        self.markets = markets
        self.account_address = account_address
        self.signer = signer
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        self._asset_ids: dict[str, int] | None = None

    def _post(self, path: str, payload: dict[str, Any]) -> Any:
        try:
            response = self.session.post(
                f"{self.base_url}{path}", json=payload, timeout=REQUEST_TIMEOUT
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientError(f"Hyperliquid {path} unreachable: {exc}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(
                f"Hyperliquid {path} returned {response.status_code}",
                details={"status": response.status_code},
            )
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise ExchangeError(f"Hyperliquid {path} failed: {response.text}") from exc
        return response.json()

    def _info(self, payload: dict[str, Any]) -> Any:
        return self._post("/info", payload)

    def _action(self, action: dict[str, Any]) -> Any:
        if self.signer is None:
            raise ExchangeError("No signer configured for live trading")
        nonce = int(time.time() * 1000)
        payload = {"action": action, "nonce": nonce, "signature": self.signer(action, nonce)}
        return self._post("/exchange", payload)

    def _coin(self, symbol: str) -> str:
        try:
            return self.markets[symbol].coin
        except KeyError as exc:
            raise ExchangeError(f"Unknown market {symbol}") from exc

    def _asset(self, symbol: str) -> int:
        if self._asset_ids is None:
            meta = self._info({"type": "meta"})
            self._asset_ids = {item["name"]: idx for idx, item in enumerate(meta["universe"])}
        coin = self._coin(symbol)
        if coin not in self._asset_ids:
            raise ExchangeError(f"{coin} not listed")
        return self._asset_ids[coin]

    def _format_price(self, symbol: str, price: float) -> str:
        return f"{round(price, self.markets[symbol].price_precision)}"

    def get_price(self, symbol: str) -> float:
        mids = self._info({"type": "allMids"})
        coin = self._coin(symbol)
        if coin not in mids:
            raise DataUnavailable(f"No mid price for {coin}")
        return float(mids[coin])

    def _clearinghouse(self) -> dict[str, Any]:
        return self._info({"type": "clearinghouseState", "user": self.account_address})

    def get_balance(self) -> float:
        state = self._clearinghouse()
        return float(state["marginSummary"]["accountValue"])

    def _order_wire(
        self,
        symbol: str,
        is_buy: bool,
        size: float,
        price: float,
        reduce_only: bool,
        order_kind: dict[str, Any],
    ) -> dict[str, Any]:
        return {
            "a": self._asset(symbol),
            "b": is_buy,
            "p": self._format_price(symbol, price),
            "s": f"{size}",
            "r": reduce_only,
            "t": order_kind,
        }

    def _stop_wire(self, symbol: str, side: Side, size: float, stop: float) -> dict[str, Any]:
        return self._order_wire(
            symbol,
            side is Side.SHORT,
            size,
            stop,
            True,
            {"trigger": {"isMarket": True, "triggerPx": self._format_price(symbol, stop), "tpsl": "sl"}},
        )

    @staticmethod
    def _statuses(response: Any) -> list[dict[str, Any]]:
        if response.get("status") != "ok":
            raise ExchangeError(f"Order action rejected: {response}")
        return response["response"]["data"]["statuses"]

    def place_order(
        self,
        symbol: str,
        side: Side,
        size: float,
        price: float,
        stop_loss: float,
        order_type: OrderType,
    ) -> OrderResult:
        is_buy = side is Side.LONG
        if order_type is OrderType.MARKET:
            limit = price * (1 + MARKET_SLIPPAGE) if is_buy else price * (1 - MARKET_SLIPPAGE)
            kind = {"limit": {"tif": "Ioc"}}
        else:
            limit = price
            kind = {"limit": {"tif": "Gtc"}}
        action = {
            "type": "order",
            "orders": [
                self._order_wire(symbol, is_buy, size, limit, False, kind),
                self._stop_wire(symbol, side, size, stop_loss),
            ],
            "grouping": "normalTpsl",
        }
        try:
            statuses = self._statuses(self._action(action))
        except ExchangeError as exc:
            return OrderResult(success=False, state=OrderState.REJECTED, error=str(exc))
        entry = statuses[0]
        stop_id = None
        if len(statuses) > 1 and isinstance(statuses[1], dict):
            stop_id = str(statuses[1].get("resting", {}).get("oid", "")) or None
        if "error" in entry:
            return OrderResult(success=False, state=OrderState.REJECTED, error=entry["error"])
        if "filled" in entry:
            filled = entry["filled"]
            executed = float(filled["totalSz"])
            avg = float(filled["avgPx"])
            return OrderResult(
                success=True,
                order_id=str(filled["oid"]),
                state=OrderState.FILLED,
                execution_price=avg,
                executed_size=executed,
                fee=executed * avg * TAKER_FEE,
                stop_loss_order_id=stop_id,
                liquidation_price=self._liquidation_price(symbol),
            )
        resting = entry.get("resting", {})
        return OrderResult(
            success=True,
            order_id=str(resting.get("oid")),
            state=OrderState.RESTING,
            stop_loss_order_id=stop_id,
        )

    def _liquidation_price(self, symbol: str) -> Optional[float]:
        position = self.get_live_position(symbol)
        return position.liquidation_price if position else None

    def get_order_status(self, symbol: str, order_id: str) -> OrderStatus:
        payload = self._info(
            {"type": "orderStatus", "user": self.account_address, "oid": int(order_id)}
        )
        if payload.get("status") != "order":
            return OrderStatus(state=OrderState.UNKNOWN)
        info = payload["order"]
        state = _STATUS_MAP.get(info.get("status", ""), OrderState.UNKNOWN)
        order = info.get("order", {})
        filled_size = float(order.get("origSz", 0.0)) - float(order.get("sz", 0.0))
        avg_price = float(order["limitPx"]) if state is OrderState.FILLED else None
        return OrderStatus(
            state=state,
            avg_price=avg_price,
            filled_size=filled_size,
            fee=filled_size * (avg_price or 0.0) * TAKER_FEE,
            liquidation_price=self._liquidation_price(symbol) if state is OrderState.FILLED else None,
        )

    def cancel_order(self, symbol: str, order_id: str) -> bool:
        action = {"type": "cancel", "cancels": [{"a": self._asset(symbol), "o": int(order_id)}]}
        try:
            statuses = self._statuses(self._action(action))
        except ExchangeError as exc:
            logger.warning("Cancel %s failed: %s", order_id, exc)
            return False
        return statuses[0] == "success"

    def close_position(self, symbol: str, size: float, price: float) -> CloseResult:
        live = self.get_live_position(symbol)
        if live is None:
            return CloseResult(success=False, error="no open position")
        is_buy = live.side is Side.SHORT
        limit = price * (1 + MARKET_SLIPPAGE) if is_buy else price * (1 - MARKET_SLIPPAGE)
        action = {
            "type": "order",
            "orders": [
                self._order_wire(symbol, is_buy, size, limit, True, {"limit": {"tif": "Ioc"}})
            ],
            "grouping": "na",
        }
        try:
            statuses = self._statuses(self._action(action))
        except ExchangeError as exc:
            return CloseResult(success=False, error=str(exc))
        entry = statuses[0]
        if "filled" not in entry:
            return CloseResult(success=False, error=str(entry.get("error", entry)))
        filled = entry["filled"]
        avg = float(filled["avgPx"])
        return CloseResult(
            success=True,
            execution_price=avg,
            fee=float(filled["totalSz"]) * avg * TAKER_FEE,
        )

    def get_live_position(self, symbol: str) -> Optional[LivePosition]:
        coin = self._coin(symbol)
        for item in self._clearinghouse().get("assetPositions", []):
            position = item.get("position", {})
            if position.get("coin") != coin:
                continue
            signed = float(position.get("szi", 0.0))
            if signed == 0:
                return None
            liquidation = position.get("liquidationPx")
            return LivePosition(
                symbol=symbol,
                side=Side.LONG if signed > 0 else Side.SHORT,
                size=abs(signed),
                entry_price=float(position.get("entryPx", 0.0)),
                liquidation_price=float(liquidation) if liquidation else None,
            )
        return None

    def update_stop_loss(
        self, symbol: str, order_id: Optional[str], new_price: float
    ) -> StopUpdateResult:
        live = self.get_live_position(symbol)
        if live is None:
            return StopUpdateResult(success=False, error="no open position")
        if order_id:
            self.cancel_order(symbol, order_id)
        action = {
            "type": "order",
            "orders": [self._stop_wire(symbol, live.side, live.size, new_price)],
            "grouping": "na",
        }
        try:
            statuses = self._statuses(self._action(action))
        except ExchangeError as exc:
            return StopUpdateResult(success=False, error=str(exc))
        entry = statuses[0]
        if "resting" not in entry:
            return StopUpdateResult(success=False, error=str(entry.get("error", entry)))
        return StopUpdateResult(success=True, new_order_id=str(entry["resting"]["oid"]))
