"""Entry selection and order routing for order block setups."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
import logging

from .config import EntryConfig
from .models import Confidence, ObType, Side
from .sizing import round_price
from .storage import OrderBlockRecord, PositionRecord
from .utils.time import ensure_utc

logger = logging.getLogger(__name__)

SIGNIFICANT_IMPROVEMENT = 0.02
NEAR_REFERENCE_PCT = 0.05
LIMIT_EDGE_BUFFER = 0.001


class EntryAction(str, Enum):
    OPEN = "OPEN"
    ADD = "ADD"


class OrderRoute(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    SKIP = "skip"


@dataclass(frozen=True)
class EntrySelection:
    ob: OrderBlockRecord
    action: EntryAction
    side: Side
    stop_loss: float


@dataclass(frozen=True)
class EntryScan:
    selection: EntrySelection | None = None
    expired: list[OrderBlockRecord] = field(default_factory=list)
    skipped: list[tuple[OrderBlockRecord, str]] = field(default_factory=list)


@dataclass(frozen=True)
class RoutePlan:
    route: OrderRoute
    deviation_pct: float
    breakout_price: float
    order_price: float | None = None


def stop_loss_for(ob: OrderBlockRecord) -> float:
    return ob.bottom if ob.type is ObType.BULLISH else ob.top


def breakout_price(ob: OrderBlockRecord) -> float:
    """Reference level for routing: breakout, then confirmation close, then the OB edge."""
    if ob.breakout_price:
        return ob.breakout_price
    if ob.confirmation_close:
        return ob.confirmation_close
    return ob.top if ob.type is ObType.BULLISH else ob.bottom


def average_entry(old_price: float, old_size: float, fill_price: float, fill_size: float) -> float:
    total = old_size + fill_size
    if total <= 0:
        return fill_price
    return (old_price * old_size + fill_price * fill_size) / total


def unrealized_pnl(position: PositionRecord, price: float) -> float:
    return position.pnl_at(price)


class EntryDecisionEngine:
    def __init__(self, config: EntryConfig) -> None:
        self.config = config

    def is_expired(self, ob: OrderBlockRecord, now: datetime) -> bool:
        age = ensure_utc(now) - ensure_utc(ob.confirmation_time)
        return age > timedelta(minutes=self.config.max_ob_age_minutes)

    def addition_reason(
        self,
        ob: OrderBlockRecord,
        position: PositionRecord,
        current_price: float,
        balance: float,
    ) -> str | None:
        """Return None when the order block qualifies as a pyramid addition, else the reason."""
        side = Side.for_ob(ob.type)
        if side is not position.side:
            return "opposite_direction"
        if position.addition_count >= self.config.max_additions:
            return "max_additions_reached"
        pnl = unrealized_pnl(position, current_price)
        pnl_pct = pnl / balance * 100 if balance > 0 else 0.0
        if pnl_pct < self.config.min_profit_for_addition:
            return "insufficient_profit"

        if side is Side.LONG:
            reference = position.last_ob_bottom
            better = ob.bottom > reference * (1 + SIGNIFICANT_IMPROVEMENT)
            distance = abs(ob.bottom - reference) / reference if reference else 1.0
        else:
            reference = position.last_ob_top
            better = ob.top < reference * (1 - SIGNIFICANT_IMPROVEMENT)
            distance = abs(ob.top - reference) / reference if reference else 1.0
        near_and_strong = distance < NEAR_REFERENCE_PCT and ob.confidence is Confidence.HIGH
        if not (better or near_and_strong):
            return "not_better_than_current"
        return None

    def select(
        self,
        candidates: list[OrderBlockRecord],
        position: PositionRecord | None,
        current_price: float,
        balance: float,
        now: datetime,
    ) -> EntryScan:
        """Pick the first eligible order block, newest first.

        Expired candidates are returned so the caller can retire them; other
        rejections leave the order block untouched.
        """
        expired: list[OrderBlockRecord] = []
        skipped: list[tuple[OrderBlockRecord, str]] = []
        ordered = sorted(candidates, key=lambda ob: ensure_utc(ob.confirmation_time), reverse=True)
        for ob in ordered:
            if self.is_expired(ob, now):
                expired.append(ob)
                continue
            if self.config.require_high_confidence and ob.confidence is not Confidence.HIGH:
                skipped.append((ob, "low_confidence"))
                continue
            side = Side.for_ob(ob.type)
            if position is None:
                selection = EntrySelection(ob=ob, action=EntryAction.OPEN, side=side, stop_loss=stop_loss_for(ob))
                return EntryScan(selection=selection, expired=expired, skipped=skipped)
            reason = self.addition_reason(ob, position, current_price, balance)
            if reason is None:
                selection = EntrySelection(ob=ob, action=EntryAction.ADD, side=side, stop_loss=stop_loss_for(ob))
                return EntryScan(selection=selection, expired=expired, skipped=skipped)
            skipped.append((ob, reason))
        return EntryScan(selection=None, expired=expired, skipped=skipped)

    def limit_price(self, ob: OrderBlockRecord, side: Side, current_price: float, precision: int) -> float:
        adjustment = self.config.limit_price_adjustment / 100
        if side is Side.LONG:
            price = max(current_price * (1 - adjustment), ob.bottom * (1 + LIMIT_EDGE_BUFFER))
        else:
            price = min(current_price * (1 + adjustment), ob.top * (1 - LIMIT_EDGE_BUFFER))
        return round_price(price, precision)

    def plan_route(
        self, ob: OrderBlockRecord, side: Side, current_price: float, precision: int
    ) -> RoutePlan:
        reference = breakout_price(ob)
        deviation = abs(current_price - reference) / reference * 100 if reference else float("inf")
        if deviation <= self.config.max_deviation_for_market:
            return RoutePlan(OrderRoute.MARKET, deviation, reference, current_price)
        if deviation <= self.config.max_deviation_for_limit:
            price = self.limit_price(ob, side, current_price, precision)
            return RoutePlan(OrderRoute.LIMIT, deviation, reference, price)
        return RoutePlan(OrderRoute.SKIP, deviation, reference)
