"""Exit and stop management for open positions."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .config import MonitorConfig
from .models import Confidence, ExitReason, ObType, PositionStatus, Side, htf_target_reason
from .storage import OrderBlockRecord, PositionRecord
from .utils.time import age_hours

LIVE_SIZE_EPSILON = 1e-12


class LifecycleAction(str, Enum):
    NOOP = "NOOP"
    EXTERNAL_CLOSE = "EXTERNAL_CLOSE"
    CLOSE = "CLOSE"
    UPDATE_STOP = "UPDATE_STOP"
    CONTINUE = "CONTINUE"


@dataclass(frozen=True)
class LifecycleDecision:
    action: LifecycleAction
    reason: str | None = None
    exit_price: float | None = None
    pnl: float | None = None
    new_stop: float | None = None
    unrealized_pnl: float | None = None
    warnings: tuple[str, ...] = ()
    details: dict[str, object] = field(default_factory=dict)


def liquidation_distance_pct(position: PositionRecord, price: float) -> float | None:
    if not position.liquidation_price or price <= 0:
        return None
    return abs(price - position.liquidation_price) / price * 100


class PositionLifecycleManager:
    """Decides, once per monitor cycle, what to do with an open position.

    Checks run in priority order and the first match wins: external stop-out,
    higher-timeframe target, reversal order block, trailing stop, emergency
    close near liquidation. Otherwise the position continues.
    """

    def __init__(self, config: MonitorConfig, entry_timeframe: str) -> None:
        self.config = config
        self.entry_timeframe = entry_timeframe

    def htf_target(
        self, position: PositionRecord, price: float, htf_obs: dict[str, list[OrderBlockRecord]]
    ) -> tuple[str, OrderBlockRecord] | None:
        for timeframe in self.config.htf_timeframes:
            for ob in htf_obs.get(timeframe, []):
                if not ob.is_active:
                    continue
                if position.side is Side.LONG and ob.type is ObType.BEARISH and price >= ob.bottom:
                    return timeframe, ob
                if position.side is Side.SHORT and ob.type is ObType.BULLISH and price <= ob.top:
                    return timeframe, ob
        return None

    def reversal(
        self, position: PositionRecord, price: float, entry_obs: list[OrderBlockRecord], now: datetime
    ) -> OrderBlockRecord | None:
        opposite = ObType.BEARISH if position.side is Side.LONG else ObType.BULLISH
        for ob in entry_obs:
            if ob.type is not opposite or not ob.is_active:
                continue
            if age_hours(ob.confirmation_time, now) > self.config.reversal_window_hours:
                continue
            if ob.confidence is not Confidence.HIGH:
                continue
            if ob.bottom <= price <= ob.top:
                return ob
        return None

    def trailing_stop(self, position: PositionRecord, price: float, atr: float | None) -> float | None:
        if atr is None or atr <= 0 or position.position_value <= 0:
            return None
        pnl_pct = position.pnl_at(price) / position.position_value * 100
        if pnl_pct <= self.config.trailing_stop_trigger:
            return None
        offset = atr * self.config.trailing_stop_multiplier
        if position.side is Side.LONG:
            candidate = price - offset
            return candidate if candidate > position.stop_loss else None
        candidate = price + offset
        return candidate if candidate < position.stop_loss else None

    def evaluate(
        self,
        position: PositionRecord,
        *,
        current_price: float,
        live_size: float | None,
        htf_obs: dict[str, list[OrderBlockRecord]],
        entry_obs: list[OrderBlockRecord],
        atr: float | None,
        now: datetime,
    ) -> LifecycleDecision:
        if position.status is not PositionStatus.OPEN:
            return LifecycleDecision(LifecycleAction.NOOP, reason="not_open")

        if live_size is None or abs(live_size) < LIVE_SIZE_EPSILON:
            exit_price = position.stop_loss
            return LifecycleDecision(
                LifecycleAction.EXTERNAL_CLOSE,
                reason=ExitReason.STOP_LOSS_TRIGGERED.value,
                exit_price=exit_price,
                pnl=position.pnl_at(exit_price),
            )

        unrealized = position.pnl_at(current_price)

        target = self.htf_target(position, current_price, htf_obs)
        if target is not None:
            timeframe, ob = target
            return LifecycleDecision(
                LifecycleAction.CLOSE,
                reason=htf_target_reason(timeframe),
                exit_price=current_price,
                pnl=unrealized,
                details={"ob_id": ob.id, "top": ob.top, "bottom": ob.bottom},
            )

        reversal_ob = self.reversal(position, current_price, entry_obs, now)
        if reversal_ob is not None:
            return LifecycleDecision(
                LifecycleAction.CLOSE,
                reason=ExitReason.REVERSAL_OB.value,
                exit_price=current_price,
                pnl=unrealized,
                details={"ob_id": reversal_ob.id},
            )

        new_stop = self.trailing_stop(position, current_price, atr)
        if new_stop is not None:
            return LifecycleDecision(
                LifecycleAction.UPDATE_STOP,
                reason=ExitReason.TRAILING_STOP.value,
                new_stop=new_stop,
                unrealized_pnl=unrealized,
                details={"old_stop": position.stop_loss, "atr": atr},
            )

        warnings: list[str] = []
        distance = liquidation_distance_pct(position, current_price)
        if distance is not None:
            if distance < self.config.liquidation_emergency_pct:
                return LifecycleDecision(
                    LifecycleAction.CLOSE,
                    reason=ExitReason.EMERGENCY_CLOSE.value,
                    exit_price=current_price,
                    pnl=unrealized,
                    details={"liquidation_distance_pct": distance},
                )
            if distance < self.config.liquidation_warning_pct:
                warnings.append(f"Liquidation distance {distance:.2f}%")

        return LifecycleDecision(
            LifecycleAction.CONTINUE,
            unrealized_pnl=unrealized,
            warnings=tuple(warnings),
        )
