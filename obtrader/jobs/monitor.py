"""Position monitor job: apply lifecycle decisions to open positions."""
from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from obtrader.execution import POSITION_STATES, retry_with_backoff
from obtrader.lifecycle import LifecycleAction, LifecycleDecision, PositionLifecycleManager
from obtrader.models import PositionStatus, TradeEventType
from obtrader.services import Services
from obtrader.storage import AtrRecord, OrderBlockRecord, PositionRecord, TradeLogEntry

from .base import JobOutcome, safe_notify

logger = logging.getLogger(__name__)


def _retry(services: Services, fn, name: str):
    return retry_with_backoff(
        fn,
        attempts=services.config.retry.max_attempts,
        initial_delay=services.config.retry.initial_delay,
        name=name,
        sleep=services.sleep,
    )


def latest_atr_value(services: Services) -> float:
    config = services.config
    rows = services.store.query(
        AtrRecord,
        where={"symbol": config.symbol, "timeframe": config.entry_timeframe},
        order_by="timestamp",
        descending=True,
        limit=1,
    )
    if rows:
        return rows[0].value
    return config.market.default_atr


def _active_obs(services: Services, timeframe: str, limit: int | None = None) -> list[OrderBlockRecord]:
    return services.store.query(
        OrderBlockRecord,
        where={"symbol": services.config.symbol, "timeframe": timeframe, "is_active": True},
        order_by="confirmation_time",
        descending=True,
        limit=limit,
    )


def close_position_record(
    services: Services,
    position: PositionRecord,
    exit_price: float,
    reason: str,
    now: datetime,
    fee: float = 0.0,
) -> PositionRecord:
    """Mark a position CLOSED and log the close. Closing twice is a no-op."""
    if position.status is PositionStatus.CLOSED:
        return position
    pnl = position.pnl_at(exit_price)
    position.status = POSITION_STATES.transition(position.status, PositionStatus.CLOSED)
    position.exit_price = exit_price
    position.exit_time = now
    position.exit_reason = reason
    position.pnl = pnl
    position.exit_fee = fee
    position.unrealized_pnl = None
    services.store.update(position)
    margin = position.margin or position.position_value / position.leverage
    services.store.create(
        TradeLogEntry(
            timestamp=now,
            event_type=TradeEventType.CLOSE,
            symbol=position.symbol,
            side=position.side,
            price=exit_price,
            size=position.size,
            fee=fee,
            position_id=position.id,
            avg_entry_price=position.avg_entry_price,
            total_size=position.size,
            pnl=pnl,
            pnl_percent=pnl / margin * 100 if margin else None,
            exit_reason=reason,
            ob_id=position.related_ob,
            ob_confidence=position.ob_confidence,
            order_strategy=position.order_strategy,
        )
    )
    safe_notify(
        services,
        "close",
        {
            "side": position.side.value,
            "symbol": position.symbol,
            "exit_reason": reason,
            "entry_price": position.avg_entry_price,
            "exit_price": exit_price,
            "size": position.size,
            "pnl": round(pnl, 2),
        },
    )
    logger.info("Closed %s %s at %.2f (%s) pnl %.2f", position.side.value, position.symbol, exit_price, reason, pnl)
    return position


def apply_decision(
    services: Services,
    position: PositionRecord,
    decision: LifecycleDecision,
    current_price: float,
) -> dict[str, Any]:
    now = services.clock()
    symbol = position.symbol
    for warning in decision.warnings:
        logger.warning("%s %s: %s", symbol, position.id, warning)

    if decision.action is LifecycleAction.EXTERNAL_CLOSE:
        close_position_record(services, position, decision.exit_price, decision.reason, now)
        return {"action": "closed_externally", "reason": decision.reason, "pnl": decision.pnl}

    if decision.action is LifecycleAction.CLOSE:
        result = _retry(
            services,
            lambda: services.exchange.close_position(symbol, position.size, current_price),
            "close position",
        )
        if not result.success:
            logger.error("Close of %s failed: %s", position.id, result.error)
            return {"action": "close_failed", "reason": decision.reason, "error": result.error}
        exit_price = result.execution_price or current_price
        closed = close_position_record(services, position, exit_price, decision.reason, now, result.fee)
        return {"action": "closed", "reason": decision.reason, "pnl": closed.pnl, "exit_price": exit_price}

    if decision.action is LifecycleAction.UPDATE_STOP:
        update = _retry(
            services,
            lambda: services.exchange.update_stop_loss(symbol, position.stop_loss_order_id, decision.new_stop),
            "update stop",
        )
        if not update.success:
            logger.warning("Trailing stop update for %s failed: %s", position.id, update.error)
            return {"action": "stop_update_failed", "error": update.error}
        old_stop = position.stop_loss
        position.stop_loss = decision.new_stop
        position.stop_loss_order_id = update.new_order_id
        position.last_stop_update = now
        position.last_checked = now
        position.last_price = current_price
        position.unrealized_pnl = decision.unrealized_pnl
        services.store.update(position)
        return {"action": "stop_updated", "old_stop": old_stop, "new_stop": decision.new_stop}

    if decision.action is LifecycleAction.CONTINUE:
        position.last_checked = now
        position.last_price = current_price
        position.unrealized_pnl = decision.unrealized_pnl
        services.store.update(position)
        return {"action": "monitoring", "unrealized_pnl": decision.unrealized_pnl, "warnings": list(decision.warnings)}

    return {"action": "noop"}


def run_monitor(services: Services) -> JobOutcome:
    config = services.config
    symbol = config.symbol
    positions = services.store.query(PositionRecord, where={"symbol": symbol, "status": PositionStatus.OPEN})
    if not positions:
        return JobOutcome(job="monitor", success=True, action="no_positions")

    current_price = _retry(services, lambda: services.exchange.get_price(symbol), "get price")
    manager = PositionLifecycleManager(config.monitor, config.entry_timeframe)
    htf_obs = {tf: _active_obs(services, tf) for tf in config.monitor.htf_timeframes}
    entry_obs = _active_obs(services, config.entry_timeframe, config.monitor.reversal_candidates)
    atr = latest_atr_value(services)

    results: dict[str, Any] = {}
    for position in positions:
        live = _retry(services, lambda: services.exchange.get_live_position(symbol), "live position")
        decision = manager.evaluate(
            position,
            current_price=current_price,
            live_size=live.size if live else None,
            htf_obs=htf_obs,
            entry_obs=entry_obs,
            atr=atr,
            now=services.clock(),
        )
        results[position.id] = apply_decision(services, position, decision, current_price)

    return JobOutcome(
        job="monitor",
        success=True,
        action="monitored",
        details={"price": current_price, "atr": atr, "positions": results},
    )
