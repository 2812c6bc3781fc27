"""Entry job: pick an order block, size it, route the order and record the fill."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import math
from typing import Any

from obtrader.config import ExchangeMode
from obtrader.entries import (
    EntryAction,
    EntryDecisionEngine,
    EntrySelection,
    OrderRoute,
    RoutePlan,
    average_entry,
)
from obtrader.errors import InsufficientMargin, PostFillPersistenceError, TransientError
from obtrader.execution import POSITION_STATES, OrderResult, OrderState, OrderType, retry_with_backoff
from obtrader.models import PositionStatus, ProcessedReason, Side, TradeEventType
from obtrader.protection import AccountProtectionGate
from obtrader.services import Services
from obtrader.sizing import PositionSizer, SizeResult
from obtrader.storage import Addition, LockHeld, OrderBlockRecord, PositionRecord, TradeLogEntry

from .base import JobOutcome, safe_notify

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Fill:
    price: float
    size: float
    fee: float
    order_id: str | None
    stop_loss_order_id: str | None
    liquidation_price: float | None


def _outcome(success: bool, action: str, reason: str = "", **details: Any) -> JobOutcome:
    return JobOutcome(job="entry", success=success, action=action, reason=reason, details=details)


def _retry(services: Services, fn, name: str):
    return retry_with_backoff(
        fn,
        attempts=services.config.retry.max_attempts,
        initial_delay=services.config.retry.initial_delay,
        name=name,
        sleep=services.sleep,
    )


def _mark_ob(services: Services, ob: OrderBlockRecord, reason: ProcessedReason, price: float | None) -> None:
    if ob.mark_processed(reason, price, services.clock()):
        services.store.update(ob)


def _open_position(services: Services) -> PositionRecord | None:
    rows = services.store.query(
        PositionRecord,
        where={"symbol": services.config.symbol, "status": PositionStatus.OPEN},
        order_by="open_time",
        descending=True,
        limit=1,
    )
    return rows[0] if rows else None


def _candidates(services: Services) -> list[OrderBlockRecord]:
    config = services.config
    return services.store.query(
        OrderBlockRecord,
        where={
            "symbol": config.symbol,
            "timeframe": config.entry_timeframe,
            "is_active": True,
            "is_processed": False,
        },
        order_by="confirmation_time",
        descending=True,
        limit=config.entry.candidates_limit,
    )


def wait_for_fill(services: Services, order_id: str) -> OrderResult | None:
    """Poll a resting limit order until it fills or the wait time runs out."""
    entry = services.config.entry
    symbol = services.config.symbol
    polls = max(1, math.ceil(entry.limit_order_wait_time / entry.limit_poll_interval))
    for _ in range(polls):
        status = _retry(
            services, lambda: services.exchange.get_order_status(symbol, order_id), "order status"
        )
        if status.state is OrderState.FILLED:
            return OrderResult(
                success=True,
                order_id=order_id,
                state=OrderState.FILLED,
                execution_price=status.avg_price,
                executed_size=status.filled_size,
                fee=status.fee,
                stop_loss_order_id=status.stop_loss_order_id,
                liquidation_price=status.liquidation_price,
            )
        if status.state in (OrderState.CANCELLED, OrderState.REJECTED):
            logger.info("Limit order %s ended as %s", order_id, status.state.value)
            return None
        services.sleep(entry.limit_poll_interval)
    return None


def _to_fill(result: OrderResult, fallback_price: float, fallback_size: float) -> Fill:
    return Fill(
        price=result.execution_price or fallback_price,
        size=result.executed_size or fallback_size,
        fee=result.fee,
        order_id=result.order_id,
        stop_loss_order_id=result.stop_loss_order_id,
        liquidation_price=result.liquidation_price,
    )


def _pending_position(
    services: Services,
    selection: EntrySelection,
    sizing: SizeResult,
    plan: RoutePlan,
    current_price: float,
) -> PositionRecord:
    ob = selection.ob
    leverage = services.config.entry.leverage
    return PositionRecord(
        symbol=services.config.symbol,
        side=selection.side,
        status=PositionStatus.PENDING,
        entry_price=plan.order_price or current_price,
        avg_entry_price=plan.order_price or current_price,
        size=sizing.size,
        stop_loss=selection.stop_loss,
        leverage=leverage,
        margin=sizing.required_margin,
        planned_risk=sizing.risk_amount,
        related_ob=ob.id,
        ob_confidence=ob.confidence,
        last_ob_bottom=ob.bottom,
        last_ob_top=ob.top,
        breakout_price=plan.breakout_price,
        order_strategy=plan.route.value,
        limit_price=plan.order_price if plan.route is OrderRoute.LIMIT else None,
        open_time=services.clock(),
    )


def _set_status(services: Services, position: PositionRecord, target: PositionStatus, **fields: Any) -> None:
    position.status = POSITION_STATES.transition(position.status, target)
    for key, value in fields.items():
        setattr(position, key, value)
    services.store.update(position)


def _record_open(services: Services, position: PositionRecord, fill: Fill, now: datetime) -> None:
    position.status = POSITION_STATES.transition(position.status, PositionStatus.OPEN)
    position.entry_price = fill.price
    position.avg_entry_price = fill.price
    position.size = fill.size
    position.entry_fee = fill.fee
    position.order_id = fill.order_id
    position.stop_loss_order_id = fill.stop_loss_order_id
    position.liquidation_price = fill.liquidation_price or 0.0
    position.margin = fill.size * fill.price / position.leverage
    position.executed_at = now
    services.store.update(position)


def _record_addition(
    services: Services,
    position: PositionRecord,
    selection: EntrySelection,
    ob: OrderBlockRecord,
    fill: Fill,
    route: OrderRoute,
    now: datetime,
) -> None:
    position.avg_entry_price = average_entry(position.avg_entry_price, position.size, fill.price, fill.size)
    position.size = position.size + fill.size
    position.entry_fee += fill.fee
    if selection.side is Side.LONG:
        position.stop_loss = max(position.stop_loss, selection.stop_loss)
    else:
        position.stop_loss = min(position.stop_loss, selection.stop_loss)
    position.addition_count += 1
    position.last_ob_bottom = ob.bottom
    position.last_ob_top = ob.top
    position.margin = position.size * position.avg_entry_price / position.leverage
    if fill.liquidation_price:
        position.liquidation_price = fill.liquidation_price
    position.additions.append(
        Addition(
            price=fill.price,
            size=fill.size,
            fee=fill.fee,
            executed_at=now,
            order_strategy=route.value,
            related_ob=ob.id,
            stop_loss_order_id=fill.stop_loss_order_id,
        )
    )
    services.store.update(position)


def _persist_fill(
    services: Services,
    selection: EntrySelection,
    position: PositionRecord,
    fill: Fill,
    route: OrderRoute,
) -> None:
    now = services.clock()
    # work on copies so a retried attempt starts from the stored state
    position = position.model_copy(deep=True)
    ob = selection.ob.model_copy(deep=True)
    if selection.action is EntryAction.OPEN:
        _record_open(services, position, fill, now)
        reason = ProcessedReason.POSITION_OPENED
        event = TradeEventType.OPEN
    else:
        _record_addition(services, position, selection, ob, fill, route, now)
        reason = ProcessedReason.POSITION_ADDED
        event = TradeEventType.ADD
    _mark_ob(services, ob, reason, fill.price)
    services.store.create(
        TradeLogEntry(
            timestamp=now,
            event_type=event,
            symbol=position.symbol,
            side=position.side,
            price=fill.price,
            size=fill.size,
            fee=fill.fee,
            position_id=position.id,
            avg_entry_price=position.avg_entry_price,
            total_size=position.size,
            ob_id=ob.id,
            ob_type=ob.type,
            ob_confidence=ob.confidence,
            order_strategy=route.value,
            metadata={"stop_loss": position.stop_loss, "addition_count": position.addition_count},
        )
    )


def _persist_or_alert(
    services: Services,
    selection: EntrySelection,
    position: PositionRecord,
    fill: Fill,
    route: OrderRoute,
) -> None:
    try:
        retry_with_backoff(
            lambda: _persist_fill(services, selection, position, fill, route),
            attempts=services.config.retry.max_attempts,
            initial_delay=services.config.retry.initial_delay,
            name="persist fill",
            retry_on=(OSError, TransientError),
            sleep=services.sleep,
        )
    except (OSError, TransientError) as exc:
        details = {
            "symbol": position.symbol,
            "side": position.side.value,
            "action": selection.action.value,
            "order_id": fill.order_id,
            "price": fill.price,
            "size": fill.size,
            "stop_loss": selection.stop_loss,
            "ob_id": selection.ob.id,
            "error": str(exc),
        }
        safe_notify(services, "post_fill_failure", details)
        raise PostFillPersistenceError("Order filled but state could not be saved", details=details) from exc


def _protection_block(services: Services, gate: AccountProtectionGate, balance: float) -> JobOutcome | None:
    now = services.clock()
    verdict = gate.check(balance, now)
    if verdict.allowed:
        return None
    details: dict[str, Any] = {"message": verdict.message, **verdict.details}
    if verdict.severe:
        until = gate.trigger_cooldown(verdict.reason, now)
        details["cooldown_until"] = until.isoformat()
        safe_notify(
            services,
            "cooldown",
            {"reason": verdict.reason, "message": verdict.message, "until": until.isoformat()},
        )
    return _outcome(False, "blocked_by_protection", verdict.reason, **details)


def run_entry(services: Services) -> JobOutcome:
    try:
        with services.store.exclusive_lock(f"entry_{services.config.symbol}"):
            return _run_entry(services)
    except LockHeld:
        return _outcome(False, "entry_locked", "another entry run holds the lock")


def _run_entry(services: Services) -> JobOutcome:
    config = services.config
    symbol = config.symbol
    rules = config.market

    if config.exchange_mode is ExchangeMode.LIVE and not config.trading_enabled:
        return _outcome(True, "trading_disabled")

    position = _open_position(services)
    candidates = _candidates(services)
    if not candidates:
        return _outcome(True, "no_signal")

    current_price = _retry(services, lambda: services.exchange.get_price(symbol), "get price")
    balance = _retry(services, services.exchange.get_balance, "get balance")
    if balance < config.entry.min_balance:
        return _outcome(False, "insufficient_balance", balance=balance)

    blocked = _protection_block(services, AccountProtectionGate(config.protection, services.store), balance)
    if blocked is not None:
        return blocked

    engine = EntryDecisionEngine(config.entry)
    scan = engine.select(candidates, position, current_price, balance, services.clock())
    for ob in scan.expired:
        _mark_ob(services, ob, ProcessedReason.EXPIRED_MAX_AGE, current_price)
    if scan.selection is None:
        return _outcome(
            True,
            "no_valid_ob",
            expired=len(scan.expired),
            skipped={ob.id: reason for ob, reason in scan.skipped},
        )

    selection = scan.selection
    ob = selection.ob
    addition_number = position.addition_count + 1 if selection.action is EntryAction.ADD else 0
    sizer = PositionSizer(rules, config.entry.margin_buffer)
    try:
        sizing = sizer.size(
            balance,
            config.entry.risk_percent,
            config.entry.leverage,
            current_price,
            selection.stop_loss,
            addition_number=addition_number,
            scale_down_factor=config.entry.scale_down_factor,
        )
    except InsufficientMargin as exc:
        return _outcome(False, "insufficient_margin", exc.message, **exc.details)
    if sizing.too_small:
        _mark_ob(services, ob, ProcessedReason.SIZE_TOO_SMALL, current_price)
        return _outcome(True, "size_too_small", size=sizing.size, min_size=rules.min_size)

    plan = engine.plan_route(ob, selection.side, current_price, rules.price_precision)
    if plan.route is OrderRoute.SKIP:
        return _outcome(
            True,
            "skipped_large_deviation",
            deviation_pct=plan.deviation_pct,
            breakout_price=plan.breakout_price,
        )

    if selection.action is EntryAction.OPEN:
        target = services.store.create(_pending_position(services, selection, sizing, plan, current_price))
    else:
        target = position

    order_type = OrderType.MARKET if plan.route is OrderRoute.MARKET else OrderType.LIMIT
    order_price = plan.order_price or current_price
    result = _retry(
        services,
        lambda: services.exchange.place_order(
            symbol, selection.side, sizing.size, order_price, selection.stop_loss, order_type
        ),
        "place order",
    )
    if not result.success:
        if selection.action is EntryAction.OPEN:
            _set_status(services, target, PositionStatus.FAILED, failure_reason=result.error)
        _mark_ob(services, ob, ProcessedReason.ORDER_FAILED, current_price)
        return _outcome(False, "order_failed", result.error or "", ob_id=ob.id)

    if result.state is not OrderState.FILLED:
        filled = wait_for_fill(services, result.order_id) if result.order_id else None
        if filled is None:
            if result.order_id:
                services.exchange.cancel_order(symbol, result.order_id)
            if selection.action is EntryAction.OPEN:
                _set_status(services, target, PositionStatus.CANCELLED, cancel_reason="limit_timeout")
            return _outcome(True, "limit_order_not_filled", order_id=result.order_id, limit_price=order_price)
        result = filled

    fill = _to_fill(result, order_price, sizing.size)
    try:
        _persist_or_alert(services, selection, target, fill, plan.route)
    except PostFillPersistenceError as exc:
        return JobOutcome(
            job="entry",
            success=False,
            action="database_update_failed",
            reason="order_executed",
            details=exc.details,
            error=exc.message,
        )

    verb = "opened" if selection.action is EntryAction.OPEN else "added"
    safe_notify(
        services,
        "entry",
        {
            "action": verb,
            "side": selection.side.value,
            "symbol": symbol,
            "price": fill.price,
            "size": fill.size,
            "stop_loss": selection.stop_loss,
            "order_strategy": plan.route.value,
            "ob_confidence": ob.confidence.value,
        },
    )
    return _outcome(
        True,
        f"position_{verb}",
        position_id=target.id,
        price=fill.price,
        size=fill.size,
        stop_loss=selection.stop_loss,
        route=plan.route.value,
        deviation_pct=plan.deviation_pct,
    )
