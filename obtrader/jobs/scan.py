"""Order block scanner job: detect, persist, invalidate and retire order blocks."""
from __future__ import annotations

from datetime import datetime
import logging

from obtrader.execution.retry import retry_with_backoff
from obtrader.indicators import latest_atr
from obtrader.models import Candle, ObType, ProcessedReason
from obtrader.order_blocks import DetectorParams, OrderBlock, detect_order_blocks
from obtrader.services import Services
from obtrader.storage import OrderBlockRecord
from obtrader.utils.time import age_hours, ensure_utc, is_weekend_window

from .base import JobOutcome

logger = logging.getLogger(__name__)

WEEKEND_FILTER_TIMEFRAMES = ("4h",)


def detector_params(services: Services) -> DetectorParams:
    cfg = services.config.detector
    return DetectorParams(
        swing_length=cfg.swing_length,
        volume_lookback=cfg.volume_lookback,
        volume_method=cfg.volume_method,
        volume_param=cfg.volume_param,
        max_atr_multiplier=cfg.max_atr_multiplier,
    )


def to_record(ob: OrderBlock, symbol: str, timeframe: str, now: datetime, atr: float | None) -> OrderBlockRecord:
    return OrderBlockRecord(
        symbol=symbol,
        timeframe=timeframe,
        type=ob.ob_type,
        top=ob.top,
        bottom=ob.bottom,
        confirmation_time=ob.confirmation.timestamp,
        ob_candle_time=ob.ob_candle.timestamp,
        created_at=now,
        breakout_price=ob.breakout_price,
        confirmation_close=ob.confirmation.close,
        confidence=ob.confidence,
        volume=ob.volume_aggregate,
        metadata={
            "creation_index": ob.creation_index,
            "swing_index": ob.swing_index,
            "breakout_threshold": ob.breakout_threshold,
            "ob_candle_volume": ob.ob_candle.volume,
            "atr": atr,
        },
    )


def is_broken(ob: OrderBlockRecord, candle: Candle, method: str) -> bool:
    if ob.type is ObType.BULLISH:
        level = candle.close if method == "close" else candle.low
        return level < ob.bottom
    level = candle.close if method == "close" else candle.high
    return level > ob.top


def price_too_far(ob: OrderBlockRecord, price: float, max_distance_pct: float) -> bool:
    """True once price has run away from the zone in the breakout direction."""
    if ob.type is ObType.BULLISH:
        return (price - ob.top) / ob.top * 100 > max_distance_pct
    return (ob.bottom - price) / ob.bottom * 100 > max_distance_pct


def _is_duplicate(services: Services, record: OrderBlockRecord) -> bool:
    existing = services.store.query(
        OrderBlockRecord,
        where={"symbol": record.symbol, "timeframe": record.timeframe, "type": record.type},
        predicate=lambda ob: ensure_utc(ob.confirmation_time) == ensure_utc(record.confirmation_time),
        limit=1,
    )
    return bool(existing)


def scan_timeframe(services: Services, timeframe: str) -> dict[str, object]:
    config = services.config
    cfg = config.detector
    now = services.clock()
    candles = retry_with_backoff(
        lambda: services.candles.fetch_candles(config.symbol, timeframe, cfg.lookback_candles),
        attempts=config.retry.max_attempts,
        initial_delay=config.retry.initial_delay,
        name=f"fetch {timeframe} candles",
        sleep=services.sleep,
    )
    atr = latest_atr(candles, cfg.atr_period)
    result = detect_order_blocks(candles, detector_params(services), atr)
    latest_index = candles[-1].index
    fresh = [ob for ob in result.all if ob.creation_index >= latest_index - cfg.new_ob_window]

    created, weekend, duplicates = 0, 0, 0
    for ob in fresh:
        record = to_record(ob, config.symbol, timeframe, now, atr)
        if _is_duplicate(services, record):
            duplicates += 1
            continue
        if (
            cfg.ignore_weekend_obs
            and timeframe in WEEKEND_FILTER_TIMEFRAMES
            and is_weekend_window(record.confirmation_time)
        ):
            record.mark_processed(ProcessedReason.WEEKEND_FORMATION, record.breakout_price, now)
            services.store.create(record)
            weekend += 1
            continue
        services.store.create(record)
        created += 1
        logger.info(
            "New %s %s OB %s [%.2f - %.2f] %s confidence",
            timeframe,
            record.type.value,
            config.symbol,
            record.bottom,
            record.top,
            record.confidence.value,
        )

    last = candles[-1]
    broken, stale = 0, 0
    active = services.store.query(
        OrderBlockRecord,
        where={"symbol": config.symbol, "timeframe": timeframe, "is_active": True},
    )
    for ob in active:
        # the confirmation candle itself never invalidates its own zone
        if ensure_utc(ob.confirmation_time) >= ensure_utc(last.timestamp):
            continue
        if is_broken(ob, last, cfg.invalidation_method):
            ob.mark_broken(last.close, now)
            services.store.update(ob)
            broken += 1
            continue
        if timeframe != config.entry_timeframe or ob.is_processed:
            continue
        if age_hours(ob.confirmation_time, now) > cfg.max_ob_age_hours:
            ob.mark_processed(ProcessedReason.TOO_OLD, last.close, now)
        elif price_too_far(ob, last.close, cfg.max_price_distance_pct):
            ob.mark_processed(ProcessedReason.PRICE_TOO_FAR, last.close, now)
        else:
            continue
        services.store.update(ob)
        stale += 1

    return {
        "candles": len(candles),
        "detected": len(result.all),
        "new": created,
        "weekend": weekend,
        "duplicates": duplicates,
        "broken": broken,
        "stale": stale,
        "atr": atr,
        "price": last.close,
    }


def run_scan(services: Services) -> JobOutcome:
    summary: dict[str, object] = {}
    errors: dict[str, str] = {}
    for timeframe in services.config.scan_timeframes:
        try:
            summary[timeframe] = scan_timeframe(services, timeframe)
        except Exception as exc:  # noqa: BLE001 - one timeframe must not block the others
            logger.exception("Scan of %s failed", timeframe)
            errors[timeframe] = str(exc)
    if errors and not summary:
        return JobOutcome(job="scan", success=False, action="scan_failed", details={"errors": errors})
    return JobOutcome(
        job="scan",
        success=True,
        action="scanned",
        details={"timeframes": summary, "errors": errors},
    )
