"""ATR job: persist the latest ATR per timeframe for trailing stops."""
from __future__ import annotations

from datetime import timedelta
import logging

from obtrader.errors import DataUnavailable
from obtrader.execution import retry_with_backoff
from obtrader.indicators import latest_atr
from obtrader.services import Services
from obtrader.storage import AtrRecord
from obtrader.utils.time import ensure_utc

from .base import JobOutcome

logger = logging.getLogger(__name__)

UPSERT_WINDOW = timedelta(hours=1)


def update_atr(services: Services, timeframe: str) -> AtrRecord:
    config = services.config
    period = config.detector.atr_period
    candles = retry_with_backoff(
        lambda: services.candles.fetch_candles(config.symbol, timeframe, period * 3),
        attempts=config.retry.max_attempts,
        initial_delay=config.retry.initial_delay,
        name=f"fetch {timeframe} candles",
        sleep=services.sleep,
    )
    value = latest_atr(candles, period)
    if value is None:
        raise DataUnavailable(f"Not enough {timeframe} candles for ATR({period})")
    last = candles[-1]
    now = services.clock()

    existing = services.store.query(
        AtrRecord,
        where={"symbol": config.symbol, "timeframe": timeframe},
        order_by="timestamp",
        descending=True,
        limit=1,
    )
    if existing and abs(ensure_utc(existing[0].timestamp) - ensure_utc(last.timestamp)) <= UPSERT_WINDOW:
        record = existing[0]
        record.value = value
        record.candle_close = last.close
        record.timestamp = last.timestamp
        record.calculated_at = now
        return services.store.update(record)
    return services.store.create(
        AtrRecord(
            symbol=config.symbol,
            timeframe=timeframe,
            value=value,
            period=period,
            candle_close=last.close,
            timestamp=last.timestamp,
            calculated_at=now,
        )
    )


def run_atr(services: Services) -> JobOutcome:
    values: dict[str, float] = {}
    errors: dict[str, str] = {}
    for timeframe in services.config.atr_timeframes:
        try:
            record = update_atr(services, timeframe)
        except Exception as exc:  # noqa: BLE001 - report per timeframe
            logger.error("ATR update for %s failed: %s", timeframe, exc)
            errors[timeframe] = str(exc)
            continue
        values[timeframe] = record.value
        logger.info("ATR(%d) %s %s = %.2f", record.period, record.symbol, timeframe, record.value)
    return JobOutcome(
        job="atr",
        success=bool(values) or not errors,
        action="atr_updated" if values else "atr_failed",
        details={"values": values, "errors": errors},
    )
