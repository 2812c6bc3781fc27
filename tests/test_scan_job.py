from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from obtrader.config import MARKETS, BotConfig, DetectorConfig, RetryConfig
from obtrader.execution import SimulatedExchange
from obtrader.jobs.atr import run_atr
from obtrader.jobs.scan import is_broken, price_too_far, run_scan
from obtrader.models import Candle, ObType, ProcessedReason
from obtrader.notify import LogNotifier
from obtrader.services import Services
from obtrader.storage import AtrRecord, FileStore, OrderBlockRecord

from test_order_blocks import BREAKOUT_ROWS

MONDAY = datetime(2024, 1, 1, tzinfo=timezone.utc)
SATURDAY = datetime(2024, 1, 6, tzinfo=timezone.utc)


class _FakeCandles:
    def __init__(self, start: datetime, rows=BREAKOUT_ROWS) -> None:
        self.start = start
        self.rows = rows
        self.calls = []

    def fetch_candles(self, symbol, timeframe, limit):
        self.calls.append((symbol, timeframe, limit))
        return [
            Candle(
                timestamp=self.start + timedelta(hours=4 * i),
                open=o,
                high=h,
                low=l,
                close=c,
                volume=v,
                index=i,
            )
            for i, (o, h, l, c, v) in enumerate(self.rows)
        ][-limit:]


class _FailingCandles:
    def fetch_candles(self, symbol, timeframe, limit):
        raise ConnectionError("feed down")


def _services(tmp_path, candles, start: datetime = MONDAY) -> Services:
    config = BotConfig(
        data_dir=tmp_path,
        scan_timeframes=("4h",),
        atr_timeframes=("4h",),
        detector=DetectorConfig(swing_length=2, atr_period=3),
        retry=RetryConfig(max_attempts=1, initial_delay=0.0),
    )
    return Services(
        config=config,
        store=FileStore(tmp_path),
        exchange=SimulatedExchange(MARKETS),
        candles=candles,
        notifier=LogNotifier(),
        clock=lambda: start + timedelta(hours=33),
        sleep=lambda seconds: None,
    )


def _record(bottom: float, top: float, confirmed: datetime, ob_type: ObType = ObType.BULLISH) -> OrderBlockRecord:
    return OrderBlockRecord(
        symbol="BTCUSDT",
        timeframe="4h",
        type=ob_type,
        top=top,
        bottom=bottom,
        confirmation_time=confirmed,
        created_at=confirmed,
    )


def test_scan_persists_new_order_block_once(tmp_path):
    services = _services(tmp_path, _FakeCandles(MONDAY))

    first = run_scan(services)
    assert first.action == "scanned"
    assert first.details["timeframes"]["4h"]["new"] == 1

    stored = services.store.load(OrderBlockRecord)
    assert len(stored) == 1
    ob = stored[0]
    assert (ob.bottom, ob.top) == (60400, 60700)
    assert ob.breakout_price == 61200
    assert ob.is_active and not ob.is_processed
    assert ob.confirmation_time == MONDAY + timedelta(hours=32)

    second = run_scan(services)
    assert second.details["timeframes"]["4h"]["duplicates"] == 1
    assert len(services.store.load(OrderBlockRecord)) == 1


def test_same_confirmation_time_on_two_timeframes_is_kept(tmp_path):
    services = _services(tmp_path, _FakeCandles(MONDAY))
    services.config = replace(services.config, scan_timeframes=("4h", "1d"))

    outcome = run_scan(services)

    assert outcome.details["timeframes"]["1d"]["new"] == 1
    assert outcome.details["timeframes"]["1d"]["duplicates"] == 0
    stored = sorted(ob.timeframe for ob in services.store.load(OrderBlockRecord))
    assert stored == ["1d", "4h"]


def test_weekend_order_block_is_stored_processed(tmp_path):
    services = _services(tmp_path, _FakeCandles(SATURDAY), start=SATURDAY)

    summary = run_scan(services).details["timeframes"]["4h"]

    assert summary["new"] == 0
    assert summary["weekend"] == 1
    ob = services.store.load(OrderBlockRecord)[0]
    assert ob.processed_reason is ProcessedReason.WEEKEND_FORMATION


def test_scan_invalidates_and_retires_existing_blocks(tmp_path):
    services = _services(tmp_path, _FakeCandles(MONDAY))
    confirmed = MONDAY + timedelta(hours=20)
    broken = services.store.create(_record(60500.0, 60800.0, confirmed))
    old = services.store.create(_record(57000.0, 57500.0, confirmed))

    summary = run_scan(services).details["timeframes"]["4h"]

    assert summary["broken"] == 1
    assert summary["stale"] == 1
    stored_broken = services.store.get(OrderBlockRecord, broken.id)
    assert stored_broken.is_active is False
    assert stored_broken.broken_price == 61200
    assert services.store.get(OrderBlockRecord, old.id).processed_reason is ProcessedReason.TOO_OLD


def test_scan_reports_failure_when_every_timeframe_fails(tmp_path):
    outcome = run_scan(_services(tmp_path, _FailingCandles()))
    assert outcome.success is False
    assert outcome.action == "scan_failed"
    assert "4h" in outcome.details["errors"]


def test_wick_and_close_invalidation():
    ob = _record(60000.0, 60500.0, MONDAY)
    wick = Candle(timestamp=MONDAY, open=60200, high=60300, low=59900, close=60100)
    assert is_broken(ob, wick, "wick") is True
    assert is_broken(ob, wick, "close") is False

    bearish = _record(61000.0, 61500.0, MONDAY, ObType.BEARISH)
    through = Candle(timestamp=MONDAY, open=61400, high=61700, low=61300, close=61600)
    assert is_broken(bearish, through, "close") is True


def test_price_distance_is_measured_from_the_far_edge():
    ob = _record(60000.0, 60500.0, MONDAY)
    assert price_too_far(ob, 63600.0, 5.0) is True
    assert price_too_far(ob, 63400.0, 5.0) is False


def test_atr_job_upserts_within_the_hour(tmp_path):
    candles = _FakeCandles(MONDAY)
    services = _services(tmp_path, candles)

    first = run_atr(services)
    second = run_atr(services)

    assert first.action == "atr_updated"
    assert second.details["values"]["4h"] == pytest.approx(first.details["values"]["4h"])
    rows = services.store.load(AtrRecord)
    assert len(rows) == 1
    assert rows[0].period == 3
    assert candles.calls[0] == ("BTCUSDT", "4h", 9)
