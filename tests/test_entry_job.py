from datetime import datetime, timedelta, timezone

import pytest

from obtrader.config import MAKER_FEE, MARKETS, BotConfig, RetryConfig
from obtrader.execution import OrderType, SimulatedExchange
from obtrader.jobs.entry import run_entry
from obtrader.models import Confidence, ObType, PositionStatus, ProcessedReason, Side, TradeEventType
from obtrader.notify import LogNotifier
from obtrader.services import Services
from obtrader.storage import FileStore, OrderBlockRecord, PositionRecord, TradeLogEntry

NOW = datetime(2024, 1, 3, 12, 0, tzinfo=timezone.utc)


class _NoCandles:
    def fetch_candles(self, symbol, timeframe, limit):
        raise AssertionError("entry job does not read candles")


def _services(tmp_path, price: float = 61000.0, balance: float = 10000.0) -> Services:
    config = BotConfig(data_dir=tmp_path, retry=RetryConfig(initial_delay=0.0))
    exchange = SimulatedExchange(MARKETS, balance=balance, leverage=2)
    exchange.set_price("BTCUSDT", price)
    return Services(
        config=config,
        store=FileStore(tmp_path),
        exchange=exchange,
        candles=_NoCandles(),
        notifier=LogNotifier(),
        clock=lambda: NOW,
        sleep=lambda seconds: None,
    )


def _ob(
    bottom: float = 60000.0,
    top: float = 60500.0,
    breakout: float = 61000.0,
    age_minutes: float = 10,
) -> OrderBlockRecord:
    return OrderBlockRecord(
        symbol="BTCUSDT",
        timeframe="4h",
        type=ObType.BULLISH,
        top=top,
        bottom=bottom,
        confirmation_time=NOW - timedelta(minutes=age_minutes),
        created_at=NOW,
        breakout_price=breakout,
        confirmation_close=breakout,
        confidence=Confidence.HIGH,
    )


def _closed_loss(hours_ago: float) -> PositionRecord:
    return PositionRecord(
        symbol="BTCUSDT",
        side=Side.LONG,
        status=PositionStatus.CLOSED,
        entry_price=60000.0,
        avg_entry_price=60000.0,
        size=0.01,
        stop_loss=59000.0,
        leverage=2,
        related_ob="old",
        last_ob_bottom=59000.0,
        last_ob_top=59500.0,
        open_time=NOW - timedelta(hours=hours_ago + 4),
        exit_time=NOW - timedelta(hours=hours_ago),
        pnl=-10.0,
    )


def test_market_entry_opens_position(tmp_path):
    services = _services(tmp_path)
    ob = services.store.create(_ob())

    outcome = run_entry(services)

    assert outcome.success is True
    assert outcome.action == "position_opened"
    positions = services.store.query(PositionRecord, where={"status": PositionStatus.OPEN})
    assert len(positions) == 1
    position = positions[0]
    assert position.side is Side.LONG
    assert position.size == pytest.approx(0.1)
    assert position.stop_loss == 60000.0
    assert position.order_strategy == "market"
    assert position.liquidation_price > 0

    stored_ob = services.store.get(OrderBlockRecord, ob.id)
    assert stored_ob.is_processed is True
    assert stored_ob.processed_reason is ProcessedReason.POSITION_OPENED

    logs = services.store.load(TradeLogEntry)
    assert [entry.event_type for entry in logs] == [TradeEventType.OPEN]
    assert services.notifier.sent[-1][0] == "entry"


def test_no_candidates_is_no_signal(tmp_path):
    outcome = run_entry(_services(tmp_path))
    assert outcome.action == "no_signal"


def test_expired_order_block_is_retired(tmp_path):
    services = _services(tmp_path)
    ob = services.store.create(_ob(age_minutes=120))
    outcome = run_entry(services)
    assert outcome.action == "no_valid_ob"
    assert services.store.get(OrderBlockRecord, ob.id).processed_reason is ProcessedReason.EXPIRED_MAX_AGE


def test_unfilled_limit_order_is_cancelled(tmp_path):
    services = _services(tmp_path, price=62000.0)
    ob = services.store.create(_ob())

    outcome = run_entry(services)

    assert outcome.action == "limit_order_not_filled"
    pending = services.store.load(PositionRecord)
    assert len(pending) == 1
    assert pending[0].status is PositionStatus.CANCELLED
    assert pending[0].order_strategy == "limit"
    assert services.store.get(OrderBlockRecord, ob.id).is_processed is False
    assert services.exchange.get_live_position("BTCUSDT") is None


def test_resting_limit_order_fills_while_waiting(tmp_path):
    services = _services(tmp_path, price=62000.0)
    ob = services.store.create(_ob())
    services.sleep = lambda seconds: services.exchange.set_price("BTCUSDT", 61800.0)

    outcome = run_entry(services)

    assert outcome.action == "position_opened"
    assert outcome.details["route"] == "limit"
    position = services.store.query(PositionRecord, where={"status": PositionStatus.OPEN})[0]
    assert position.entry_price == 61876.0
    assert position.size == pytest.approx(0.05)
    assert position.entry_fee == pytest.approx(0.05 * 61876.0 * MAKER_FEE)
    assert position.order_strategy == "limit"
    stored_ob = services.store.get(OrderBlockRecord, ob.id)
    assert stored_ob.processed_reason is ProcessedReason.POSITION_OPENED


def test_large_deviation_skips_without_marking(tmp_path):
    services = _services(tmp_path, price=63000.0)
    ob = services.store.create(_ob())
    outcome = run_entry(services)
    assert outcome.action == "skipped_large_deviation"
    assert services.store.get(OrderBlockRecord, ob.id).is_processed is False
    assert services.store.load(PositionRecord) == []


def test_small_balance_marks_size_too_small(tmp_path):
    services = _services(tmp_path, balance=50.0)
    ob = services.store.create(_ob())
    outcome = run_entry(services)
    assert outcome.action == "size_too_small"
    assert services.store.get(OrderBlockRecord, ob.id).processed_reason is ProcessedReason.SIZE_TOO_SMALL


def test_loss_streak_blocks_and_arms_cooldown(tmp_path):
    services = _services(tmp_path)
    services.store.create(_ob())
    for hours in (30, 29, 28):
        services.store.create(_closed_loss(hours))

    outcome = run_entry(services)

    assert outcome.success is False
    assert outcome.action == "blocked_by_protection"
    assert outcome.reason == "consecutive_losses"
    state = services.store.load_protection_state()
    assert state.cooldown_until == NOW + timedelta(hours=24)
    assert services.notifier.sent[-1][0] == "cooldown"


def test_pyramid_addition_updates_position(tmp_path):
    services = _services(tmp_path, price=60000.0)
    services.exchange.place_order("BTCUSDT", Side.LONG, 0.1, 60000.0, 59000.0, OrderType.MARKET)
    services.store.create(
        PositionRecord(
            symbol="BTCUSDT",
            side=Side.LONG,
            status=PositionStatus.OPEN,
            entry_price=60000.0,
            avg_entry_price=60000.0,
            size=0.1,
            stop_loss=59000.0,
            leverage=2,
            related_ob="first",
            last_ob_bottom=59000.0,
            last_ob_top=59500.0,
            open_time=NOW - timedelta(hours=8),
        )
    )
    services.store.create(_ob(bottom=60500.0, top=61000.0, breakout=61500.0))
    services.exchange.set_price("BTCUSDT", 61600.0)

    outcome = run_entry(services)

    assert outcome.action == "position_added"
    position = services.store.query(PositionRecord, where={"status": PositionStatus.OPEN})[0]
    assert position.addition_count == 1
    assert position.size == pytest.approx(0.1454)
    assert position.stop_loss == 60500.0
    assert position.last_ob_bottom == 60500.0
    assert 60000.0 < position.avg_entry_price < 61600.0
    assert len(position.additions) == 1
    assert services.store.load(TradeLogEntry)[-1].event_type is TradeEventType.ADD


def test_held_lock_stops_concurrent_entry(tmp_path):
    services = _services(tmp_path)
    services.store.create(_ob())
    with services.store.exclusive_lock("entry_BTCUSDT"):
        outcome = run_entry(services)
    assert outcome.action == "entry_locked"
    assert services.store.load(PositionRecord) == []


def test_failed_persistence_after_fill_raises_alert(tmp_path, monkeypatch):
    services = _services(tmp_path)
    services.store.create(_ob())

    def _fail(record):
        raise OSError("disk full")

    monkeypatch.setattr(services.store, "update", _fail)
    outcome = run_entry(services)

    assert outcome.success is False
    assert outcome.action == "database_update_failed"
    assert outcome.details["order_id"]
    assert services.notifier.sent[-1][0] == "post_fill_failure"
    assert services.exchange.get_live_position("BTCUSDT") is not None
