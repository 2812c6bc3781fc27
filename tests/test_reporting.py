from datetime import datetime, timedelta, timezone

import pytest

from obtrader.config import MARKETS, BotConfig, EmailConfig
from obtrader.execution import SimulatedExchange
from obtrader.jobs.report import run_weekly_report
from obtrader.models import Side, TradeEventType
from obtrader.notify import LogNotifier
from obtrader.reporting import entries_between, format_weekly_report, previous_week_window, trade_stats
from obtrader.services import Services
from obtrader.storage import FileStore, TradeLogEntry

NOW = datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc)


def _close(pnl: float, when: datetime, fee: float = 1.0) -> TradeLogEntry:
    return TradeLogEntry(
        timestamp=when,
        event_type=TradeEventType.CLOSE,
        symbol="BTCUSDT",
        side=Side.LONG,
        price=61000.0,
        size=0.1,
        fee=fee,
        position_id="pos-1",
        pnl=pnl,
    )


def test_previous_week_window_spans_monday_to_sunday():
    start, end = previous_week_window(NOW)
    assert start == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert end == datetime(2024, 1, 8, tzinfo=timezone.utc) - timedelta(milliseconds=1)


def test_trade_stats_counts_wins_losses_and_breakeven():
    stats = trade_stats([_close(200.0, NOW), _close(-100.0, NOW), _close(0.0, NOW), _close(100.0, NOW)])
    assert stats.total_trades == 4
    assert (stats.wins, stats.losses, stats.breakeven) == (2, 1, 1)
    assert stats.total_pnl == pytest.approx(200.0)
    assert stats.total_fees == pytest.approx(4.0)
    assert stats.win_rate == pytest.approx(50.0)
    assert stats.profit_factor == pytest.approx(3.0)
    assert stats.largest_loss == -100.0


def test_empty_week_reports_no_trades():
    stats = trade_stats([])
    assert stats.total_trades == 0
    start, end = previous_week_window(NOW)
    assert "No closed trades" in format_weekly_report(stats, start, end)


def test_entries_outside_window_are_ignored():
    start, end = previous_week_window(NOW)
    inside = _close(50.0, start + timedelta(days=2))
    outside = _close(75.0, end + timedelta(hours=1))
    assert entries_between([inside, outside], start, end) == [inside]


def test_weekly_report_job(tmp_path):
    notifier = LogNotifier()
    store = FileStore(tmp_path)
    store.create(_close(120.0, datetime(2024, 1, 3, tzinfo=timezone.utc)))
    store.create(_close(-40.0, datetime(2024, 1, 9, tzinfo=timezone.utc)))

    def _services(email: EmailConfig) -> Services:
        return Services(
            config=BotConfig(data_dir=tmp_path, email=email),
            store=store,
            exchange=SimulatedExchange(MARKETS),
            candles=None,
            notifier=notifier,
            clock=lambda: NOW,
        )

    assert run_weekly_report(_services(EmailConfig())).reason == "email_disabled"

    outcome = run_weekly_report(_services(EmailConfig(enabled=True, recipient="ops@example.com")))
    assert outcome.action == "report_sent"
    assert outcome.details["total_trades"] == 1
    kind, payload = notifier.sent[-1]
    assert kind == "weekly_report"
    assert "Total PnL: 120.00 USDT" in payload["body"]
