from datetime import datetime, timedelta, timezone

from obtrader.config import ProtectionConfig
from obtrader.models import PositionStatus, Side
from obtrader.protection import AccountProtectionGate
from obtrader.storage import FileStore, PositionRecord

# Wednesday
NOW = datetime(2024, 1, 3, 12, 0, tzinfo=timezone.utc)


def _closed(pnl: float, exit_time: datetime) -> PositionRecord:
    return PositionRecord(
        symbol="BTCUSDT",
        side=Side.LONG,
        status=PositionStatus.CLOSED,
        entry_price=60000.0,
        avg_entry_price=60000.0,
        size=0.1,
        stop_loss=59000.0,
        leverage=2,
        related_ob="ob",
        last_ob_bottom=59000.0,
        last_ob_top=59500.0,
        open_time=exit_time - timedelta(hours=4),
        exit_time=exit_time,
        exit_price=60000.0 + pnl * 10,
        pnl=pnl,
    )


def _gate(tmp_path, **overrides) -> AccountProtectionGate:
    return AccountProtectionGate(ProtectionConfig(**overrides), FileStore(tmp_path))


def test_disabled_protection_allows(tmp_path):
    gate = _gate(tmp_path, enabled=False)
    verdict = gate.check(10000.0, datetime(2024, 1, 6, tzinfo=timezone.utc))
    assert verdict.allowed is True
    assert verdict.reason == "protection_disabled"


def test_consecutive_losses_block_entries(tmp_path):
    gate = _gate(tmp_path, max_daily_loss=50.0)
    store = gate.store
    store.create(_closed(80.0, NOW - timedelta(days=2, hours=4)))
    for hours in (30, 29, 28):
        store.create(_closed(-20.0, NOW - timedelta(hours=hours)))

    verdict = gate.check(10000.0, NOW)
    assert verdict.allowed is False
    assert verdict.reason == "consecutive_losses"
    assert verdict.severe is True


def test_win_resets_loss_streak(tmp_path):
    gate = _gate(tmp_path)
    gate.store.create(_closed(-20.0, NOW - timedelta(days=2, hours=3)))
    gate.store.create(_closed(-20.0, NOW - timedelta(days=2, hours=2)))
    gate.store.create(_closed(15.0, NOW - timedelta(days=2, hours=1)))

    verdict = gate.check(10000.0, NOW)
    assert verdict.allowed is True
    assert verdict.stats.consecutive_losses == 0


def test_daily_loss_limit_counts_only_today(tmp_path):
    gate = _gate(tmp_path, max_consecutive_losses=10)
    gate.store.create(_closed(-400.0, NOW - timedelta(days=1)))
    verdict = gate.check(10000.0, NOW)
    assert verdict.allowed is True
    assert verdict.stats.daily_pnl == 0.0

    gate.store.create(_closed(-500.0, NOW - timedelta(hours=1)))
    verdict = gate.check(10000.0, NOW)
    assert verdict.allowed is False
    assert verdict.reason == "daily_loss_limit"


def test_drawdown_against_monotonic_peak(tmp_path):
    gate = _gate(tmp_path)
    assert gate.check(10000.0, NOW).stats.peak == 10000.0
    assert gate.check(12000.0, NOW).stats.peak == 12000.0
    verdict = gate.check(11000.0, NOW)
    assert verdict.allowed is True
    assert verdict.stats.peak == 12000.0

    verdict = gate.check(10000.0, NOW)
    assert verdict.allowed is False
    assert verdict.reason == "max_drawdown"
    assert gate.store.load_protection_state().account_peak == 12000.0


def test_cooldown_blocks_until_expiry_then_clears(tmp_path):
    gate = _gate(tmp_path, cooldown_hours=24)
    until = gate.trigger_cooldown("consecutive_losses", NOW)
    assert until == NOW + timedelta(hours=24)

    verdict = gate.check(10000.0, NOW + timedelta(hours=1))
    assert verdict.allowed is False
    assert verdict.reason == "cooldown_active"

    verdict = gate.check(10000.0, NOW + timedelta(hours=25))
    assert verdict.allowed is True
    assert gate.store.load_protection_state().cooldown_until is None


def test_weekend_and_blackout_hours(tmp_path):
    gate = _gate(tmp_path, blackout_hours=(12,))
    friday_night = datetime(2024, 1, 5, 22, 30, tzinfo=timezone.utc)
    assert gate.check(10000.0, friday_night).reason == "trading_hours"
    assert gate.check(10000.0, NOW).reason == "trading_hours"
    assert gate.check(10000.0, NOW.replace(hour=13)).allowed is True


def test_unreadable_state_blocks_with_protection_error(tmp_path):
    gate = _gate(tmp_path)
    (tmp_path / "protection_state.json").write_text("{not json", encoding="utf-8")
    verdict = gate.check(10000.0, NOW)
    assert verdict.allowed is False
    assert verdict.reason == "protection_error"
