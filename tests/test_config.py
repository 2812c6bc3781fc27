from pathlib import Path

import pytest

from obtrader.config import BotConfig, EntryConfig, ExchangeMode
from obtrader.errors import ConfigError


def test_defaults_without_environment():
    config = BotConfig.from_env({})
    assert config.symbol == "BTCUSDT"
    assert config.entry_timeframe == "4h"
    assert config.exchange_mode is ExchangeMode.SIMULATED
    assert config.trading_enabled is False
    assert config.scan_timeframes == ("4h", "1d", "1w")
    assert config.candle_csv_dir is None
    assert config.validate() is config


def test_environment_overrides():
    config = BotConfig.from_env(
        {
            "TRADING_SYMBOL": "ethusdt",
            "LEVERAGE": "3",
            "RISK_PER_TRADE": "0.5",
            "TRADING_ENABLED": "true",
            "EXCHANGE_MODE": "live",
            "BLACKOUT_HOURS": "0, 1, x",
            "HTF_TARGETS": "1w",
            "DATA_DIR": "/tmp/ob-data",
            "CANDLE_CSV_DIR": "data/candles",
        }
    )
    assert config.symbol == "ETHUSDT"
    assert config.market.min_size == 0.01
    assert config.entry.leverage == 3
    assert config.entry.risk_percent == 0.5
    assert config.trading_enabled is True
    assert config.exchange_mode is ExchangeMode.LIVE
    assert config.protection.blackout_hours == (0, 1)
    assert config.monitor.htf_timeframes == ("1w",)
    assert config.data_dir == Path("/tmp/ob-data")
    assert config.candle_csv_dir == Path("data/candles")


def test_malformed_numbers_fall_back_to_defaults():
    config = BotConfig.from_env({"LEVERAGE": "ten", "MAX_DRAWDOWN": ""})
    assert config.entry.leverage == EntryConfig.leverage
    assert config.protection.max_drawdown == 15.0


def test_unknown_exchange_mode_is_rejected():
    with pytest.raises(ConfigError):
        BotConfig.from_env({"EXCHANGE_MODE": "paper"})


def test_validate_lists_every_problem():
    config = BotConfig(symbol="DOGEUSDT", entry=EntryConfig(leverage=20, risk_percent=9))
    with pytest.raises(ConfigError) as excinfo:
        config.validate()
    problems = excinfo.value.details["problems"]
    assert len(problems) == 3
    assert "unknown symbol DOGEUSDT" in problems
