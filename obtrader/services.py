"""Wiring of configuration, store, exchange, candles and notifier."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import os
import time
from typing import Callable

from .config import MARKETS, BotConfig, ExchangeMode
from .data import BinanceCandleSource, CandleSource, CsvCandleSource
from .errors import ConfigError
from .execution import ExchangeClient, HyperliquidExchange, SimulatedExchange
from .execution.hyperliquid import Signer
from .notify import EmailNotifier, LogNotifier, Notifier
from .storage import FileStore
from .utils.time import utc_now


@dataclass
class Services:
    config: BotConfig
    store: FileStore
    exchange: ExchangeClient
    candles: CandleSource
    notifier: Notifier
    clock: Callable[[], datetime] = utc_now
    sleep: Callable[[float], None] = field(default=time.sleep)


def _latest_close(candles: CandleSource) -> Callable[[str], float]:
    def _price(symbol: str) -> float:
        return candles.fetch_candles(symbol, "1m", 2)[-1].close

    return _price


def build_exchange(config: BotConfig, candles: CandleSource, signer: Signer | None = None) -> ExchangeClient:
    """Pick the exchange for the configured mode.

    LIVE mode needs an account address and a signer for trading actions.
    """
    if config.exchange_mode is ExchangeMode.LIVE:
        address = os.getenv("HYPERLIQUID_ACCOUNT_ADDRESS", "")
        if not address:
            raise ConfigError("HYPERLIQUID_ACCOUNT_ADDRESS is required in LIVE mode")
        if signer is None:
            raise ConfigError("LIVE mode requires an order signer")
        return HyperliquidExchange(MARKETS, account_address=address, signer=signer)
    return SimulatedExchange(
        MARKETS,
        balance=config.initial_balance,
        leverage=config.entry.leverage,
        state_path=config.data_dir / "simulated_exchange.json",
        price_feed=_latest_close(candles),
    )


def build_services(config: BotConfig | None = None, signer: Signer | None = None) -> Services:
    config = (config or BotConfig.from_env()).validate()
    candles: CandleSource = (
        CsvCandleSource(config.candle_csv_dir) if config.candle_csv_dir else BinanceCandleSource()
    )
    notifier: Notifier = EmailNotifier(config.email) if config.email.enabled else LogNotifier()
    return Services(
        config=config,
        store=FileStore(config.data_dir),
        exchange=build_exchange(config, candles, signer),
        candles=candles,
        notifier=notifier,
    )
