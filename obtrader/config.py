"""Configuration for the order block bot."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import os
from pathlib import Path
from typing import Mapping

from .errors import ConfigError


VOLUME_METHODS = ("percentile", "sma", "ema", "stddev")
INVALIDATION_METHODS = ("wick", "close")

TAKER_FEE = 0.00035
MAKER_FEE = -0.0002


class ExchangeMode(str, Enum):
    SIMULATED = "SIMULATED"
    LIVE = "LIVE"


@dataclass(frozen=True)
class MarketRules:
    symbol: str
    coin: str
    min_size: float
    size_increment: float
    price_precision: int
    max_leverage: int
    maintenance_margin_rate: float
    default_atr: float


MARKETS: dict[str, MarketRules] = {
    "BTCUSDT": MarketRules(
        symbol="BTCUSDT",
        coin="BTC",
        min_size=0.001,
        size_increment=0.0001,
        price_precision=1,
        max_leverage=50,
        maintenance_margin_rate=0.004,
        default_atr=1000.0,
    ),
    "ETHUSDT": MarketRules(
        symbol="ETHUSDT",
        coin="ETH",
        min_size=0.01,
        size_increment=0.001,
        price_precision=2,
        max_leverage=50,
        maintenance_margin_rate=0.004,
        default_atr=50.0,
    ),
}


@dataclass(frozen=True)
class DetectorConfig:
    swing_length: int = 10
    volume_lookback: int = 20
    volume_method: str = "percentile"
    volume_param: float = 70.0
    atr_period: int = 10
    max_atr_multiplier: float = 3.5
    lookback_candles: int = 100
    new_ob_window: int = 2
    ignore_weekend_obs: bool = True
    invalidation_method: str = "wick"
    max_ob_age_hours: float = 12.0
    max_price_distance_pct: float = 5.0


@dataclass(frozen=True)
class EntryConfig:
    leverage: int = 2
    risk_percent: float = 1.0
    max_additions: int = 1
    scale_down_factor: float = 0.5
    min_profit_for_addition: float = 1.5
    require_high_confidence: bool = False
    max_deviation_for_market: float = 0.8
    max_deviation_for_limit: float = 2.0
    limit_order_wait_time: float = 240.0
    limit_poll_interval: float = 2.0
    limit_price_adjustment: float = 0.2
    max_ob_age_minutes: float = 60.0
    min_balance: float = 10.0
    margin_buffer: float = 0.95
    candidates_limit: int = 5


@dataclass(frozen=True)
class MonitorConfig:
    htf_timeframes: tuple[str, ...] = ("1w", "1d")
    reversal_window_hours: float = 8.0
    reversal_candidates: int = 5
    trailing_stop_trigger: float = 5.0
    trailing_stop_multiplier: float = 2.5
    liquidation_warning_pct: float = 5.0
    liquidation_emergency_pct: float = 2.0


@dataclass(frozen=True)
class ProtectionConfig:
    enabled: bool = True
    max_daily_loss: float = 5.0
    max_consecutive_losses: int = 3
    max_drawdown: float = 15.0
    cooldown_hours: float = 24.0
    avoid_weekends: bool = True
    blackout_hours: tuple[int, ...] = ()
    lookback_positions: int = 20


@dataclass(frozen=True)
class EmailConfig:
    enabled: bool = False
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    username: str = ""
    password: str = ""
    sender: str = ""
    recipient: str = ""


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    initial_delay: float = 1.0


@dataclass(frozen=True)
class BotConfig:
    symbol: str = "BTCUSDT"
    entry_timeframe: str = "4h"
    trading_enabled: bool = False
    exchange_mode: ExchangeMode = ExchangeMode.SIMULATED
    data_dir: Path = Path("logs")
    atr_timeframes: tuple[str, ...] = ("4h", "1d")
    initial_balance: float = 10000.0
    candle_csv_dir: Path | None = None
    detector: DetectorConfig = DetectorConfig()
    entry: EntryConfig = EntryConfig()
    monitor: MonitorConfig = MonitorConfig()
    protection: ProtectionConfig = ProtectionConfig()
    email: EmailConfig = EmailConfig()
    retry: RetryConfig = RetryConfig()
    scan_timeframes: tuple[str, ...] = field(default=("4h", "1d", "1w"))

    @property
    def market(self) -> MarketRules:
        return MARKETS[self.symbol]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "BotConfig":
        env = os.environ if environ is None else environ

        def _str(key: str, default: str) -> str:
            return env.get(key, default)

        def _float(key: str, default: float) -> float:
            value = env.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError:
                return default

        def _int(key: str, default: int) -> int:
            value = env.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError:
                return default

        def _bool(key: str, default: bool) -> bool:
            value = env.get(key)
            if value is None:
                return default
            return value.strip().lower() in {"1", "true", "yes", "on"}

        def _list(key: str, default: tuple[str, ...]) -> tuple[str, ...]:
            value = env.get(key)
            if value is None:
                return default
            return tuple(item.strip() for item in value.split(",") if item.strip())

        blackout: list[int] = []
        for item in _list("BLACKOUT_HOURS", ()):
            try:
                blackout.append(int(item))
            except ValueError:
                continue

        detector = DetectorConfig(
            swing_length=_int("OB_SWING_LENGTH", DetectorConfig.swing_length),
            volume_lookback=_int("VOLUME_LOOKBACK", DetectorConfig.volume_lookback),
            volume_method=_str("VOLUME_METHOD", DetectorConfig.volume_method).lower(),
            volume_param=_float("VOLUME_PARAM", DetectorConfig.volume_param),
            atr_period=_int("ATR_PERIOD", DetectorConfig.atr_period),
            max_atr_multiplier=_float("MAX_ATR_MULTIPLIER", DetectorConfig.max_atr_multiplier),
            lookback_candles=_int("LOOKBACK_CANDLES", DetectorConfig.lookback_candles),
            ignore_weekend_obs=_bool("IGNORE_WEEKEND_OBS", DetectorConfig.ignore_weekend_obs),
            invalidation_method=_str(
                "OB_INVALIDATION_METHOD", DetectorConfig.invalidation_method
            ).lower(),
            max_ob_age_hours=_float("MAX_OB_AGE_HOURS", DetectorConfig.max_ob_age_hours),
            max_price_distance_pct=_float(
                "MAX_PRICE_DISTANCE_PERCENT", DetectorConfig.max_price_distance_pct
            ),
        )
        entry = EntryConfig(
            leverage=_int("LEVERAGE", EntryConfig.leverage),
            risk_percent=_float("RISK_PER_TRADE", EntryConfig.risk_percent),
            max_additions=_int("MAX_ADDITIONS", EntryConfig.max_additions),
            scale_down_factor=_float("SCALE_DOWN_FACTOR", EntryConfig.scale_down_factor),
            min_profit_for_addition=_float(
                "MIN_PROFIT_FOR_ADDITION", EntryConfig.min_profit_for_addition
            ),
            require_high_confidence=_bool(
                "REQUIRE_HIGH_CONFIDENCE", EntryConfig.require_high_confidence
            ),
            max_deviation_for_market=_float(
                "MAX_DEVIATION_MARKET", EntryConfig.max_deviation_for_market
            ),
            max_deviation_for_limit=_float(
                "MAX_DEVIATION_LIMIT", EntryConfig.max_deviation_for_limit
            ),
            limit_order_wait_time=_float(
                "LIMIT_ORDER_WAIT_TIME", EntryConfig.limit_order_wait_time
            ),
            limit_price_adjustment=_float(
                "LIMIT_PRICE_ADJUSTMENT", EntryConfig.limit_price_adjustment
            ),
            max_ob_age_minutes=_float("MAX_OB_AGE_MINUTES", EntryConfig.max_ob_age_minutes),
        )
        monitor = MonitorConfig(
            htf_timeframes=_list("HTF_TARGETS", MonitorConfig.htf_timeframes),
            trailing_stop_trigger=_float(
                "TRAILING_STOP_TRIGGER", MonitorConfig.trailing_stop_trigger
            ),
            trailing_stop_multiplier=_float(
                "TRAILING_STOP_ATR_MULTIPLIER", MonitorConfig.trailing_stop_multiplier
            ),
        )
        protection = ProtectionConfig(
            enabled=_bool("PROTECTION_ENABLED", ProtectionConfig.enabled),
            max_daily_loss=_float("MAX_DAILY_LOSS", ProtectionConfig.max_daily_loss),
            max_consecutive_losses=_int(
                "MAX_CONSECUTIVE_LOSSES", ProtectionConfig.max_consecutive_losses
            ),
            max_drawdown=_float("MAX_DRAWDOWN", ProtectionConfig.max_drawdown),
            cooldown_hours=_float("COOLDOWN_PERIOD", ProtectionConfig.cooldown_hours),
            avoid_weekends=_bool("AVOID_WEEKENDS", ProtectionConfig.avoid_weekends),
            blackout_hours=tuple(blackout),
        )
        email = EmailConfig(
            enabled=_bool("EMAIL_ENABLED", EmailConfig.enabled),
            smtp_host=_str("EMAIL_SMTP_HOST", EmailConfig.smtp_host),
            smtp_port=_int("EMAIL_SMTP_PORT", EmailConfig.smtp_port),
            username=_str("EMAIL_USER", ""),
            password=_str("EMAIL_PASSWORD", ""),
            sender=_str("EMAIL_FROM", _str("EMAIL_USER", "")),
            recipient=_str("EMAIL_TO", ""),
        )
        retry = RetryConfig(
            max_attempts=_int("MAX_RETRIES", RetryConfig.max_attempts),
            initial_delay=_float("RETRY_INITIAL_DELAY", RetryConfig.initial_delay),
        )

        mode_value = _str("EXCHANGE_MODE", ExchangeMode.SIMULATED.value).upper()
        try:
            mode = ExchangeMode(mode_value)
        except ValueError as exc:
            raise ConfigError(f"Unknown EXCHANGE_MODE: {mode_value}") from exc

        return cls(
            symbol=_str("TRADING_SYMBOL", cls.symbol).upper(),
            entry_timeframe=_str("ENTRY_TIMEFRAME", cls.entry_timeframe),
            trading_enabled=_bool("TRADING_ENABLED", cls.trading_enabled),
            exchange_mode=mode,
            data_dir=Path(_str("DATA_DIR", str(cls.data_dir))),
            atr_timeframes=_list("ATR_TIMEFRAMES", cls.atr_timeframes),
            scan_timeframes=_list("SCAN_TIMEFRAMES", ("4h", "1d", "1w")),
            initial_balance=_float("INITIAL_BALANCE", cls.initial_balance),
            candle_csv_dir=Path(env["CANDLE_CSV_DIR"]) if env.get("CANDLE_CSV_DIR") else None,
            detector=detector,
            entry=entry,
            monitor=monitor,
            protection=protection,
            email=email,
            retry=retry,
        )

    def validate(self) -> "BotConfig":
        """Raise ConfigError listing every invalid setting."""
        problems: list[str] = []
        if self.symbol not in MARKETS:
            problems.append(f"unknown symbol {self.symbol}")
        if not 1 <= self.entry.leverage <= 10:
            problems.append("leverage must be between 1 and 10")
        if not 0.1 <= self.entry.risk_percent <= 5:
            problems.append("risk_percent must be between 0.1 and 5")
        if self.entry.max_deviation_for_market > self.entry.max_deviation_for_limit:
            problems.append("max_deviation_for_market must not exceed max_deviation_for_limit")
        if not 0 < self.entry.scale_down_factor <= 1:
            problems.append("scale_down_factor must be in (0, 1]")
        if self.entry.max_additions < 0:
            problems.append("max_additions must be >= 0")
        if self.entry.limit_order_wait_time <= 0 or self.entry.limit_poll_interval <= 0:
            problems.append("limit order wait and poll interval must be positive")
        if self.entry.max_ob_age_minutes <= 0:
            problems.append("max_ob_age_minutes must be positive")
        if self.detector.swing_length < 1:
            problems.append("swing_length must be >= 1")
        if self.detector.volume_method not in VOLUME_METHODS:
            problems.append(f"unknown volume method {self.detector.volume_method}")
        if self.detector.invalidation_method not in INVALIDATION_METHODS:
            problems.append(f"unknown invalidation method {self.detector.invalidation_method}")
        if self.detector.atr_period < 1:
            problems.append("atr_period must be >= 1")
        if self.retry.max_attempts < 1:
            problems.append("max retry attempts must be >= 1")
        if any(hour < 0 or hour > 23 for hour in self.protection.blackout_hours):
            problems.append("blackout hours must be within 0-23")
        if self.email.enabled and not self.email.recipient:
            problems.append("email enabled without EMAIL_TO")
        if problems:
            raise ConfigError("Invalid configuration: " + "; ".join(problems), details={"problems": problems})
        return self
