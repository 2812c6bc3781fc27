"""Candle sources: Binance public klines and local CSV files."""
from __future__ import annotations

from datetime import datetime, timezone
import logging
from pathlib import Path
from typing import Any, Optional, Protocol

import requests

from .errors import DataUnavailable, TransientError
from .models import Candle, reindex

logger = logging.getLogger(__name__)

BINANCE_FUTURES_URL = "https://fapi.binance.com"
MAX_KLINE_LIMIT = 1500
REQUEST_TIMEOUT = 15


class CandleSource(Protocol):
    def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]: ...


def _parse_timestamp(value: str) -> datetime:
    cleaned = value.strip().replace("Z", "+00:00")
    if cleaned.isdigit():
        return datetime.fromtimestamp(int(cleaned) / 1000, tz=timezone.utc)
    parsed = datetime.fromisoformat(cleaned)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def load_candles_csv(path: str | Path) -> list[Candle]:
    """Load candles from a CSV file.

    Expected columns: timestamp, open, high, low, close, volume(optional).
    Timestamps may be ISO strings or epoch milliseconds.
    """
    candles: list[Candle] = []
    with Path(path).open("r", encoding="utf-8") as handle:
        header = handle.readline().strip().split(",")
        for line in handle:
            parts = line.strip().split(",")
            if not parts or len(parts) < 5:
                continue
            row = dict(zip(header, parts))
            candles.append(
                Candle(
                    timestamp=_parse_timestamp(row["timestamp"]),
                    open=float(row["open"]),
                    high=float(row["high"]),
                    low=float(row["low"]),
                    close=float(row["close"]),
                    volume=float(row["volume"]) if row.get("volume") else 0.0,
                )
            )
    return reindex(candles)


class CsvCandleSource:
    """Reads `{symbol}_{timeframe}.csv` files from a directory."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        path = self.directory / f"{symbol}_{timeframe}.csv"
        if not path.exists():
            raise DataUnavailable(f"No candle file {path.name}")
        candles = load_candles_csv(path)
        if not candles:
            raise DataUnavailable(f"Candle file {path.name} is empty")
        return reindex(candles[-limit:])


def parse_klines(rows: list[list[Any]], now: Optional[datetime] = None) -> list[Candle]:
    """Convert kline rows to candles, dropping the still-forming last candle."""
    cutoff_ms = int(now.timestamp() * 1000) if now else None
    candles: list[Candle] = []
    for row in rows:
        close_time = int(row[6])
        if cutoff_ms is not None and close_time > cutoff_ms:
            continue
        candles.append(
            Candle(
                timestamp=datetime.fromtimestamp(int(row[0]) / 1000, tz=timezone.utc),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
            )
        )
    return reindex(candles)


class BinanceCandleSource:
    def __init__(
        self,
        base_url: str = BINANCE_FUTURES_URL,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "ob-trader/1.0"})

    def _get(self, path: str, params: dict[str, Any]) -> Any:
        try:
            response = self.session.get(f"{self.base_url}{path}", params=params, timeout=REQUEST_TIMEOUT)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientError(f"Candle request failed: {exc}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(f"Candle request returned {response.status_code}")
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise DataUnavailable(f"Candle request rejected: {response.text}") from exc
        return response.json()

    def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> list[Candle]:
        # one extra row covers the forming candle that parse_klines drops
        limit = max(1, min(limit + 1, MAX_KLINE_LIMIT))
        rows = self._get("/fapi/v1/klines", {"symbol": symbol, "interval": timeframe, "limit": limit})
        candles = parse_klines(rows, now=datetime.now(timezone.utc))
        if not candles:
            raise DataUnavailable(f"No candles for {symbol} {timeframe}")
        logger.debug("Fetched %d %s candles for %s", len(candles), timeframe, symbol)
        return candles
