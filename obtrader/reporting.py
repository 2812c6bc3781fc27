"""Weekly trade statistics from the trade log."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Iterable

from .models import TradeEventType
from .storage import TradeLogEntry
from .utils.time import ensure_utc, utc_day_start


@dataclass(frozen=True)
class TradeStats:
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    breakeven: int = 0
    total_pnl: float = 0.0
    total_fees: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    win_rate: float = 0.0
    profit_factor: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


def previous_week_window(now: datetime) -> tuple[datetime, datetime]:
    """Monday 00:00 to Sunday 23:59:59.999 UTC of the previous week."""
    today = utc_day_start(now)
    this_monday = today - timedelta(days=today.weekday())
    start = this_monday - timedelta(days=7)
    end = this_monday - timedelta(milliseconds=1)
    return start, end


def trade_stats(entries: Iterable[TradeLogEntry]) -> TradeStats:
    closes = [e for e in entries if e.event_type is TradeEventType.CLOSE]
    if not closes:
        return TradeStats()
    pnls = [e.pnl or 0.0 for e in closes]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]
    gross_win = sum(wins)
    gross_loss = abs(sum(losses))
    if gross_loss > 0:
        profit_factor = gross_win / gross_loss
    else:
        profit_factor = float("inf") if gross_win > 0 else 0.0
    return TradeStats(
        total_trades=len(closes),
        wins=len(wins),
        losses=len(losses),
        breakeven=len(pnls) - len(wins) - len(losses),
        total_pnl=sum(pnls),
        total_fees=sum(e.fee for e in closes),
        avg_win=gross_win / len(wins) if wins else 0.0,
        avg_loss=-gross_loss / len(losses) if losses else 0.0,
        largest_win=max(wins) if wins else 0.0,
        largest_loss=min(losses) if losses else 0.0,
        win_rate=len(wins) / len(closes) * 100,
        profit_factor=profit_factor,
    )


def entries_between(entries: Iterable[TradeLogEntry], start: datetime, end: datetime) -> list[TradeLogEntry]:
    return [e for e in entries if start <= ensure_utc(e.timestamp) <= end]


def format_weekly_report(stats: TradeStats, start: datetime, end: datetime) -> str:
    lines = [
        f"Weekly report {start.date().isoformat()} to {end.date().isoformat()}",
        "",
        f"Trades: {stats.total_trades} (W {stats.wins} / L {stats.losses} / BE {stats.breakeven})",
        f"Win rate: {stats.win_rate:.1f}%",
        f"Total PnL: {stats.total_pnl:.2f} USDT",
        f"Fees: {stats.total_fees:.2f} USDT",
        f"Average win: {stats.avg_win:.2f} | Average loss: {stats.avg_loss:.2f}",
        f"Largest win: {stats.largest_win:.2f} | Largest loss: {stats.largest_loss:.2f}",
        f"Profit factor: {stats.profit_factor:.2f}",
    ]
    if stats.total_trades == 0:
        lines.append("No closed trades this week.")
    return "\n".join(lines) + "\n"
