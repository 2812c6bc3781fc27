"""Account-level protection checks run before every entry."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging

from .config import ProtectionConfig
from .models import PositionStatus
from .storage import FileStore, PositionRecord
from .utils.time import ensure_utc, is_weekend_window, utc_day_start

logger = logging.getLogger(__name__)

SEVERE_REASONS = frozenset({"consecutive_losses", "max_drawdown", "daily_loss_limit"})


@dataclass(frozen=True)
class ProtectionStats:
    balance: float
    daily_pnl: float
    consecutive_losses: int
    drawdown_pct: float
    peak: float


@dataclass(frozen=True)
class ProtectionVerdict:
    allowed: bool
    reason: str
    message: str = ""
    stats: ProtectionStats | None = None
    details: dict[str, object] = field(default_factory=dict)

    @property
    def severe(self) -> bool:
        return not self.allowed and self.reason in SEVERE_REASONS


def _block(reason: str, message: str, **details: object) -> ProtectionVerdict:
    return ProtectionVerdict(allowed=False, reason=reason, message=message, details=dict(details))


class AccountProtectionGate:
    def __init__(self, config: ProtectionConfig, store: FileStore) -> None:
        self.config = config
        self.store = store

    def trading_hours_ok(self, now: datetime) -> tuple[bool, str]:
        current = ensure_utc(now)
        if self.config.avoid_weekends and is_weekend_window(current):
            return False, "Weekend trading disabled"
        if current.hour in self.config.blackout_hours:
            return False, f"Blackout hour {current.hour}:00 UTC"
        return True, ""

    def daily_pnl(self, now: datetime) -> float:
        start = utc_day_start(now)
        closed = self.store.query(
            PositionRecord,
            where={"status": PositionStatus.CLOSED},
            predicate=lambda p: p.exit_time is not None and ensure_utc(p.exit_time) >= start,
        )
        return sum(p.pnl or 0.0 for p in closed)

    def consecutive_losses(self) -> int:
        recent = self.store.query(
            PositionRecord,
            where={"status": PositionStatus.CLOSED},
            order_by="exit_time",
            descending=True,
            limit=self.config.lookback_positions,
        )
        streak = 0
        for position in recent:
            if (position.pnl or 0.0) < 0:
                streak += 1
            else:
                break
        return streak

    def update_peak(self, balance: float, now: datetime) -> float:
        state = self.store.load_protection_state()
        if state.account_peak is None or balance > state.account_peak:
            state.account_peak = balance
            state.updated_at = now
            self.store.save_protection_state(state)
        return state.account_peak

    def check(self, balance: float, now: datetime) -> ProtectionVerdict:
        """Return the first failing check, or an allowed verdict with stats."""
        if not self.config.enabled:
            return ProtectionVerdict(allowed=True, reason="protection_disabled")
        try:
            return self._check(balance, now)
        except (OSError, ValueError) as exc:
            logger.error("Protection check failed: %s", exc)
            return _block("protection_error", f"Protection check failed: {exc}")

    def _check(self, balance: float, now: datetime) -> ProtectionVerdict:
        hours_ok, hours_message = self.trading_hours_ok(now)
        if not hours_ok:
            return _block("trading_hours", hours_message)

        daily = self.daily_pnl(now)
        if daily < 0 and balance > 0:
            loss_pct = abs(daily / balance * 100)
            if loss_pct >= self.config.max_daily_loss:
                return _block(
                    "daily_loss_limit",
                    f"Daily loss {loss_pct:.2f}% exceeds limit {self.config.max_daily_loss}%",
                    daily_pnl=daily,
                    loss_pct=loss_pct,
                )

        streak = self.consecutive_losses()
        if streak >= self.config.max_consecutive_losses:
            return _block(
                "consecutive_losses",
                f"{streak} consecutive losses (max {self.config.max_consecutive_losses})",
                consecutive_losses=streak,
            )

        peak = self.update_peak(balance, now)
        drawdown = (peak - balance) / peak * 100 if peak > 0 else 0.0
        if drawdown >= self.config.max_drawdown:
            return _block(
                "max_drawdown",
                f"Drawdown {drawdown:.2f}% exceeds limit {self.config.max_drawdown}%",
                drawdown_pct=drawdown,
                peak=peak,
            )

        state = self.store.load_protection_state()
        if state.cooldown_until is not None:
            until = ensure_utc(state.cooldown_until)
            if ensure_utc(now) < until:
                remaining = (until - ensure_utc(now)) / timedelta(hours=1)
                return _block(
                    "cooldown_active",
                    f"Cooldown active for {remaining:.1f}h ({state.cooldown_reason})",
                    cooldown_until=until.isoformat(),
                )
            state.cooldown_until = None
            state.cooldown_reason = None
            state.updated_at = now
            self.store.save_protection_state(state)

        stats = ProtectionStats(
            balance=balance,
            daily_pnl=daily,
            consecutive_losses=streak,
            drawdown_pct=drawdown,
            peak=peak,
        )
        return ProtectionVerdict(allowed=True, reason="ok", stats=stats)

    def trigger_cooldown(self, reason: str, now: datetime) -> datetime:
        until = ensure_utc(now) + timedelta(hours=self.config.cooldown_hours)
        state = self.store.load_protection_state()
        state.cooldown_until = until
        state.cooldown_reason = reason
        state.triggered_at = now
        state.updated_at = now
        self.store.save_protection_state(state)
        logger.warning("Protection cooldown until %s (%s)", until.isoformat(), reason)
        return until
