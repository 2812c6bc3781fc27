"""Weekly report job."""
from __future__ import annotations

from obtrader.models import TradeEventType
from obtrader.reporting import entries_between, format_weekly_report, previous_week_window, trade_stats
from obtrader.services import Services
from obtrader.storage import TradeLogEntry

from .base import JobOutcome, safe_notify


def run_weekly_report(services: Services) -> JobOutcome:
    if not services.config.email.enabled:
        return JobOutcome(job="weekly_report", success=True, action="skipped", reason="email_disabled")
    start, end = previous_week_window(services.clock())
    closes = services.store.query(TradeLogEntry, where={"event_type": TradeEventType.CLOSE})
    stats = trade_stats(entries_between(closes, start, end))
    body = format_weekly_report(stats, start, end)
    safe_notify(
        services,
        "weekly_report",
        {"start": start.date().isoformat(), "end": end.date().isoformat(), "body": body},
    )
    return JobOutcome(
        job="weekly_report",
        success=True,
        action="report_sent",
        details={"start": start.isoformat(), "end": end.isoformat(), **stats.to_dict()},
    )
