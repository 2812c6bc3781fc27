"""Scheduled jobs. Each takes Services and returns a JobOutcome."""

from .atr import run_atr
from .base import JobOutcome, run_job
from .entry import run_entry
from .monitor import run_monitor
from .report import run_weekly_report
from .scan import run_scan

JOBS = {
    "scan": run_scan,
    "entry": run_entry,
    "monitor": run_monitor,
    "atr": run_atr,
    "weekly-report": run_weekly_report,
}

__all__ = [
    "JOBS",
    "JobOutcome",
    "run_atr",
    "run_entry",
    "run_job",
    "run_monitor",
    "run_scan",
    "run_weekly_report",
]
