"""Job outcome type and the error boundary every job runs inside."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Callable

from obtrader.errors import BotError
from obtrader.logging_utils import append_jsonl
from obtrader.services import Services

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobOutcome:
    job: str
    success: bool
    action: str
    reason: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def safe_notify(services: Services, kind: str, payload: dict[str, Any]) -> None:
    try:
        services.notifier.notify(kind, payload)
    except Exception:  # noqa: BLE001 - notifications must never abort a job
        logger.exception("Notifier raised for %s", kind)


def run_job(name: str, services: Services, fn: Callable[[Services], JobOutcome]) -> JobOutcome:
    """Run a job, converting any exception into a failed outcome and journaling the result."""
    started = datetime.now(timezone.utc)
    try:
        outcome = fn(services)
    except BotError as exc:
        logger.error("%s failed: %s", name, exc.message)
        outcome = JobOutcome(
            job=name,
            success=False,
            action="error",
            reason=type(exc).__name__,
            details=exc.details,
            error=exc.message,
        )
    except Exception as exc:  # noqa: BLE001 - job boundary
        logger.exception("%s crashed", name)
        outcome = JobOutcome(job=name, success=False, action="error", reason=type(exc).__name__, error=str(exc))
    try:
        append_jsonl(
            services.config.data_dir / "job_runs.jsonl",
            {"started_utc": started.isoformat(), **outcome.to_dict()},
        )
    except OSError:
        logger.exception("Could not journal %s outcome", name)
    logger.info("%s -> %s (%s)", name, outcome.action, outcome.reason or "ok")
    return outcome
