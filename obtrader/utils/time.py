from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_day_start(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_weekend_window(moment: datetime) -> bool:
    """Friday from 22:00 UTC through Sunday."""
    current = ensure_utc(moment)
    weekday = current.weekday()
    if weekday == 4 and current.hour >= 22:
        return True
    return weekday in (5, 6)


def age_hours(moment: datetime, now: datetime) -> float:
    return (ensure_utc(now) - ensure_utc(moment)) / timedelta(hours=1)
