"""Digest delivery schedule arithmetic (UTC)."""

from datetime import datetime, time, timedelta

from mailflow.core.timeutil import ensure_utc, utc_now
from mailflow.db.store import DigestSchedule


def parse_time_of_day(value: str) -> time:
    """Parse "HH:MM" into a time.

    Raises:
        ValueError: If the value is not a valid 24-hour time
    """
    hours, _, minutes = value.strip().partition(":")
    return time(hour=int(hours), minute=int(minutes or 0))


def calculate_next_occurrence(schedule: DigestSchedule, now: datetime | None = None) -> datetime:
    """Next delivery time strictly after `now`.

    Delivery happens at `time_of_day` every `interval_days` days. If today's
    slot is still ahead it is used; otherwise the slot `interval_days` later.
    """
    now = ensure_utc(now) if now else utc_now()
    slot = parse_time_of_day(schedule.time_of_day)
    candidate = now.replace(
        hour=slot.hour, minute=slot.minute, second=0, microsecond=0
    )
    interval = timedelta(days=max(schedule.interval_days, 1))
    while candidate <= now:
        candidate += interval
    return candidate
