# cardbridge/scheduler.py
"""
Due-time arithmetic for deliverable schedules.

Only computes *when* an evaluation should run. Nothing here sleeps or
dispatches; `scheduled_for` is advisory metadata for the worker.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo

from cardbridge import settings
from cardbridge.variants import MAX_SCHEDULE_MS, DateOffset, Schedule, parse_duration, parse_hhmm

logger = logging.getLogger("cardbridge.scheduler")


def from_epoch_ms(value: float) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def js_weekday(moment: datetime) -> int:
    """Sunday=0 ... Saturday=6"""
    return (moment.weekday() + 1) % 7


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _event_timestamp(value: Any) -> Optional[datetime]:
    """Event time from a variable, or None when it is missing or unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, datetime):
            return _as_utc(value)
        if isinstance(value, (int, float)):
            return from_epoch_ms(value)
        if isinstance(value, str):
            return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except (ValueError, OverflowError, OSError):
        logger.debug("Unusable event timestamp %r", value)
    return None


def _event_target(date_rule: DateOffset, variables: Optional[Mapping[str, Any]]) -> Optional[datetime]:
    event_at = _event_timestamp((variables or {}).get(date_rule.event_field))
    if event_at is None:
        logger.debug("No event timestamp in '%s', ignoring date condition", date_rule.event_field)
        return None
    try:
        target = event_at - date_rule.offset()
    except (ValueError, OverflowError):
        logger.debug("Date offset out of range for event %s, ignoring date condition", event_at)
        return None
    if target > from_epoch_ms(MAX_SCHEDULE_MS):
        logger.debug("Event target %s too far ahead, ignoring date condition", target)
        return None
    return target


def _next_day_start(candidate: datetime, after: Optional[tuple[int, int]]) -> datetime:
    hour, minute = after or (0, 0)
    return (candidate + timedelta(days=1)).replace(hour=hour, minute=minute, second=0, microsecond=0)


def compute_due_time(
    now: datetime,
    schedule: Schedule | Mapping[str, Any] | None = None,
    variables: Optional[Mapping[str, Any]] = None,
    tz: Optional[str] = None,
) -> datetime:
    now = _as_utc(now)
    if not schedule:
        return now
    if not isinstance(schedule, Schedule):
        schedule = Schedule.model_validate(schedule)

    base = now
    if schedule.at is not None:
        base = max(base, from_epoch_ms(schedule.at))
    if schedule.delay:
        base = base + parse_duration(schedule.delay)

    if schedule.date is not None:
        target = _event_target(schedule.date, variables)
        if target is not None and target > base:
            base = target

    window = schedule.time
    days = set(schedule.day_of_week or [])
    after = parse_hhmm(window.after) if window and window.after else None
    before = parse_hhmm(window.before) if window and window.before else None

    # weekdays only narrow a time-of-day window, never an immediate run
    if after is None and before is None:
        return base

    local = base.astimezone(ZoneInfo(tz or settings.SCHEDULE_TZ))

    if after is not None:
        candidate = local.replace(hour=after[0], minute=after[1], second=0, microsecond=0)
        if candidate <= local:
            candidate = candidate + timedelta(days=1)
        moved = True
    else:
        candidate = local
        moved = False

    # terminates: before > after is enforced on the schedule and days is a
    # non-empty subset of 0-6 whenever it constrains anything
    while True:
        if moved and days and js_weekday(candidate) not in days:
            candidate = _next_day_start(candidate, after)
            continue
        if before is not None and (candidate.hour, candidate.minute) >= before:
            candidate = _next_day_start(candidate, after)
            moved = True
            continue
        return candidate.astimezone(timezone.utc)
