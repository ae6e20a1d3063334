"""Next-run computation for scheduled tasks."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from nanoclaw.errors import ScheduleError
from nanoclaw.models import ScheduleType


def _zone(tz: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ScheduleError(f"Unknown timezone: {tz!r}") from exc


def _cron_trigger(value: str, tz: str) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(value, timezone=_zone(tz))
    except ValueError as exc:
        raise ScheduleError(f"Invalid cron expression {value!r}: {exc}") from exc


def _interval(value: str) -> timedelta:
    try:
        seconds = int(value)
    except ValueError as exc:
        raise ScheduleError(f"Invalid interval {value!r}: expected whole seconds") from exc
    if seconds <= 0:
        raise ScheduleError(f"Invalid interval {value!r}: must be positive")
    return timedelta(seconds=seconds)


def _once(value: str, tz: str) -> datetime:
    try:
        when = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ScheduleError(f"Invalid timestamp {value!r}") from exc
    if when.tzinfo is None:
        when = when.replace(tzinfo=_zone(tz))
    return when.astimezone(timezone.utc)


def _next_cron(value: str, now: datetime, tz: str) -> datetime:
    trigger = _cron_trigger(value, tz)
    # Fire times are whole seconds; nudging past ``now`` keeps the result strictly later.
    fire = trigger.get_next_fire_time(None, now + timedelta(microseconds=1))
    if fire is None:
        raise ScheduleError(f"Cron expression {value!r} never fires")
    return fire.astimezone(timezone.utc)


def validate(schedule_type: ScheduleType, value: str, tz: str = "UTC") -> None:
    """Raise ScheduleError if ``value`` is not valid for ``schedule_type``."""

    if schedule_type is ScheduleType.CRON:
        _cron_trigger(value, tz)
    elif schedule_type is ScheduleType.INTERVAL:
        _interval(value)
    else:
        _once(value, tz)


def initial_next_run(schedule_type: ScheduleType, value: str, now: datetime, tz: str = "UTC") -> datetime:
    """First run time of a newly created task."""

    if schedule_type is ScheduleType.CRON:
        return _next_cron(value, now, tz)
    if schedule_type is ScheduleType.INTERVAL:
        return now.astimezone(timezone.utc) + _interval(value)
    return _once(value, tz)


def next_run_after(schedule_type: ScheduleType, value: str, now: datetime, tz: str = "UTC") -> datetime | None:
    """Run time following a run at ``now``; None once a ``once`` task has run."""

    if schedule_type is ScheduleType.ONCE:
        return None
    return initial_next_run(schedule_type, value, now, tz)
