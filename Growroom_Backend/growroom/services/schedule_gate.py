"""
Time gate for SCHEDULED and HYBRID automations.

All wall-clock comparisons happen in the configured automation timezone;
timestamps stored in the database are UTC.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from growroom.core import config
from growroom.core.clock import as_utc, minutes_of_day, to_local, utcnow, weekday_sunday_first
from growroom.models.automation import ScheduleType, TriggerType
from growroom.services.automation_rules import (
    ConditionTrigger,
    HybridTrigger,
    IntervalSchedule,
    ScheduleConfig,
    ScheduledTrigger,
    SpecificTimesSchedule,
    TimeRangeSchedule,
    Trigger,
)
from growroom.services.condition_evaluator import in_time_window, parse_hhmm


@dataclass(frozen=True)
class ScheduleDecision:
    # inside the window / day filter passes
    active: bool
    # this tick is a firing tick for the schedule
    due: bool
    # first tick after a TIME_RANGE occurrence ended
    window_closed: bool = False
    slot: Optional[datetime] = None


def _day_allowed(schedule: ScheduleConfig, local: datetime) -> bool:
    if not schedule.days_of_week:
        return True
    return weekday_sunday_first(local) in schedule.days_of_week


def _window_start(schedule: TimeRangeSchedule, local: datetime) -> Optional[datetime]:
    """Start of the window occurrence containing `local`, or None when outside."""
    start = parse_hhmm(schedule.start)
    end = parse_hhmm(schedule.end)
    now_min = minutes_of_day(local)
    if not in_time_window(now_min, start, end):
        return None
    day = local.date()
    if start > end and now_min <= end:
        # after-midnight half of a wrapping window began yesterday
        day = day - timedelta(days=1)
    opened = datetime(day.year, day.month, day.day, start // 60, start % 60, tzinfo=local.tzinfo)
    if schedule.days_of_week and weekday_sunday_first(opened) not in schedule.days_of_week:
        return None
    return opened


def _time_range(schedule: TimeRangeSchedule, now: datetime, last: Optional[datetime], tz_name: Optional[str]) -> ScheduleDecision:
    local = to_local(now, tz_name)
    current = _window_start(schedule, local)
    previous = _window_start(schedule, to_local(last, tz_name)) if last is not None else None

    if current is None:
        return ScheduleDecision(active=False, due=False, window_closed=previous is not None)
    return ScheduleDecision(
        active=True,
        due=previous != current,
        window_closed=previous is not None and previous != current,
        slot=current,
    )


def _interval(
    schedule: IntervalSchedule,
    now: datetime,
    last: Optional[datetime],
    created: Optional[datetime],
    poll_seconds: int,
    tz_name: Optional[str],
) -> ScheduleDecision:
    if not _day_allowed(schedule, to_local(now, tz_name)):
        return ScheduleDecision(active=False, due=False)
    reference = last or created
    if reference is None:
        return ScheduleDecision(active=True, due=True)
    # half a poll of slack so beat jitter does not push every run one poll late
    elapsed = (now - reference).total_seconds() + poll_seconds / 2.0
    return ScheduleDecision(active=True, due=elapsed >= schedule.interval_minutes * 60)


def _specific_times(
    schedule: SpecificTimesSchedule,
    now: datetime,
    last: Optional[datetime],
    poll_seconds: int,
    tz_name: Optional[str],
) -> ScheduleDecision:
    local = to_local(now, tz_name)
    tolerance = timedelta(seconds=poll_seconds)
    # yesterday's slots matter when a late slot's tolerance crosses midnight
    for day in (local.date(), local.date() - timedelta(days=1)):
        for hhmm in schedule.times:
            minute = parse_hhmm(hhmm)
            slot = datetime(day.year, day.month, day.day, minute // 60, minute % 60, tzinfo=local.tzinfo)
            if not (slot <= local < slot + tolerance):
                continue
            if schedule.days_of_week and weekday_sunday_first(slot) not in schedule.days_of_week:
                continue
            if last is not None and last >= slot:
                # slot already consumed
                continue
            return ScheduleDecision(active=True, due=True, slot=slot)
    return ScheduleDecision(active=False, due=False)


def evaluate_schedule(
    schedule: ScheduleConfig,
    now: datetime,
    last_evaluated_at: Optional[datetime] = None,
    created_at: Optional[datetime] = None,
    poll_seconds: Optional[int] = None,
    tz_name: Optional[str] = None,
) -> ScheduleDecision:
    now = as_utc(now)
    last = as_utc(last_evaluated_at)
    created = as_utc(created_at)
    poll = int(poll_seconds or config.AUTOMATION_POLL_SECONDS)

    if isinstance(schedule, TimeRangeSchedule):
        return _time_range(schedule, now, last, tz_name)
    if isinstance(schedule, IntervalSchedule):
        return _interval(schedule, now, last, created, poll, tz_name)
    if isinstance(schedule, SpecificTimesSchedule):
        return _specific_times(schedule, now, last, poll, tz_name)
    raise TypeError(f"unsupported schedule {type(schedule).__name__}")


def gate_allows(trigger: Trigger, decision: Optional[ScheduleDecision]) -> bool:
    """
    SCHEDULED fires on due ticks only. HYBRID needs the window to be open
    (TIME_RANGE) or the tick to be due (INTERVAL / SPECIFIC_TIMES).
    CONDITION has no schedule component.
    """
    if isinstance(trigger, ConditionTrigger):
        return True
    if decision is None:
        return False
    if isinstance(trigger, ScheduledTrigger):
        return decision.due
    if isinstance(trigger, HybridTrigger):
        if isinstance(trigger.schedule, TimeRangeSchedule):
            return decision.active
        return decision.due
    return False


def cadence_seconds(automation: Any, poll_seconds: Optional[int] = None) -> int:
    """How often the dispatcher should look at this automation."""
    poll = int(poll_seconds or config.AUTOMATION_POLL_SECONDS)
    trigger_type = automation.trigger_type
    schedule_type = automation.schedule_type

    if schedule_type == ScheduleType.INTERVAL.value and trigger_type != TriggerType.CONDITION.value:
        return max(poll, int(automation.interval_minutes or 1) * 60)
    if trigger_type == TriggerType.CONDITION.value or (
        trigger_type == TriggerType.HYBRID.value and schedule_type == ScheduleType.TIME_RANGE.value
    ):
        return max(poll, int(automation.interval or 5) * 60)
    return poll


def next_evaluation_at(automation: Any, poll_seconds: Optional[int] = None) -> datetime:
    last = as_utc(automation.last_evaluated_at)
    created = as_utc(automation.created_at) or utcnow()
    if last is None:
        if automation.schedule_type == ScheduleType.INTERVAL.value and automation.trigger_type != TriggerType.CONDITION.value:
            return created + timedelta(minutes=int(automation.interval_minutes or 1))
        return created
    return last + timedelta(seconds=cadence_seconds(automation, poll_seconds))
