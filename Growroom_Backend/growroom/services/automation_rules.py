"""
Structural rules for automation definitions.

The persisted row is flat (trigger_type + schedule_type + nullable schedule
fields). The engine works on the tagged shapes below instead, so every
"required iff" rule is checked once, here, and nowhere else.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union

from growroom.core.errors import ValidationError
from growroom.models.automation import (
    ActionType,
    ConditionOperator,
    LogicOperator,
    ScheduleType,
    TIME_PROPERTY,
    TriggerType,
)

HHMM_RE = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")

RANGE_OPERATORS = (ConditionOperator.BETWEEN.value, ConditionOperator.OUTSIDE.value)


def is_hhmm(value: Any) -> bool:
    return isinstance(value, str) and bool(HHMM_RE.match(value.strip()))


def normalize_hhmm(value: str) -> str:
    h, m = value.strip().split(":")
    return f"{int(h):02d}:{int(m):02d}"


@dataclass(frozen=True)
class TimeRangeSchedule:
    start: str
    end: str
    days_of_week: Tuple[int, ...] = ()
    action_duration: Optional[int] = None


@dataclass(frozen=True)
class IntervalSchedule:
    interval_minutes: int
    days_of_week: Tuple[int, ...] = ()
    action_duration: Optional[int] = None


@dataclass(frozen=True)
class SpecificTimesSchedule:
    times: Tuple[str, ...]
    days_of_week: Tuple[int, ...] = ()
    action_duration: Optional[int] = None


ScheduleConfig = Union[TimeRangeSchedule, IntervalSchedule, SpecificTimesSchedule]


@dataclass(frozen=True)
class ScheduledTrigger:
    schedule: ScheduleConfig


@dataclass(frozen=True)
class ConditionTrigger:
    conditions: Tuple[Any, ...]


@dataclass(frozen=True)
class HybridTrigger:
    schedule: ScheduleConfig
    conditions: Tuple[Any, ...]


Trigger = Union[ScheduledTrigger, ConditionTrigger, HybridTrigger]


def _enum_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(getattr(value, "value", value))


def _days(values: Optional[Iterable[Any]]) -> Tuple[int, ...]:
    out: List[int] = []
    for v in values or []:
        try:
            d = int(v)
        except (TypeError, ValueError):
            raise ValidationError(f"days_of_week entries must be integers 0-6, got {v!r}")
        if d < 0 or d > 6:
            raise ValidationError(f"days_of_week entries must be 0-6, got {d}")
        if d not in out:
            out.append(d)
    return tuple(sorted(out))


def build_schedule(
    schedule_type: Any,
    *,
    active_start_time: Optional[str] = None,
    active_end_time: Optional[str] = None,
    interval_minutes: Optional[int] = None,
    specific_times: Optional[Sequence[str]] = None,
    action_duration: Optional[int] = None,
    days_of_week: Optional[Iterable[Any]] = None,
) -> ScheduleConfig:
    st = _enum_value(schedule_type)
    if st is None:
        raise ValidationError("schedule_type is required for SCHEDULED and HYBRID automations")
    if action_duration is not None and int(action_duration) < 1:
        raise ValidationError("action_duration must be at least 1 minute")
    days = _days(days_of_week)
    duration = int(action_duration) if action_duration is not None else None

    if st == ScheduleType.TIME_RANGE.value:
        if not active_start_time or not active_end_time:
            raise ValidationError("TIME_RANGE requires active_start_time and active_end_time")
        for label, v in (("active_start_time", active_start_time), ("active_end_time", active_end_time)):
            if not is_hhmm(v):
                raise ValidationError(f"{label} must be HH:MM, got {v!r}")
        return TimeRangeSchedule(
            start=normalize_hhmm(active_start_time),
            end=normalize_hhmm(active_end_time),
            days_of_week=days,
            action_duration=duration,
        )

    if st == ScheduleType.INTERVAL.value:
        if interval_minutes is None or int(interval_minutes) < 1:
            raise ValidationError("INTERVAL requires interval_minutes >= 1")
        return IntervalSchedule(interval_minutes=int(interval_minutes), days_of_week=days, action_duration=duration)

    if st == ScheduleType.SPECIFIC_TIMES.value:
        times = [t for t in (specific_times or []) if str(t or "").strip()]
        if not times:
            raise ValidationError("SPECIFIC_TIMES requires at least one time")
        bad = [t for t in times if not is_hhmm(t)]
        if bad:
            raise ValidationError(f"specific_times must be HH:MM, got {bad}")
        normalized = sorted({normalize_hhmm(t) for t in times})
        return SpecificTimesSchedule(times=tuple(normalized), days_of_week=days, action_duration=duration)

    raise ValidationError(f"unknown schedule_type {st!r}")


def validate_conditions(conditions: Sequence[Any]) -> None:
    """Checks operator/value shape and contiguous zero-based order."""
    orders = []
    for idx, c in enumerate(conditions):
        prop = str(getattr(c, "property", "") or "").strip()
        op = _enum_value(getattr(c, "operator", None))
        logic = _enum_value(getattr(c, "logic_operator", None)) or LogicOperator.AND.value
        if not prop:
            raise ValidationError(f"condition {idx}: property is required")
        if op not in {o.value for o in ConditionOperator}:
            raise ValidationError(f"condition {idx}: unknown operator {op!r}")
        if logic not in {o.value for o in LogicOperator}:
            raise ValidationError(f"condition {idx}: logic_operator must be AND or OR")

        if prop == TIME_PROPERTY:
            tv = getattr(c, "time_value", None)
            tv_max = getattr(c, "time_value_max", None)
            if not is_hhmm(tv):
                raise ValidationError(f"condition {idx}: time conditions need time_value HH:MM")
            if op in RANGE_OPERATORS:
                if not is_hhmm(tv_max):
                    raise ValidationError(f"condition {idx}: {op} needs time_value_max HH:MM")
            elif tv_max is not None:
                raise ValidationError(f"condition {idx}: time_value_max is only valid for BETWEEN/OUTSIDE")
            if getattr(c, "value_max", None) is not None:
                raise ValidationError(f"condition {idx}: value_max is not used by time conditions")
        else:
            if getattr(c, "device_id", None) is None:
                raise ValidationError(f"condition {idx}: device_id is required for {prop} conditions")
            value = getattr(c, "value", None)
            value_max = getattr(c, "value_max", None)
            if value is None:
                raise ValidationError(f"condition {idx}: value is required")
            if op in RANGE_OPERATORS:
                if value_max is None:
                    raise ValidationError(f"condition {idx}: {op} requires value_max")
                if float(value_max) < float(value):
                    raise ValidationError(f"condition {idx}: value_max must be >= value")
            elif value_max is not None:
                raise ValidationError(f"condition {idx}: value_max is only valid for BETWEEN/OUTSIDE")

        orders.append(getattr(c, "order", idx))

    _check_contiguous(orders, "condition")


def validate_actions(actions: Sequence[Any]) -> None:
    if not actions:
        raise ValidationError("at least one action is required")
    orders = []
    valid_types = {a.value for a in ActionType}
    for idx, a in enumerate(actions):
        at = _enum_value(getattr(a, "action_type", None))
        if at not in valid_types:
            raise ValidationError(f"action {idx}: unknown action_type {at!r}")
        if getattr(a, "device_id", None) is None:
            raise ValidationError(f"action {idx}: device_id is required")
        duration = getattr(a, "duration", None)
        if duration is not None and int(duration) < 1:
            raise ValidationError(f"action {idx}: duration must be at least 1 minute")
        delay = getattr(a, "delay_minutes", None)
        if delay is not None and int(delay) < 0:
            raise ValidationError(f"action {idx}: delay_minutes cannot be negative")
        orders.append(getattr(a, "order", idx))
    _check_contiguous(orders, "action")


def _check_contiguous(orders: Sequence[Optional[int]], label: str) -> None:
    resolved = [idx if o is None else int(o) for idx, o in enumerate(orders)]
    if sorted(resolved) != list(range(len(resolved))):
        raise ValidationError(f"{label} order values must be unique and contiguous from 0, got {resolved}")


def build_trigger(
    trigger_type: Any,
    schedule: Optional[ScheduleConfig],
    conditions: Sequence[Any],
) -> Trigger:
    tt = _enum_value(trigger_type) or TriggerType.CONDITION.value
    if tt == TriggerType.SCHEDULED.value:
        if schedule is None:
            raise ValidationError("SCHEDULED automations require a schedule")
        # only the schedule decides; stored conditions are kept but never evaluated
        return ScheduledTrigger(schedule=schedule)
    if tt == TriggerType.CONDITION.value:
        if schedule is not None:
            raise ValidationError("CONDITION automations take no schedule; use HYBRID")
        if not conditions:
            raise ValidationError("CONDITION automations require at least one condition")
        return ConditionTrigger(conditions=tuple(conditions))
    if tt == TriggerType.HYBRID.value:
        if schedule is None:
            raise ValidationError("HYBRID automations require a schedule")
        if not conditions:
            raise ValidationError("HYBRID automations require at least one condition")
        return HybridTrigger(schedule=schedule, conditions=tuple(conditions))
    raise ValidationError(f"unknown trigger_type {tt!r}")


def schedule_from_automation(automation: Any) -> Optional[ScheduleConfig]:
    if getattr(automation, "schedule_type", None) is None:
        return None
    return build_schedule(
        automation.schedule_type,
        active_start_time=automation.active_start_time,
        active_end_time=automation.active_end_time,
        interval_minutes=automation.interval_minutes,
        specific_times=automation.specific_times,
        action_duration=automation.action_duration,
        days_of_week=automation.days_of_week,
    )


def trigger_from_automation(automation: Any) -> Trigger:
    conditions = sorted(list(automation.conditions or []), key=lambda c: c.order)
    return build_trigger(automation.trigger_type, schedule_from_automation(automation), conditions)
