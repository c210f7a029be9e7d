from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from growroom.core.clock import minutes_of_day, to_local, utcnow
from growroom.core.errors import DataUnavailable
from growroom.drivers.base import DeviceGateway
from growroom.models.automation import ConditionOperator, LogicOperator, TIME_PROPERTY

logger = logging.getLogger(__name__)


def _value(enum_or_str: Any) -> str:
    return str(getattr(enum_or_str, "value", enum_or_str))


def parse_hhmm(value: str) -> int:
    h, m = str(value).strip().split(":")
    return int(h) * 60 + int(m)


def in_time_window(now_min: int, start_min: int, end_min: int) -> bool:
    """Inclusive window; end < start wraps midnight: [start, 24:00) U [00:00, end]."""
    if start_min <= end_min:
        return start_min <= now_min <= end_min
    return now_min >= start_min or now_min <= end_min


def compare(operator: str, value: float, threshold: float, upper: Optional[float] = None) -> bool:
    op = _value(operator)
    if op == ConditionOperator.GREATER_THAN.value:
        return value > threshold
    if op == ConditionOperator.LESS_THAN.value:
        return value < threshold
    if op == ConditionOperator.EQUALS.value:
        # exact match, no epsilon
        return value == threshold
    if op == ConditionOperator.NOT_EQUALS.value:
        return value != threshold
    hi = threshold if upper is None else upper
    if op == ConditionOperator.BETWEEN.value:
        return threshold <= value <= hi
    if op == ConditionOperator.OUTSIDE.value:
        return value < threshold or value > hi
    raise ValueError(f"unknown operator {op!r}")


def compare_time(operator: str, now_min: int, start: str, end: Optional[str] = None) -> bool:
    op = _value(operator)
    t = parse_hhmm(start)
    if op == ConditionOperator.BETWEEN.value:
        return in_time_window(now_min, t, parse_hhmm(end or start))
    if op == ConditionOperator.OUTSIDE.value:
        return not in_time_window(now_min, t, parse_hhmm(end or start))
    return compare(op, now_min, t)


@dataclass
class ConditionResult:
    condition_id: Optional[int]
    device_id: Optional[int]
    property: str
    operator: str
    expected_value: Any
    expected_max: Any
    actual_value: Optional[float]
    met: bool
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ConditionSetResult:
    met: bool
    results: List[ConditionResult] = field(default_factory=list)

    def audit(self) -> List[Dict[str, Any]]:
        return [r.as_dict() for r in self.results]


class ConditionEvaluator:
    """
    Decides whether conditions currently hold.

    Reads sensors through the device gateway; never raises for a missing
    reading. A DataUnavailable reading counts as "not met".
    """

    def __init__(self, gateway: DeviceGateway, now: Optional[datetime] = None, tz_name: Optional[str] = None):
        self.gateway = gateway
        self.now = now or utcnow()
        self.tz_name = tz_name

    def evaluate(self, condition: Any) -> ConditionResult:
        op = _value(condition.operator)
        if condition.property == TIME_PROPERTY:
            now_min = minutes_of_day(to_local(self.now, self.tz_name))
            met = compare_time(op, now_min, condition.time_value, condition.time_value_max)
            return ConditionResult(
                condition_id=getattr(condition, "id", None),
                device_id=None,
                property=condition.property,
                operator=op,
                expected_value=condition.time_value,
                expected_max=condition.time_value_max,
                actual_value=float(now_min),
                met=met,
            )

        base = dict(
            condition_id=getattr(condition, "id", None),
            device_id=condition.device_id,
            property=condition.property,
            operator=op,
            expected_value=condition.value,
            expected_max=condition.value_max,
        )
        device = getattr(condition, "device", None)
        if device is None:
            logger.warning("condition %s references a missing device", base["condition_id"])
            return ConditionResult(actual_value=None, met=False, error="device not found", **base)

        try:
            value = self.gateway.get_current_value(device, condition.property)
        except DataUnavailable as e:
            logger.warning(
                "no reading for condition %s: %s",
                base["condition_id"],
                e.message,
                extra={"device_id": condition.device_id},
            )
            return ConditionResult(actual_value=None, met=False, error=e.message, **base)
        except Exception as e:
            logger.exception("sensor read failed for condition %s", base["condition_id"], extra={"device_id": condition.device_id})
            return ConditionResult(actual_value=None, met=False, error=f"{type(e).__name__}: {e}", **base)

        met = compare(op, float(value), float(condition.value), None if condition.value_max is None else float(condition.value_max))
        return ConditionResult(actual_value=float(value), met=met, **base)

    def evaluate_set(self, conditions: Sequence[Any]) -> ConditionSetResult:
        """
        Left-to-right fold. The logic operator stored on condition[i-1]
        joins condition[i]; there is no AND-over-OR precedence.
        """
        ordered = sorted(conditions, key=lambda c: c.order)
        if not ordered:
            return ConditionSetResult(met=True, results=[])

        results = [self.evaluate(c) for c in ordered]
        verdict = results[0].met
        for prev, res in zip(ordered, results[1:]):
            if _value(prev.logic_operator or LogicOperator.AND) == LogicOperator.OR.value:
                verdict = verdict or res.met
            else:
                verdict = verdict and res.met
        return ConditionSetResult(met=verdict, results=results)
