from types import SimpleNamespace

import pytest

from growroom.core.errors import ValidationError
from growroom.services.automation_rules import (
    ConditionTrigger,
    HybridTrigger,
    ScheduledTrigger,
    SpecificTimesSchedule,
    TimeRangeSchedule,
    build_schedule,
    build_trigger,
    validate_actions,
    validate_conditions,
)


def cond(**fields):
    base = dict(
        device_id=1,
        property="temperature",
        operator="GREATER_THAN",
        value=28.0,
        value_max=None,
        time_value=None,
        time_value_max=None,
        logic_operator="AND",
        order=0,
    )
    base.update(fields)
    return SimpleNamespace(**base)


def action(**fields):
    base = dict(device_id=2, action_type="TURN_ON", duration=None, delay_minutes=None, value=None, order=0)
    base.update(fields)
    return SimpleNamespace(**base)


def test_time_range_is_normalized():
    schedule = build_schedule("TIME_RANGE", active_start_time="8:05", active_end_time="20:00", days_of_week=[5, 1, 1])
    assert schedule == TimeRangeSchedule(start="08:05", end="20:00", days_of_week=(1, 5))


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(active_start_time="08:00"),
        dict(active_start_time="25:00", active_end_time="06:00"),
        dict(active_start_time="08:00", active_end_time="8pm"),
    ],
)
def test_time_range_rejects_bad_bounds(kwargs):
    with pytest.raises(ValidationError):
        build_schedule("TIME_RANGE", **kwargs)


def test_interval_needs_positive_minutes():
    with pytest.raises(ValidationError):
        build_schedule("INTERVAL", interval_minutes=0)
    with pytest.raises(ValidationError):
        build_schedule("INTERVAL")


def test_specific_times_sorted_and_deduplicated():
    schedule = build_schedule("SPECIFIC_TIMES", specific_times=["20:00", "8:00", "08:00"])
    assert schedule == SpecificTimesSchedule(times=("08:00", "20:00"))

    with pytest.raises(ValidationError):
        build_schedule("SPECIFIC_TIMES", specific_times=[])


def test_days_of_week_range_is_checked():
    with pytest.raises(ValidationError):
        build_schedule("INTERVAL", interval_minutes=10, days_of_week=[7])


def test_action_duration_must_be_positive():
    with pytest.raises(ValidationError):
        build_schedule("INTERVAL", interval_minutes=10, action_duration=0)


def test_missing_schedule_type_is_rejected():
    with pytest.raises(ValidationError):
        build_schedule(None)


def test_trigger_shapes():
    window = build_schedule("TIME_RANGE", active_start_time="08:00", active_end_time="20:00")
    c = cond()

    assert isinstance(build_trigger("SCHEDULED", window, []), ScheduledTrigger)
    assert build_trigger("SCHEDULED", window, [c]) == ScheduledTrigger(schedule=window)
    assert isinstance(build_trigger("CONDITION", None, [c]), ConditionTrigger)
    assert isinstance(build_trigger("HYBRID", window, [c]), HybridTrigger)

    with pytest.raises(ValidationError):
        build_trigger("SCHEDULED", None, [])
    with pytest.raises(ValidationError):
        build_trigger("CONDITION", window, [c])
    with pytest.raises(ValidationError):
        build_trigger("CONDITION", None, [])
    with pytest.raises(ValidationError):
        build_trigger("HYBRID", window, [])


def test_range_operators_need_value_max():
    with pytest.raises(ValidationError):
        validate_conditions([cond(operator="BETWEEN", value=20.0)])
    with pytest.raises(ValidationError):
        validate_conditions([cond(operator="OUTSIDE", value=25.0, value_max=20.0)])
    with pytest.raises(ValidationError):
        validate_conditions([cond(operator="GREATER_THAN", value=20.0, value_max=25.0)])

    validate_conditions([cond(operator="BETWEEN", value=20.0, value_max=25.0)])


def test_time_conditions_need_hhmm():
    with pytest.raises(ValidationError):
        validate_conditions([cond(property="time", device_id=None, value=None, operator="BETWEEN", time_value="22:00")])

    validate_conditions(
        [cond(property="time", device_id=None, value=None, operator="BETWEEN", time_value="22:00", time_value_max="06:00")]
    )


def test_sensor_conditions_need_a_device():
    with pytest.raises(ValidationError):
        validate_conditions([cond(device_id=None)])


def test_condition_order_must_be_contiguous():
    with pytest.raises(ValidationError):
        validate_conditions([cond(order=0), cond(order=2)])
    with pytest.raises(ValidationError):
        validate_conditions([cond(order=1), cond(order=1)])

    validate_conditions([cond(order=1), cond(order=0)])


def test_actions_are_checked():
    with pytest.raises(ValidationError):
        validate_actions([])
    with pytest.raises(ValidationError):
        validate_actions([action(action_type="EXPLODE")])
    with pytest.raises(ValidationError):
        validate_actions([action(delay_minutes=-1)])
    with pytest.raises(ValidationError):
        validate_actions([action(duration=0)])

    validate_actions([action(order=0), action(order=1, delay_minutes=10, duration=30)])
