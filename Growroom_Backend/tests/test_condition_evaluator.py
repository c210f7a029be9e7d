from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from growroom.services.condition_evaluator import (
    ConditionEvaluator,
    compare,
    compare_time,
    in_time_window,
    parse_hhmm,
)


NOON = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _cond(device, prop, op, value=None, value_max=None, logic="AND", order=0, cid=None, time_value=None, time_value_max=None):
    return SimpleNamespace(
        id=cid,
        device=device,
        device_id=getattr(device, "id", None),
        property=prop,
        operator=op,
        value=value,
        value_max=value_max,
        time_value=time_value,
        time_value_max=time_value_max,
        logic_operator=logic,
        order=order,
    )


@pytest.mark.parametrize(
    "value,expected",
    [(19.99, False), (20.0, True), (22.5, True), (25.0, True), (25.01, False)],
)
def test_between_is_inclusive(value, expected):
    assert compare("BETWEEN", value, 20.0, 25.0) is expected


@pytest.mark.parametrize(
    "value,expected",
    [(19.99, True), (20.0, False), (25.0, False), (25.01, True)],
)
def test_outside_excludes_both_bounds(value, expected):
    assert compare("OUTSIDE", value, 20.0, 25.0) is expected


def test_equals_is_exact():
    assert compare("EQUALS", 21.0, 21.0) is True
    assert compare("EQUALS", 21.0001, 21.0) is False
    assert compare("NOT_EQUALS", 21.0001, 21.0) is True


def test_unknown_operator_is_rejected():
    with pytest.raises(ValueError):
        compare("ROUGHLY", 1.0, 1.0)


def test_time_window_wraps_midnight():
    start, end = parse_hhmm("22:00"), parse_hhmm("06:00")
    assert in_time_window(parse_hhmm("23:30"), start, end)
    assert in_time_window(parse_hhmm("02:00"), start, end)
    assert in_time_window(parse_hhmm("22:00"), start, end)
    assert in_time_window(parse_hhmm("06:00"), start, end)
    assert not in_time_window(parse_hhmm("12:00"), start, end)
    assert not in_time_window(parse_hhmm("06:01"), start, end)


def test_compare_time_outside_and_equals():
    assert compare_time("OUTSIDE", parse_hhmm("12:00"), "22:00", "06:00") is True
    assert compare_time("EQUALS", parse_hhmm("08:00"), "08:00") is True
    assert compare_time("EQUALS", parse_hhmm("08:01"), "08:00") is False
    assert compare_time("GREATER_THAN", parse_hhmm("08:01"), "08:00") is True


def test_time_condition_uses_wall_clock(gateway):
    night = datetime(2026, 3, 2, 23, 30, tzinfo=timezone.utc)
    c = _cond(None, "time", "BETWEEN", time_value="22:00", time_value_max="06:00")

    res = ConditionEvaluator(gateway, now=night, tz_name="UTC").evaluate(c)

    assert res.met is True
    assert res.actual_value == float(23 * 60 + 30)
    assert gateway.dispatched == []


def test_sensor_condition_records_actual_value(gateway):
    sensor = SimpleNamespace(id=1)
    gateway.set_reading(sensor, "temperature", 29.5)

    res = ConditionEvaluator(gateway, now=NOON).evaluate(_cond(sensor, "temperature", "GREATER_THAN", 28.0, cid=7))

    assert res.met is True
    assert res.actual_value == 29.5
    assert res.as_dict()["condition_id"] == 7
    assert res.error is None


def test_unavailable_reading_is_not_met(gateway):
    sensor = SimpleNamespace(id=1)

    res = ConditionEvaluator(gateway, now=NOON).evaluate(_cond(sensor, "humidity", "LESS_THAN", 60.0))

    assert res.met is False
    assert res.actual_value is None
    assert "no reading" in res.error


def test_gateway_crash_is_not_met(gateway):
    sensor = SimpleNamespace(id=1)
    gateway.set_reading(sensor, "co2", RuntimeError("socket closed"))

    res = ConditionEvaluator(gateway, now=NOON).evaluate(_cond(sensor, "co2", "GREATER_THAN", 1200.0))

    assert res.met is False
    assert "RuntimeError" in res.error


def test_missing_device_is_not_met(gateway):
    c = _cond(None, "temperature", "GREATER_THAN", 28.0)
    c.device_id = 99

    res = ConditionEvaluator(gateway, now=NOON).evaluate(c)

    assert res.met is False
    assert res.error == "device not found"


def test_empty_condition_set_holds(gateway):
    result = ConditionEvaluator(gateway, now=NOON).evaluate_set([])
    assert result.met is True
    assert result.audit() == []


def _three(gateway, a, b, c, logic_a, logic_b):
    devices = [SimpleNamespace(id=i) for i in (1, 2, 3)]
    for device, reading in zip(devices, (a, b, c)):
        gateway.set_reading(device, "temperature", 30.0 if reading else 10.0)
    return [
        _cond(devices[0], "temperature", "GREATER_THAN", 20.0, logic=logic_a, order=0),
        _cond(devices[1], "temperature", "GREATER_THAN", 20.0, logic=logic_b, order=1),
        _cond(devices[2], "temperature", "GREATER_THAN", 20.0, order=2),
    ]


def test_fold_joins_with_preceding_operator(gateway):
    # [A(AND), B(OR), C] == (A AND B) OR C
    conditions = _three(gateway, False, True, True, "AND", "OR")
    assert ConditionEvaluator(gateway, now=NOON).evaluate_set(conditions).met is True

    conditions = _three(gateway, True, False, False, "AND", "OR")
    assert ConditionEvaluator(gateway, now=NOON).evaluate_set(conditions).met is False


def test_fold_has_no_and_precedence(gateway):
    # [A(OR), B(AND), C] == (A OR B) AND C, not A OR (B AND C)
    conditions = _three(gateway, True, False, False, "OR", "AND")
    assert ConditionEvaluator(gateway, now=NOON).evaluate_set(conditions).met is False


def test_fold_sorts_by_order_and_audits_every_condition(gateway):
    conditions = _three(gateway, True, True, False, "AND", "AND")
    conditions.reverse()

    result = ConditionEvaluator(gateway, now=NOON).evaluate_set(conditions)

    assert result.met is False
    assert [r["device_id"] for r in result.audit()] == [1, 2, 3]
