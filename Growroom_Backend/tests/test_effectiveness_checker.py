from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from growroom.core.clock import as_utc
from growroom.models.automation import AutomationCondition, AutomationExecution
from growroom.models.scheduled_job import ScheduledJob
from growroom.models.settings import SystemSetting
from growroom.services.effectiveness_checker import (
    DELAY_SETTING_KEY,
    EffectivenessChecker,
    check_delay_minutes,
    device_conditions,
    goal_reached,
)


T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _condition(op, value, value_max=None):
    return SimpleNamespace(operator=op, value=value, value_max=value_max)


def test_goal_is_the_condition_no_longer_holding():
    assert goal_reached(_condition("GREATER_THAN", 28.0), 26.0) == (True, 28.0)
    assert goal_reached(_condition("GREATER_THAN", 28.0), 29.0) == (False, 28.0)
    assert goal_reached(_condition("LESS_THAN", 40.0), 45.0) == (True, 40.0)


def test_equals_goal_is_holding_the_value():
    assert goal_reached(_condition("EQUALS", 1.0), 1.0) == (True, 1.0)
    assert goal_reached(_condition("EQUALS", 1.0), 0.0) == (False, 1.0)
    assert goal_reached(_condition("NOT_EQUALS", 1.0), 1.0) == (True, 1.0)


def test_outside_targets_the_middle_of_the_band():
    assert goal_reached(_condition("OUTSIDE", 20.0, 25.0), 22.0) == (True, 22.5)
    assert goal_reached(_condition("OUTSIDE", 20.0, 25.0), 26.0) == (False, 22.5)


def test_time_conditions_are_not_checked():
    automation = SimpleNamespace(
        conditions=[
            AutomationCondition(device_id=1, property="temperature", operator="GREATER_THAN", value=28.0),
            AutomationCondition(property="time", operator="BETWEEN", time_value="08:00", time_value_max="20:00"),
        ]
    )

    (condition,) = device_conditions(automation)

    assert condition.is_time_based is False
    assert automation.conditions[1].is_time_based is True


def test_delay_comes_from_setting_then_config(db):
    assert check_delay_minutes(db) == 15

    db.add(SystemSetting(key=DELAY_SETTING_KEY, value="5"))
    db.commit()
    assert check_delay_minutes(db) == 5

    db.query(SystemSetting).filter(SystemSetting.key == DELAY_SETTING_KEY).update({SystemSetting.value: "soon"})
    db.commit()
    assert check_delay_minutes(db) == 15


@pytest.fixture()
def completed_run(db, grow_room, make_automation):
    automation = make_automation(
        conditions=[dict(device_id=grow_room.sensor.id, property="temperature", operator="GREATER_THAN", value=28.0)],
        actions=[dict(device_id=grow_room.extractor.id, action_type="TURN_ON")],
    )
    execution = AutomationExecution(automation_id=automation.id, status="COMPLETED", started_at=T0, ended_at=T0)
    db.add(execution)
    db.commit()
    return automation, execution


def test_check_scheduled_after_completed_execution(db, gateway, completed_run):
    automation, execution = completed_run

    job = EffectivenessChecker(db, gateway).schedule_for(execution, automation)
    db.commit()

    assert job.type == "EFFECTIVENESS_CHECK"
    assert job.max_attempts == 1
    assert as_utc(job.run_at) == T0 + timedelta(minutes=15)


def test_no_check_for_failed_or_schedule_only_runs(db, gateway, grow_room, make_automation, completed_run):
    automation, execution = completed_run
    execution.status = "FAILED"
    db.commit()
    assert EffectivenessChecker(db, gateway).schedule_for(execution, automation) is None

    lights = make_automation(
        name="Lights",
        trigger_type="SCHEDULED",
        schedule_type="INTERVAL",
        interval_minutes=60,
        actions=[dict(device_id=grow_room.light.id, action_type="TURN_ON")],
    )
    done = AutomationExecution(automation_id=lights.id, status="COMPLETED", started_at=T0, ended_at=T0)
    db.add(done)
    db.commit()
    assert EffectivenessChecker(db, gateway).schedule_for(done, lights) is None
    assert db.query(ScheduledJob).count() == 0


def test_run_check_records_goal_met(db, gateway, grow_room, completed_run):
    _, execution = completed_run
    gateway.set_reading(grow_room.sensor, "temperature", 26.5)

    (check,) = EffectivenessChecker(db, gateway).run_check(execution.id, now=T0 + timedelta(minutes=15))
    db.commit()

    assert check.condition_met is True
    assert check.value_at_check == 26.5
    assert check.target_value == 28.0
    assert as_utc(check.checked_at) == T0 + timedelta(minutes=15)


def test_run_check_records_unavailable_reading(db, gateway, completed_run):
    _, execution = completed_run

    (check,) = EffectivenessChecker(db, gateway).run_check(execution.id, now=T0)
    db.commit()

    assert check.condition_met is False
    assert check.value_at_check is None
    assert check.notes.startswith("Error checking device")


def test_run_check_skipped_when_automation_paused(db, gateway, grow_room, completed_run):
    automation, execution = completed_run
    automation.status = "PAUSED"
    db.commit()
    gateway.set_reading(grow_room.sensor, "temperature", 26.5)

    assert EffectivenessChecker(db, gateway).run_check(execution.id, now=T0) == []
