from datetime import datetime, timedelta, timezone

import pytest

from growroom.core.clock import as_utc
from growroom.models.automation import AutomationExecution
from growroom.models.scheduled_job import ScheduledJob
from growroom.services.automation_service import AutomationService
from growroom.services.job_processor import JobProcessor
from growroom.services.trigger_dispatcher import TriggerDispatcher


T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def dispatcher(session_factory, gateway, clock):
    return TriggerDispatcher(session_factory, gateway, poll_seconds=60, tz_name="UTC", clock=clock)


@pytest.fixture()
def processor(session_factory, gateway):
    return JobProcessor(session_factory, gateway, worker_id="test-worker")


@pytest.fixture()
def hot(grow_room, gateway):
    gateway.set_reading(grow_room.sensor, "temperature", 35.0)
    return [dict(device_id=grow_room.sensor.id, property="temperature", operator="GREATER_THAN", value=28.0)]


def _jobs(db, automation_id, job_type=None):
    db.expire_all()
    q = db.query(ScheduledJob).filter(ScheduledJob.automation_id == automation_id)
    if job_type:
        q = q.filter(ScheduledJob.type == job_type)
    return q.order_by(ScheduledJob.id.asc()).all()


def _execution(db, automation_id):
    db.expire_all()
    return db.query(AutomationExecution).filter(AutomationExecution.automation_id == automation_id).one()


def test_duration_schedules_reversal(db, dispatcher, processor, gateway, grow_room, make_automation, hot):
    automation = make_automation(
        conditions=hot,
        actions=[dict(device_id=grow_room.extractor.id, action_type="TURN_ON", duration=30)],
    )

    assert dispatcher.evaluate(automation.id).result == "fired"

    (off,) = _jobs(db, automation.id, "DEVICE_OFF")
    assert as_utc(off.run_at) == T0 + timedelta(minutes=30)
    assert off.device_id == grow_room.extractor.id
    execution = _execution(db, automation.id)
    assert execution.status == "COMPLETED"
    assert execution.executed_actions[0]["reversal_job_id"] == off.id

    processor.process_due(T0 + timedelta(minutes=29))
    assert gateway.commands_for(grow_room.extractor) == ["TURN_ON"]

    processor.process_due(T0 + timedelta(minutes=30))
    assert gateway.commands_for(grow_room.extractor) == ["TURN_ON", "TURN_OFF"]
    (off,) = _jobs(db, automation.id, "DEVICE_OFF")
    assert off.status == "COMPLETED"


def test_schedule_action_duration_applies_to_turn_on(db, dispatcher, grow_room, make_automation):
    automation = make_automation(
        trigger_type="SCHEDULED",
        schedule_type="INTERVAL",
        interval_minutes=60,
        action_duration=15,
        actions=[
            dict(device_id=grow_room.pump.id, action_type="TRIGGER_IRRIGATION"),
            dict(device_id=grow_room.sensor.id, action_type="CAPTURE_PHOTO"),
        ],
    )

    assert dispatcher.evaluate(automation.id).result == "fired"

    (off,) = _jobs(db, automation.id, "DEVICE_OFF")
    assert off.device_id == grow_room.pump.id
    assert as_utc(off.run_at) == T0 + timedelta(minutes=15)


def test_delayed_action_runs_from_job(db, dispatcher, processor, gateway, grow_room, make_automation, hot):
    automation = make_automation(
        conditions=hot,
        actions=[
            dict(device_id=grow_room.light.id, action_type="TURN_ON"),
            dict(device_id=grow_room.pump.id, action_type="TRIGGER_IRRIGATION", delay_minutes=10),
        ],
    )

    dispatcher.evaluate(automation.id)

    execution = _execution(db, automation.id)
    assert execution.status == "RUNNING"
    assert [e["status"] for e in execution.executed_actions] == ["SUCCESS", "SCHEDULED"]
    (job,) = _jobs(db, automation.id, "DEVICE_ACTION")
    assert as_utc(job.run_at) == T0 + timedelta(minutes=10)
    assert gateway.commands_for(grow_room.pump) == []

    processor.process_due(T0 + timedelta(minutes=10))

    assert gateway.commands_for(grow_room.pump) == ["TRIGGER_IRRIGATION"]
    execution = _execution(db, automation.id)
    assert execution.status == "COMPLETED"
    assert as_utc(execution.ended_at) == T0 + timedelta(minutes=10)
    assert [e["status"] for e in execution.executed_actions] == ["SUCCESS", "SUCCESS"]
    assert execution.executed_actions[1]["dispatched_at"] == (T0 + timedelta(minutes=10)).isoformat()


def test_actions_dispatch_in_order(dispatcher, gateway, grow_room, make_automation, hot):
    automation = make_automation(
        conditions=hot,
        actions=[
            dict(device_id=grow_room.pump.id, action_type="TRIGGER_IRRIGATION", order=1),
            dict(device_id=grow_room.light.id, action_type="TURN_OFF", order=0),
        ],
    )

    dispatcher.evaluate(automation.id)

    assert [(d, a) for d, a, _ in gateway.dispatched] == [
        (grow_room.light.id, "TURN_OFF"),
        (grow_room.pump.id, "TRIGGER_IRRIGATION"),
    ]


def test_failed_action_does_not_stop_the_rest(db, dispatcher, gateway, grow_room, make_automation, hot):
    gateway.failures[grow_room.light.id] = "device offline"
    automation = make_automation(
        conditions=hot,
        actions=[
            dict(device_id=grow_room.light.id, action_type="TURN_ON", duration=60),
            dict(device_id=grow_room.extractor.id, action_type="TURN_ON"),
        ],
    )

    dispatcher.evaluate(automation.id)

    assert gateway.commands_for(grow_room.extractor) == ["TURN_ON"]
    execution = _execution(db, automation.id)
    assert execution.status == "FAILED"
    assert "device offline" in execution.error_message
    assert [e["success"] for e in execution.executed_actions] == [False, True]
    # no reversal for a command that never landed, no effectiveness check for a failed run
    assert _jobs(db, automation.id) == []


def test_action_value_is_passed_to_gateway(dispatcher, gateway, grow_room, make_automation, hot):
    automation = make_automation(
        conditions=hot,
        actions=[dict(device_id=grow_room.light.id, action_type="TURN_ON", value=75.0)],
    )

    dispatcher.evaluate(automation.id)

    assert gateway.dispatched == [(grow_room.light.id, "TURN_ON", {"value": 75.0})]


def test_pausing_cancels_pending_work(db, dispatcher, processor, gateway, grow_room, make_automation, hot):
    automation = make_automation(
        conditions=hot,
        actions=[
            dict(device_id=grow_room.extractor.id, action_type="TURN_ON", duration=30),
            dict(device_id=grow_room.pump.id, action_type="TRIGGER_IRRIGATION", delay_minutes=10),
        ],
    )
    dispatcher.evaluate(automation.id)

    AutomationService(db, grow_room.user.id, clock=lambda: T0 + timedelta(minutes=1)).set_status(automation.id, "PAUSED")

    assert {j.type: j.status for j in _jobs(db, automation.id)} == {
        "DEVICE_OFF": "CANCELLED",
        "DEVICE_ACTION": "CANCELLED",
    }
    execution = _execution(db, automation.id)
    assert execution.status == "CANCELLED"

    processor.process_due(T0 + timedelta(hours=1))
    assert gateway.commands_for(grow_room.pump) == []
    assert gateway.commands_for(grow_room.extractor) == ["TURN_ON"]


def test_delayed_action_skipped_once_automation_paused(db, dispatcher, processor, gateway, grow_room, make_automation, hot):
    automation = make_automation(
        conditions=hot,
        actions=[dict(device_id=grow_room.pump.id, action_type="TRIGGER_IRRIGATION", delay_minutes=5)],
    )
    dispatcher.evaluate(automation.id)

    # status flipped behind the service's back; the job still sees it
    db.expire_all()
    row = _execution(db, automation.id).automation
    row.status = "DISABLED"
    db.commit()

    processor.process_due(T0 + timedelta(minutes=5))

    assert gateway.commands_for(grow_room.pump) == []
    (job,) = _jobs(db, automation.id, "DEVICE_ACTION")
    assert job.status == "CANCELLED"
    assert _execution(db, automation.id).status == "CANCELLED"
