import pytest

from growroom.drivers.manager import GatewayManager
from growroom.tasks import automation as automation_tasks


@pytest.fixture()
def worker(monkeypatch, session_factory, gateway):
    monkeypatch.setattr(automation_tasks, "SessionLocal", session_factory)
    monkeypatch.setattr(automation_tasks, "_processor", None)
    GatewayManager.set_gateway(gateway)
    try:
        yield
    finally:
        GatewayManager.set_gateway(None)


def test_evaluate_automations_task_fires_due_rules(worker, gateway, grow_room, make_automation):
    gateway.set_reading(grow_room.sensor, "temperature", 33.0)
    make_automation(
        conditions=[dict(device_id=grow_room.sensor.id, property="temperature", operator="GREATER_THAN", value=28.0)],
        actions=[dict(device_id=grow_room.extractor.id, action_type="TURN_ON", duration=1)],
    )
    make_automation(name="paused", status="PAUSED", actions=[dict(device_id=grow_room.light.id, action_type="TURN_ON")])

    res = automation_tasks.evaluate_automations()

    assert res == {"evaluated": 1, "fired": 1}
    assert gateway.commands_for(grow_room.extractor) == ["TURN_ON"]
    assert gateway.commands_for(grow_room.light) == []


def test_process_scheduled_jobs_task_with_nothing_due(worker):
    assert automation_tasks.process_scheduled_jobs() == {"processed": 0}


def test_cleanup_task_reports_deleted(worker):
    assert automation_tasks.cleanup_old_jobs() == {"deleted": 0}
