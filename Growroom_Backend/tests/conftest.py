import sys
from pathlib import Path
import os

root = Path(__file__).resolve().parents[1]
if str(root) not in sys.path:
    sys.path.insert(0, str(root))

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("AUTOMATION_TIMEZONE", "UTC")
os.environ.setdefault("AUTOMATION_SCHEDULER_MODE", "off")

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from growroom.core.errors import DataUnavailable
from growroom.db.base import Base
from growroom.drivers.base import DeviceGateway, DispatchResult
from growroom.models.automation import Automation, AutomationAction, AutomationCondition
from growroom.models.location import Device, Room, Section
from growroom.models.user import User

# Monday
T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeGateway(DeviceGateway):
    """Records every command; readings and failures are set per device."""

    def __init__(self):
        self.readings = {}
        self.failures = {}
        self.dispatched = []

    def set_reading(self, device, prop, value):
        self.readings[(device.id, prop)] = value

    def get_current_value(self, device, prop):
        key = (device.id, prop)
        if key not in self.readings:
            raise DataUnavailable(f"device {device.id} has no reading for {prop}")
        value = self.readings[key]
        if isinstance(value, Exception):
            raise value
        return value

    def get_device_online_status(self, device):
        return True

    def dispatch(self, device, action_type, params=None):
        self.dispatched.append((device.id, str(action_type), dict(params or {})))
        error = self.failures.get(device.id)
        if error:
            return DispatchResult(success=False, error=error)
        return DispatchResult(success=True)

    def commands_for(self, device):
        return [action for device_id, action, _ in self.dispatched if device_id == device.id]


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'growroom.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def clock():
    return FrozenClock(T0)


@pytest.fixture()
def grow_room(db):
    user = User(username="grower", email="grower@example.com")
    neighbour = User(username="neighbour", email="neighbour@example.com")
    db.add_all([user, neighbour])
    db.flush()

    room = Room(name="Flower room", user_id=user.id)
    other_room = Room(name="Neighbour room", user_id=neighbour.id)
    db.add_all([room, other_room])
    db.flush()

    tent = Section(name="Tent 1", room_id=room.id)
    veg = Section(name="Veg tent", room_id=room.id)
    foreign = Section(name="Neighbour tent", room_id=other_room.id)
    db.add_all([tent, veg, foreign])
    db.flush()

    sensor = Device(name="Climate sensor", device_type="SENSOR", connector="ESP32", external_id="esp-1", section_id=tent.id)
    extractor = Device(name="Extractor", device_type="EXTRACTOR", connector="TAPO", external_id="tapo-1", section_id=tent.id)
    light = Device(name="LED panel", device_type="LIGHT", connector="SONOFF", external_id="sonoff-1", section_id=tent.id)
    pump = Device(name="Drip pump", device_type="IRRIGATION", connector="TUYA", external_id="tuya-1", section_id=tent.id)
    stray = Device(name="Veg light", device_type="LIGHT", connector="SONOFF", external_id="sonoff-2", section_id=veg.id)
    db.add_all([sensor, extractor, light, pump, stray])
    db.commit()

    return SimpleNamespace(
        user=user,
        neighbour=neighbour,
        section=tent,
        other_section=veg,
        foreign_section=foreign,
        sensor=sensor,
        extractor=extractor,
        light=light,
        pump=pump,
        stray=stray,
    )


@pytest.fixture()
def make_automation(db, grow_room):
    """Persist an automation straight through the ORM, bypassing validation."""

    def _make(conditions=(), actions=(), **fields):
        fields.setdefault("name", "automation")
        fields.setdefault("section_id", grow_room.section.id)
        fields.setdefault("status", "ACTIVE")
        fields.setdefault("trigger_type", "CONDITION")
        fields.setdefault("created_at", datetime(2026, 1, 1, tzinfo=timezone.utc))
        automation = Automation(**fields)
        automation.conditions = [
            AutomationCondition(**{"order": idx, "logic_operator": "AND", **c}) for idx, c in enumerate(conditions)
        ]
        automation.actions = [AutomationAction(**{"order": idx, **a}) for idx, a in enumerate(actions)]
        db.add(automation)
        db.commit()
        db.refresh(automation)
        return automation

    return _make
