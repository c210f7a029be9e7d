# Import every model so Base.metadata knows all tables before create_all
from growroom.db.session import Base  # noqa: F401
from growroom.models.user import User  # noqa: F401
from growroom.models.location import Room, Section, Device  # noqa: F401
from growroom.models.automation import (  # noqa: F401
    Automation,
    AutomationCondition,
    AutomationAction,
    AutomationExecution,
    EffectivenessCheck,
)
from growroom.models.scheduled_job import ScheduledJob  # noqa: F401
from growroom.models.settings import SystemSetting  # noqa: F401
