import builtins
import enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, ForeignKey, Text, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from growroom.db.session import Base


class AutomationStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    DISABLED = "DISABLED"
    PENDING_APPROVAL = "PENDING_APPROVAL"


class TriggerType(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    CONDITION = "CONDITION"
    HYBRID = "HYBRID"


class ScheduleType(str, enum.Enum):
    TIME_RANGE = "TIME_RANGE"
    INTERVAL = "INTERVAL"
    SPECIFIC_TIMES = "SPECIFIC_TIMES"


class ConditionOperator(str, enum.Enum):
    GREATER_THAN = "GREATER_THAN"
    LESS_THAN = "LESS_THAN"
    EQUALS = "EQUALS"
    NOT_EQUALS = "NOT_EQUALS"
    BETWEEN = "BETWEEN"
    OUTSIDE = "OUTSIDE"


class LogicOperator(str, enum.Enum):
    AND = "AND"
    OR = "OR"


class ActionType(str, enum.Enum):
    TURN_ON = "TURN_ON"
    TURN_OFF = "TURN_OFF"
    TOGGLE = "TOGGLE"
    CAPTURE_PHOTO = "CAPTURE_PHOTO"
    TRIGGER_IRRIGATION = "TRIGGER_IRRIGATION"


class ExecutionStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_EXECUTION_STATUSES = (
    ExecutionStatus.COMPLETED.value,
    ExecutionStatus.FAILED.value,
    ExecutionStatus.CANCELLED.value,
)

# Actions whose `duration` schedules an automatic switch-off
REVERSIBLE_ACTIONS = (ActionType.TURN_ON.value, ActionType.TRIGGER_IRRIGATION.value)

TIME_PROPERTY = "time"


class Automation(Base):
    __tablename__ = "automations"

    id = Column(Integer, primary_key=True, index=True)
    section_id = Column(Integer, ForeignKey("sections.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False, index=True)
    description = Column(String, nullable=True)

    status = Column(String, default=AutomationStatus.ACTIVE.value, nullable=False, index=True)
    trigger_type = Column(String, default=TriggerType.CONDITION.value, nullable=False)

    # Schedule component (SCHEDULED / HYBRID only)
    schedule_type = Column(String, nullable=True)
    active_start_time = Column(String, nullable=True)  # HH:MM
    active_end_time = Column(String, nullable=True)  # HH:MM
    interval_minutes = Column(Integer, nullable=True)
    specific_times = Column(JSON, default=list)  # ["08:00", "20:00"]
    action_duration = Column(Integer, nullable=True)  # minutes
    days_of_week = Column(JSON, default=list)  # 0=Sunday..6, empty = every day

    # Condition polling period in minutes
    interval = Column(Integer, default=5, nullable=False)
    priority = Column(Integer, default=0)
    notifications = Column(Boolean, default=True)

    # Provenance when proposed by the assistant
    proposed_by_ai = Column(Boolean, default=False)
    ai_reason = Column(Text, nullable=True)
    ai_confidence = Column(Float, nullable=True)
    ai_context_snapshot = Column(JSON, nullable=True)
    proposed_at = Column(DateTime(timezone=True), nullable=True)

    last_evaluated_at = Column(DateTime(timezone=True), nullable=True)

    # Per-automation execution lease (at most one RUNNING execution)
    lease_token = Column(String(64), nullable=True)
    lease_acquired_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    section = relationship("Section", back_populates="automations")
    conditions = relationship(
        "AutomationCondition",
        back_populates="automation",
        cascade="all, delete-orphan",
        order_by="AutomationCondition.order",
    )
    actions = relationship(
        "AutomationAction",
        back_populates="automation",
        cascade="all, delete-orphan",
        order_by="AutomationAction.order",
    )
    executions = relationship(
        "AutomationExecution",
        back_populates="automation",
        cascade="all, delete-orphan",
        order_by="AutomationExecution.started_at.desc()",
    )


class AutomationCondition(Base):
    __tablename__ = "automation_conditions"

    id = Column(Integer, primary_key=True, index=True)
    automation_id = Column(Integer, ForeignKey("automations.id", ondelete="CASCADE"), nullable=False, index=True)
    device_id = Column(Integer, ForeignKey("devices.id", ondelete="SET NULL"), nullable=True)

    property = Column(String, nullable=False)  # temperature, humidity, co2, state, time
    operator = Column(String, nullable=False)
    value = Column(Float, nullable=True)
    value_max = Column(Float, nullable=True)  # BETWEEN / OUTSIDE
    time_value = Column(String, nullable=True)  # HH:MM
    time_value_max = Column(String, nullable=True)  # HH:MM
    # How THIS condition joins the next one
    logic_operator = Column(String, default=LogicOperator.AND.value, nullable=False)
    order = Column(Integer, nullable=False, default=0)

    automation = relationship("Automation", back_populates="conditions")
    device = relationship("Device")

    # `property` is a column name inside this class body
    @builtins.property
    def is_time_based(self) -> bool:
        return self.property == TIME_PROPERTY


class AutomationAction(Base):
    __tablename__ = "automation_actions"

    id = Column(Integer, primary_key=True, index=True)
    automation_id = Column(Integer, ForeignKey("automations.id", ondelete="CASCADE"), nullable=False, index=True)
    device_id = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False)

    action_type = Column(String, nullable=False)
    duration = Column(Integer, nullable=True)  # minutes, schedules a reversal
    delay_minutes = Column(Integer, nullable=True)  # offset from fire time
    value = Column(Float, nullable=True)  # brightness, speed, ...
    order = Column(Integer, nullable=False, default=0)

    automation = relationship("Automation", back_populates="actions")
    device = relationship("Device")


class AutomationExecution(Base):
    __tablename__ = "automation_executions"

    id = Column(Integer, primary_key=True, index=True)
    automation_id = Column(Integer, ForeignKey("automations.id", ondelete="CASCADE"), nullable=False, index=True)

    status = Column(String, default=ExecutionStatus.PENDING.value, nullable=False, index=True)
    # scheduler | manual | schedule_end
    trigger_source = Column(String, default="scheduler")
    started_at = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    triggered_conditions = Column(JSON, nullable=True)
    executed_actions = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    automation = relationship("Automation", back_populates="executions")
    effectiveness_checks = relationship(
        "EffectivenessCheck",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="EffectivenessCheck.checked_at",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES


class EffectivenessCheck(Base):
    __tablename__ = "effectiveness_checks"

    id = Column(Integer, primary_key=True, index=True)
    execution_id = Column(Integer, ForeignKey("automation_executions.id", ondelete="CASCADE"), nullable=False, index=True)
    condition_id = Column(Integer, nullable=True)

    condition_met = Column(Boolean, default=False, nullable=False)
    value_at_check = Column(Float, nullable=True)
    target_value = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)
    checked_at = Column(DateTime(timezone=True), nullable=False)

    execution = relationship("AutomationExecution", back_populates="effectiveness_checks")
