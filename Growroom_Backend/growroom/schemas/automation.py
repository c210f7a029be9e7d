from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from growroom.models.automation import (
    ActionType,
    AutomationStatus,
    ConditionOperator,
    LogicOperator,
    ScheduleType,
    TriggerType,
)


# --- conditions / actions ---
class ConditionIn(BaseModel):
    device_id: Optional[int] = None
    property: str
    operator: ConditionOperator
    value: Optional[float] = None
    value_max: Optional[float] = None
    time_value: Optional[str] = None
    time_value_max: Optional[str] = None
    logic_operator: LogicOperator = LogicOperator.AND
    order: Optional[int] = None


class ConditionOut(BaseModel):
    id: int
    device_id: Optional[int] = None
    property: str
    operator: str
    value: Optional[float] = None
    value_max: Optional[float] = None
    time_value: Optional[str] = None
    time_value_max: Optional[str] = None
    logic_operator: str
    order: int

    class Config:
        from_attributes = True


class ActionIn(BaseModel):
    device_id: int
    action_type: ActionType
    duration: Optional[int] = None
    delay_minutes: Optional[int] = None
    value: Optional[float] = None
    order: Optional[int] = None


class ActionOut(BaseModel):
    id: int
    device_id: int
    action_type: str
    duration: Optional[int] = None
    delay_minutes: Optional[int] = None
    value: Optional[float] = None
    order: int

    class Config:
        from_attributes = True


# --- automations ---
class AutomationBase(BaseModel):
    name: str
    description: Optional[str] = None
    trigger_type: TriggerType = TriggerType.CONDITION
    schedule_type: Optional[ScheduleType] = None
    active_start_time: Optional[str] = None
    active_end_time: Optional[str] = None
    interval_minutes: Optional[int] = None
    specific_times: List[str] = []
    action_duration: Optional[int] = None
    days_of_week: List[int] = []
    interval: int = 5
    priority: int = 0
    notifications: bool = True


class AutomationCreate(AutomationBase):
    section_id: int
    conditions: List[ConditionIn] = []
    actions: List[ActionIn]


class AutomationUpdate(BaseModel):
    """Omitted fields keep their value; a given conditions/actions list replaces the old one."""

    name: Optional[str] = None
    description: Optional[str] = None
    trigger_type: Optional[TriggerType] = None
    schedule_type: Optional[ScheduleType] = None
    active_start_time: Optional[str] = None
    active_end_time: Optional[str] = None
    interval_minutes: Optional[int] = None
    specific_times: Optional[List[str]] = None
    action_duration: Optional[int] = None
    days_of_week: Optional[List[int]] = None
    interval: Optional[int] = None
    priority: Optional[int] = None
    notifications: Optional[bool] = None
    conditions: Optional[List[ConditionIn]] = None
    actions: Optional[List[ActionIn]] = None


class AutomationResponse(BaseModel):
    id: int
    section_id: int
    name: str
    description: Optional[str] = None
    status: str
    trigger_type: str
    schedule_type: Optional[str] = None
    active_start_time: Optional[str] = None
    active_end_time: Optional[str] = None
    interval_minutes: Optional[int] = None
    specific_times: Optional[List[str]] = None
    action_duration: Optional[int] = None
    days_of_week: Optional[List[int]] = None
    interval: int
    priority: Optional[int] = None
    notifications: Optional[bool] = None
    proposed_by_ai: Optional[bool] = None
    ai_reason: Optional[str] = None
    ai_confidence: Optional[float] = None
    ai_context_snapshot: Optional[Dict[str, Any]] = None
    proposed_at: Optional[datetime] = None
    last_evaluated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    conditions: List[ConditionOut] = []
    actions: List[ActionOut] = []

    class Config:
        from_attributes = True


class StatusUpdate(BaseModel):
    status: AutomationStatus


class ExecuteRequest(BaseModel):
    skip_conditions: bool = False


# --- executions / checks ---
class EffectivenessCheckOut(BaseModel):
    id: int
    condition_id: Optional[int] = None
    condition_met: bool
    value_at_check: Optional[float] = None
    target_value: Optional[float] = None
    notes: Optional[str] = None
    checked_at: datetime

    class Config:
        from_attributes = True


class ExecutionResponse(BaseModel):
    id: int
    automation_id: int
    status: str
    trigger_source: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    triggered_conditions: Optional[List[Dict[str, Any]]] = None
    executed_actions: Optional[List[Dict[str, Any]]] = None
    error_message: Optional[str] = None
    effectiveness_checks: List[EffectivenessCheckOut] = []

    class Config:
        from_attributes = True


class ExecutionHistory(BaseModel):
    executions: List[ExecutionResponse]
    stats: Dict[str, int]


# --- proposals ---
class AutomationProposal(BaseModel):
    section_id: int
    name: str
    description: Optional[str] = None
    reason: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    trigger_type: TriggerType = TriggerType.CONDITION
    schedule_type: Optional[ScheduleType] = None
    active_start_time: Optional[str] = None
    active_end_time: Optional[str] = None
    interval_minutes: Optional[int] = None
    specific_times: List[str] = []
    action_duration: Optional[int] = None
    days_of_week: List[int] = []
    interval: int = 5
    priority: int = 0
    conditions: List[ConditionIn] = []
    actions: List[ActionIn]


# --- jobs ---
class JobResponse(BaseModel):
    id: int
    type: str
    device_id: Optional[int] = None
    automation_id: Optional[int] = None
    execution_id: Optional[int] = None
    run_at: datetime
    status: str
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True

