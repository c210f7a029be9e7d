from __future__ import annotations

import logging
from datetime import datetime
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from growroom.core.clock import as_utc, utcnow
from growroom.core.errors import ConflictError, DeviceNotInSection, ValidationError
from growroom.drivers.base import DeviceGateway
from growroom.models.automation import (
    Automation,
    AutomationAction,
    AutomationCondition,
    AutomationExecution,
    AutomationStatus,
    ExecutionStatus,
    LogicOperator,
    TIME_PROPERTY,
    TriggerType,
)
from growroom.models.scheduled_job import ScheduledJob
from growroom.services.action_executor import cancel_inflight
from growroom.services.automation_repository import AutomationRepository
from growroom.services.automation_rules import (
    build_schedule,
    build_trigger,
    normalize_hhmm,
    trigger_from_automation,
    validate_actions,
    validate_conditions,
)
from growroom.services.condition_evaluator import ConditionEvaluator
from growroom.services.schedule_gate import evaluate_schedule, gate_allows
from growroom.services.trigger_dispatcher import SOURCE_MANUAL, fire, new_execution

logger = logging.getLogger(__name__)

SCHEDULE_FIELDS = (
    "schedule_type",
    "active_start_time",
    "active_end_time",
    "interval_minutes",
    "specific_times",
    "action_duration",
    "days_of_week",
)

CONDITIONS_NOT_MET = "Conditions not met"


def _v(value: Any) -> Any:
    return getattr(value, "value", value)


def validate_definition(fields: Any, conditions: Sequence[Any], actions: Sequence[Any]) -> None:
    """Raises ValidationError unless the definition forms a valid trigger."""
    interval = getattr(fields, "interval", None)
    if interval is not None and int(interval) < 1:
        raise ValidationError("interval must be at least 1 minute")
    validate_conditions(conditions)
    validate_actions(actions)
    schedule = None
    if getattr(fields, "schedule_type", None) is not None:
        schedule = build_schedule(
            fields.schedule_type,
            active_start_time=fields.active_start_time,
            active_end_time=fields.active_end_time,
            interval_minutes=fields.interval_minutes,
            specific_times=fields.specific_times,
            action_duration=fields.action_duration,
            days_of_week=fields.days_of_week,
        )
    build_trigger(fields.trigger_type, schedule, list(conditions))


def check_devices_in_section(
    repo: AutomationRepository,
    section_id: int,
    conditions: Sequence[Any],
    actions: Sequence[Any],
) -> None:
    in_section = set(repo.section_device_ids(section_id))
    referenced = [("condition", c.device_id) for c in conditions if getattr(c, "device_id", None) is not None]
    referenced += [("action", a.device_id) for a in actions]
    missing = [{"kind": kind, "device_id": device_id} for kind, device_id in referenced if device_id not in in_section]
    if missing:
        ids = sorted({m["device_id"] for m in missing})
        raise DeviceNotInSection(
            f"Devices {ids} are not in section {section_id}",
            details={"section_id": section_id, "devices": missing},
        )


def build_conditions(conditions: Sequence[Any]) -> List[AutomationCondition]:
    out = []
    for idx, c in enumerate(conditions):
        is_time = str(c.property).strip() == TIME_PROPERTY
        out.append(
            AutomationCondition(
                device_id=None if is_time else c.device_id,
                property=str(c.property).strip(),
                operator=_v(c.operator),
                value=c.value,
                value_max=c.value_max,
                time_value=normalize_hhmm(c.time_value) if c.time_value else None,
                time_value_max=normalize_hhmm(c.time_value_max) if c.time_value_max else None,
                logic_operator=_v(c.logic_operator or LogicOperator.AND),
                order=idx if c.order is None else int(c.order),
            )
        )
    return out


def build_actions(actions: Sequence[Any]) -> List[AutomationAction]:
    return [
        AutomationAction(
            device_id=a.device_id,
            action_type=_v(a.action_type),
            duration=a.duration,
            delay_minutes=a.delay_minutes,
            value=a.value,
            order=idx if a.order is None else int(a.order),
        )
        for idx, a in enumerate(actions)
    ]


def apply_schedule_fields(automation: Automation, fields: Any) -> None:
    automation.trigger_type = _v(fields.trigger_type)
    automation.schedule_type = _v(fields.schedule_type) if fields.schedule_type is not None else None
    automation.active_start_time = normalize_hhmm(fields.active_start_time) if fields.active_start_time else None
    automation.active_end_time = normalize_hhmm(fields.active_end_time) if fields.active_end_time else None
    automation.interval_minutes = fields.interval_minutes
    automation.specific_times = sorted({normalize_hhmm(t) for t in (fields.specific_times or []) if str(t or "").strip()})
    automation.action_duration = fields.action_duration
    automation.days_of_week = sorted({int(d) for d in (fields.days_of_week or [])})


class AutomationService:
    """User-scoped mutation and query surface over automations."""

    def __init__(
        self,
        db: Session,
        user_id: int,
        gateway: Optional[DeviceGateway] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.user_id = user_id
        self.repo = AutomationRepository(db, user_id)
        self.gateway = gateway
        self.clock = clock

    def list(self, section_id: Optional[int] = None, status: Optional[str] = None) -> List[Automation]:
        return self.repo.list(section_id=section_id, status=status)

    def get(self, automation_id: int) -> Automation:
        return self.repo.get(automation_id)

    def get_by_name(self, name: str) -> Automation:
        return self.repo.get_by_name(name)

    def create(self, payload: Any, status: AutomationStatus = AutomationStatus.ACTIVE, **extra: Any) -> Automation:
        self.repo.owned_section(payload.section_id)
        check_devices_in_section(self.repo, payload.section_id, payload.conditions, payload.actions)
        validate_definition(payload, payload.conditions, payload.actions)

        automation = Automation(
            section_id=payload.section_id,
            name=payload.name.strip(),
            description=payload.description,
            status=status.value,
            interval=int(payload.interval or 5),
            priority=int(payload.priority or 0),
            notifications=bool(getattr(payload, "notifications", True)),
            **extra,
        )
        apply_schedule_fields(automation, payload)
        automation.conditions = build_conditions(payload.conditions)
        automation.actions = build_actions(payload.actions)
        self.db.add(automation)
        self.db.commit()
        self.db.refresh(automation)
        logger.info("automation created", extra={"automation_id": automation.id, "user_id": self.user_id})
        return automation

    def update(self, automation_id: int, payload: Any) -> Automation:
        automation = self.repo.get(automation_id)
        changes = payload.model_dump(exclude_unset=True) if hasattr(payload, "model_dump") else dict(payload)

        merged = SimpleNamespace(
            trigger_type=changes.get("trigger_type", automation.trigger_type),
            interval=changes.get("interval", automation.interval),
            **{f: changes.get(f, getattr(automation, f)) for f in SCHEDULE_FIELDS},
        )
        if _v(merged.trigger_type) == TriggerType.CONDITION.value and "schedule_type" not in changes:
            # switching to a pure condition trigger drops the old schedule
            for f in SCHEDULE_FIELDS:
                setattr(merged, f, [] if f in ("specific_times", "days_of_week") else None)

        conditions = payload.conditions if payload.conditions is not None else list(automation.conditions)
        actions = payload.actions if payload.actions is not None else list(automation.actions)
        validate_definition(merged, conditions, actions)
        check_devices_in_section(self.repo, automation.section_id, conditions, actions)

        for f in ("name", "description", "priority", "notifications", "interval"):
            if f in changes and changes[f] is not None:
                setattr(automation, f, changes[f].strip() if f == "name" else changes[f])
        apply_schedule_fields(automation, merged)
        if payload.conditions is not None:
            automation.conditions = build_conditions(payload.conditions)
        if payload.actions is not None:
            automation.actions = build_actions(payload.actions)
        self.db.commit()
        self.db.refresh(automation)
        logger.info("automation updated", extra={"automation_id": automation.id, "user_id": self.user_id})
        return automation

    def delete(self, automation_id: int) -> None:
        automation = self.repo.get(automation_id)
        cancel_inflight(self.db, automation.id, reason="Automation deleted", now=self.clock())
        self.db.query(ScheduledJob).filter(ScheduledJob.automation_id == automation.id).delete(synchronize_session=False)
        self.db.delete(automation)
        self.db.commit()
        logger.info("automation deleted", extra={"automation_id": automation_id, "user_id": self.user_id})

    def set_status(self, automation_id: int, status: Any) -> Automation:
        target = _v(status)
        if target not in {s.value for s in AutomationStatus}:
            raise ValidationError(f"unknown status {target!r}")
        if target == AutomationStatus.PENDING_APPROVAL.value:
            raise ValidationError("PENDING_APPROVAL is only set by the proposal workflow")
        automation = self.repo.get(automation_id)
        current = automation.status
        if current == target:
            return automation

        automation.status = target
        if current == AutomationStatus.ACTIVE.value:
            cancel_inflight(self.db, automation.id, reason=f"Automation {target.lower()}", now=self.clock())
        self.db.commit()
        self.db.refresh(automation)
        logger.info(
            "automation status %s -> %s",
            current,
            target,
            extra={"automation_id": automation.id, "user_id": self.user_id},
        )
        return automation

    def execute_now(self, automation_id: int, skip_conditions: bool = False) -> AutomationExecution:
        """Manual fire. Bypasses the schedule; conditions are checked unless skipped."""
        automation = self.repo.get(automation_id)
        if automation.status != AutomationStatus.ACTIVE.value:
            raise ConflictError(
                f"Automation {automation_id} is {automation.status}; only ACTIVE automations can be executed",
                details={"status": automation.status},
            )
        now = as_utc(self.clock())
        audit: List[Dict[str, Any]] = []
        if not skip_conditions and automation.conditions:
            result = ConditionEvaluator(self.gateway, now).evaluate_set(automation.conditions)
            audit = result.audit()
            if not result.met:
                execution = new_execution(
                    self.db,
                    automation,
                    now,
                    trigger_source=SOURCE_MANUAL,
                    audit=audit,
                    status=ExecutionStatus.CANCELLED,
                    error_message=CONDITIONS_NOT_MET,
                )
                self.db.commit()
                return execution
        return fire(self.db, self.gateway, automation, now, trigger_source=SOURCE_MANUAL, audit=audit, clock=self.clock)

    def evaluate_only(self, automation_id: int) -> Dict[str, Any]:
        """Dry run: what would the dispatcher decide right now. Writes nothing."""
        automation = self.repo.get(automation_id)
        now = as_utc(self.clock())
        trigger = trigger_from_automation(automation)
        schedule = getattr(trigger, "schedule", None)
        decision = None
        if schedule is not None:
            decision = evaluate_schedule(
                schedule,
                now,
                last_evaluated_at=automation.last_evaluated_at,
                created_at=automation.created_at,
            )
        result = ConditionEvaluator(self.gateway, now).evaluate_set(getattr(trigger, "conditions", ()))
        gate = gate_allows(trigger, decision)
        return {
            "automation_id": automation.id,
            "status": automation.status,
            "trigger_type": automation.trigger_type,
            "evaluated_at": now,
            "schedule": None
            if decision is None
            else {"active": decision.active, "due": decision.due, "window_closed": decision.window_closed},
            "schedule_gate": gate,
            "conditions_met": result.met,
            "would_fire": automation.status == AutomationStatus.ACTIVE.value and gate and result.met,
            "conditions": result.audit(),
        }
