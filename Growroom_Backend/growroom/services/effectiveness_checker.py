from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from growroom.core import config
from growroom.core.clock import as_utc, utcnow
from growroom.core.errors import DataUnavailable
from growroom.drivers.base import DeviceGateway
from growroom.models.automation import (
    Automation,
    AutomationCondition,
    AutomationExecution,
    AutomationStatus,
    ConditionOperator,
    EffectivenessCheck,
    ExecutionStatus,
    TriggerType,
)
from growroom.models.scheduled_job import JobType, ScheduledJob
from growroom.models.settings import SystemSetting
from growroom.services.condition_evaluator import compare
from growroom.services.job_scheduler import JobScheduler

logger = logging.getLogger(__name__)

DELAY_SETTING_KEY = "effectiveness_check_delay_minutes"


def _get_setting_value(db: Session, key: str) -> str:
    s = db.query(SystemSetting).filter(SystemSetting.key == key).first()
    if not s or s.value is None:
        return ""
    return str(s.value)


def check_delay_minutes(db: Session) -> int:
    raw = _get_setting_value(db, DELAY_SETTING_KEY).strip()
    if raw:
        try:
            return max(0, int(raw))
        except ValueError:
            logger.warning("ignoring non-integer %s=%r", DELAY_SETTING_KEY, raw)
    return max(0, int(config.EFFECTIVENESS_CHECK_DELAY_MINUTES))


def goal_reached(condition: AutomationCondition, value: float) -> Tuple[bool, Optional[float]]:
    """
    The automation fired because the condition held; its goal is that the
    condition no longer holds. Returns (met, target_value).
    EQUALS is a hold-the-value rule, so its goal is staying equal.
    OUTSIDE targets the middle of the band.
    """
    op = str(getattr(condition.operator, "value", condition.operator))
    low = float(condition.value)
    high = float(condition.value_max) if condition.value_max is not None else low
    target = (low + high) / 2.0 if op == ConditionOperator.OUTSIDE.value else low
    if op == ConditionOperator.EQUALS.value:
        return compare(op, value, low, high), target
    return (not compare(op, value, low, high)), target


def device_conditions(automation: Automation) -> List[AutomationCondition]:
    return [c for c in (automation.conditions or []) if not c.is_time_based and c.device_id is not None]


class EffectivenessChecker:
    def __init__(self, db: Session, gateway: Optional[DeviceGateway] = None):
        self.db = db
        self.gateway = gateway

    def schedule_for(self, execution: AutomationExecution, automation: Automation) -> Optional[ScheduledJob]:
        """One follow-up sample per COMPLETED execution of a condition-driven automation."""
        if execution.status != ExecutionStatus.COMPLETED.value:
            return None
        if automation.trigger_type == TriggerType.SCHEDULED.value:
            return None
        if not device_conditions(automation):
            return None
        ended = as_utc(execution.ended_at) or utcnow()
        run_at = ended + timedelta(minutes=check_delay_minutes(self.db))
        return JobScheduler(self.db).schedule(
            JobType.EFFECTIVENESS_CHECK,
            run_at,
            automation_id=automation.id,
            execution_id=execution.id,
            max_attempts=1,
        )

    def run_check(self, execution_id: int, now: Optional[datetime] = None) -> List[EffectivenessCheck]:
        execution = self.db.query(AutomationExecution).filter(AutomationExecution.id == execution_id).first()
        if not execution:
            logger.warning("effectiveness check for missing execution %s", execution_id)
            return []
        automation = execution.automation
        if automation is None or automation.status != AutomationStatus.ACTIVE.value:
            logger.info(
                "skipping effectiveness check, automation not active",
                extra={"execution_id": execution_id},
            )
            return []

        checked_at = as_utc(now or utcnow())
        added: List[EffectivenessCheck] = []
        for condition in device_conditions(automation):
            device = condition.device
            try:
                if device is None:
                    raise DataUnavailable("device not found")
                value = float(self.gateway.get_current_value(device, condition.property))
            except DataUnavailable as e:
                logger.warning(
                    "effectiveness sample unavailable: %s",
                    e.message,
                    extra={"execution_id": execution_id, "device_id": condition.device_id},
                )
                check = EffectivenessCheck(
                    execution_id=execution.id,
                    condition_id=condition.id,
                    condition_met=False,
                    value_at_check=None,
                    target_value=condition.value,
                    notes=f"Error checking device: {e.message}",
                    checked_at=checked_at,
                )
            else:
                met, target = goal_reached(condition, value)
                check = EffectivenessCheck(
                    execution_id=execution.id,
                    condition_id=condition.id,
                    condition_met=met,
                    value_at_check=value,
                    target_value=target,
                    notes=f"Check for {condition.property} on device {device.name}",
                    checked_at=checked_at,
                )
                logger.debug(
                    "effectiveness %s: current=%s target=%s met=%s",
                    condition.property,
                    value,
                    target,
                    met,
                    extra={"execution_id": execution_id, "device_id": condition.device_id},
                )
            self.db.add(check)
            added.append(check)
        self.db.flush()
        return added
