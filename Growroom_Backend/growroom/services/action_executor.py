from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from growroom.core.clock import as_utc, utcnow
from growroom.core.errors import DispatchError
from growroom.drivers.base import DeviceGateway, DispatchResult
from growroom.models.automation import (
    ActionType,
    Automation,
    AutomationAction,
    AutomationExecution,
    AutomationStatus,
    ExecutionStatus,
    REVERSIBLE_ACTIONS,
)
from growroom.models.scheduled_job import JobType, ScheduledJob
from growroom.services.effectiveness_checker import EffectivenessChecker
from growroom.services.execution_lease import ExecutionLease
from growroom.services.job_scheduler import JobScheduler

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Automation is no longer active"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


def automation_is_active(db: Session, automation_id: int) -> bool:
    # column query, bypasses the identity map
    status = db.query(Automation.status).filter(Automation.id == automation_id).scalar()
    return status == AutomationStatus.ACTIVE.value


def cancel_inflight(db: Session, automation_id: int, reason: str = CANCELLED_MESSAGE, now: Optional[datetime] = None) -> int:
    """
    Stop everything an automation still has queued: pending jobs
    (delayed actions, reversals, effectiveness checks) and PENDING/RUNNING
    executions. Caller commits.
    """
    now = as_utc(now or utcnow())
    JobScheduler(db).cancel_for_automation(automation_id)
    executions = (
        db.query(AutomationExecution)
        .filter(
            AutomationExecution.automation_id == automation_id,
            AutomationExecution.status.in_((ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value)),
        )
        .all()
    )
    for execution in executions:
        execution.status = ExecutionStatus.CANCELLED.value
        execution.ended_at = now
        execution.error_message = reason
        logger.info("execution cancelled", extra={"automation_id": automation_id, "execution_id": execution.id})
    ExecutionLease.release_for(db, automation_id)
    db.flush()
    return len(executions)


class ActionExecutor:
    """
    Dispatches an execution's actions in `order`.

    Delays are offsets from the fire time. A zero-delay action is sent inline;
    a delayed one becomes a DEVICE_ACTION job, so no thread waits on it.
    Every action result is recorded on its own; one failure never stops the
    rest.
    """

    def __init__(
        self,
        db: Session,
        gateway: DeviceGateway,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.gateway = gateway
        self.clock = clock
        self.jobs = JobScheduler(db)

    def run(self, automation: Automation, execution: AutomationExecution, fire_time: Optional[datetime] = None) -> AutomationExecution:
        fire_time = as_utc(fire_time or self.clock())
        execution.status = ExecutionStatus.RUNNING.value
        self.db.commit()

        entries: List[Dict[str, Any]] = []
        for action in sorted(automation.actions or [], key=lambda a: a.order):
            if not automation_is_active(self.db, automation.id):
                execution.executed_actions = entries
                self._cancel(execution)
                return execution

            delay = int(action.delay_minutes or 0)
            if delay > 0:
                run_at = fire_time + timedelta(minutes=delay)
                job = self.jobs.schedule(
                    JobType.DEVICE_ACTION,
                    run_at,
                    device_id=action.device_id,
                    automation_id=automation.id,
                    execution_id=execution.id,
                    payload={"action_id": action.id},
                    max_attempts=1,
                    discriminator=action.id,
                )
                entries.append(
                    {
                        "action_id": action.id,
                        "device_id": action.device_id,
                        "action_type": action.action_type,
                        "status": "SCHEDULED",
                        "success": None,
                        "error": None,
                        "scheduled_for": _iso(run_at),
                        "dispatched_at": None,
                        "job_id": job.id,
                    }
                )
                continue

            entries.append(self._dispatch(automation, execution, action))

        execution.executed_actions = entries
        if any(e.get("status") == "SCHEDULED" for e in entries):
            # finished by the job processor once the last delayed action ran
            self.db.commit()
            return execution
        return self.finalize(automation, execution)

    def run_delayed(self, job: ScheduledJob) -> Dict[str, Any]:
        """Runs one DEVICE_ACTION job. Raises DispatchError when the command failed."""
        execution = self.db.query(AutomationExecution).filter(AutomationExecution.id == job.execution_id).first()
        if execution is None or execution.is_terminal:
            logger.info("delayed action skipped, execution closed", extra={"job_id": job.id, "execution_id": job.execution_id})
            return {"skipped": True}
        automation = execution.automation

        if not automation_is_active(self.db, automation.id):
            self._cancel(execution)
            return {"skipped": True, "cancelled": True}

        action_id = (job.payload or {}).get("action_id")
        action = self.db.query(AutomationAction).filter(AutomationAction.id == action_id).first()
        if action is None:
            entry = {
                "action_id": action_id,
                "device_id": job.device_id,
                "action_type": None,
                "status": "FAILED",
                "success": False,
                "error": "action no longer exists",
                "dispatched_at": _iso(self.clock()),
            }
        else:
            entry = self._dispatch(automation, execution, action)
        entry["scheduled_for"] = _iso(job.run_at)
        entry["job_id"] = job.id

        updated = []
        replaced = False
        for e in execution.executed_actions or []:
            if not replaced and e.get("action_id") == action_id and e.get("status") == "SCHEDULED":
                updated.append(entry)
                replaced = True
            else:
                updated.append(e)
        if not replaced:
            updated.append(entry)
        # reassign so the JSON column is flagged dirty
        execution.executed_actions = updated

        if self.jobs.open_jobs_for_execution(execution.id, JobType.DEVICE_ACTION, exclude_id=job.id) == 0:
            self.finalize(automation, execution)
        else:
            self.db.commit()

        if not entry["success"]:
            raise DispatchError(entry["error"] or "dispatch failed", details=entry)
        return entry

    def _dispatch(self, automation: Automation, execution: AutomationExecution, action: AutomationAction) -> Dict[str, Any]:
        params = {"value": action.value} if action.value is not None else {}
        entry = self.send(automation, execution, action.device, action.action_type, params, action_id=action.id, device_id=action.device_id)
        duration = self._reversal_minutes(automation, action)
        if entry["success"] and duration:
            job = self.jobs.schedule_device_off(
                action.device_id,
                duration,
                automation_id=automation.id,
                execution_id=execution.id,
                base_time=datetime.fromisoformat(entry["dispatched_at"]),
                discriminator=action.id,
            )
            entry["reversal_at"] = _iso(job.run_at)
            entry["reversal_job_id"] = job.id
        return entry

    def send(
        self,
        automation: Automation,
        execution: AutomationExecution,
        device: Any,
        action_type: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        action_id: Optional[int] = None,
        device_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        dispatched_at = as_utc(self.clock())
        entry: Dict[str, Any] = {
            "action_id": action_id,
            "device_id": device_id,
            "action_type": action_type,
            "dispatched_at": _iso(dispatched_at),
        }
        if device is None:
            result = DispatchResult(success=False, error="device not found")
        else:
            try:
                result = self.gateway.dispatch(device, action_type, params or {})
            except Exception as e:
                logger.exception("dispatch raised", extra={"automation_id": automation.id, "device_id": device_id})
                result = DispatchResult(success=False, error=f"{type(e).__name__}: {e}")

        entry["success"] = bool(result.success)
        entry["error"] = result.error
        entry["status"] = "SUCCESS" if result.success else "FAILED"
        if result.detail:
            entry["detail"] = result.detail
        if not result.success:
            logger.warning(
                "action %s failed: %s",
                action_type,
                result.error,
                extra={"automation_id": automation.id, "execution_id": execution.id, "device_id": device_id},
            )
        return entry

    @staticmethod
    def _reversal_minutes(automation: Automation, action: AutomationAction) -> Optional[int]:
        if action.action_type not in REVERSIBLE_ACTIONS:
            return None
        if action.duration:
            return int(action.duration)
        if automation.schedule_type and automation.action_duration:
            return int(automation.action_duration)
        return None

    def _cancel(self, execution: AutomationExecution) -> None:
        cancel_inflight(self.db, execution.automation_id, now=self.clock())
        self.db.commit()
        logger.info(
            "execution cancelled mid-flight",
            extra={"automation_id": execution.automation_id, "execution_id": execution.id},
        )

    def finalize(self, automation: Automation, execution: AutomationExecution) -> AutomationExecution:
        entries = execution.executed_actions or []
        failures = [e for e in entries if e.get("success") is False]
        execution.ended_at = as_utc(self.clock())
        if failures:
            execution.status = ExecutionStatus.FAILED.value
            execution.error_message = "; ".join(
                f"{e.get('action_type') or 'action'} on device {e.get('device_id')}: {e.get('error') or 'failed'}"
                for e in failures
            )
        else:
            execution.status = ExecutionStatus.COMPLETED.value
            execution.error_message = None
        ExecutionLease.release_for(self.db, automation.id)
        self.db.flush()

        if execution.status == ExecutionStatus.COMPLETED.value:
            EffectivenessChecker(self.db, self.gateway).schedule_for(execution, automation)
        self.db.commit()
        logger.info(
            "execution %s %s",
            execution.id,
            execution.status,
            extra={"automation_id": automation.id, "execution_id": execution.id},
        )
        return execution


def switch_off_targets(
    db: Session,
    gateway: DeviceGateway,
    automation: Automation,
    execution: AutomationExecution,
    clock: Callable[[], datetime] = utcnow,
) -> AutomationExecution:
    """
    End of a SCHEDULED TIME_RANGE window: turn off every device the
    automation switches on.
    """
    executor = ActionExecutor(db, gateway, clock=clock)
    execution.status = ExecutionStatus.RUNNING.value
    db.commit()
    entries: List[Dict[str, Any]] = []
    seen = set()
    for action in sorted(automation.actions or [], key=lambda a: a.order):
        if action.action_type not in REVERSIBLE_ACTIONS or action.device_id in seen:
            continue
        seen.add(action.device_id)
        entries.append(
            executor.send(
                automation,
                execution,
                action.device,
                ActionType.TURN_OFF.value,
                action_id=action.id,
                device_id=action.device_id,
            )
        )
    execution.executed_actions = entries
    return executor.finalize(automation, execution)
