from __future__ import annotations

import heapq
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from growroom.core import config
from growroom.core.clock import as_utc, utcnow
from growroom.core.errors import ConcurrencyConflict, ValidationError
from growroom.core.request_context import set_automation_context
from growroom.drivers.base import DeviceGateway
from growroom.models.automation import (
    Automation,
    AutomationExecution,
    AutomationStatus,
    ExecutionStatus,
    REVERSIBLE_ACTIONS,
)
from growroom.services.action_executor import ActionExecutor, switch_off_targets
from growroom.services.automation_rules import ScheduledTrigger, TimeRangeSchedule, trigger_from_automation
from growroom.services.condition_evaluator import ConditionEvaluator
from growroom.services.execution_lease import ExecutionLease
from growroom.services.schedule_gate import evaluate_schedule, gate_allows, next_evaluation_at

logger = logging.getLogger(__name__)

SOURCE_SCHEDULER = "scheduler"
SOURCE_MANUAL = "manual"
SOURCE_SCHEDULE_END = "schedule_end"


@dataclass
class TickOutcome:
    automation_id: int
    # fired | idle | suppressed | skipped | error
    result: str
    execution_id: Optional[int] = None
    detail: Optional[str] = None
    next_due_at: Optional[datetime] = None


def new_execution(
    db: Session,
    automation: Automation,
    now: datetime,
    *,
    trigger_source: str,
    audit: Optional[List[Dict[str, Any]]] = None,
    status: ExecutionStatus = ExecutionStatus.PENDING,
    error_message: Optional[str] = None,
) -> AutomationExecution:
    execution = AutomationExecution(
        automation_id=automation.id,
        status=status.value,
        trigger_source=trigger_source,
        started_at=as_utc(now),
        triggered_conditions=audit or [],
        executed_actions=[],
        error_message=error_message,
    )
    if status.value in (ExecutionStatus.CANCELLED.value, ExecutionStatus.FAILED.value, ExecutionStatus.COMPLETED.value):
        execution.ended_at = as_utc(now)
    db.add(execution)
    db.flush()
    return execution


def fire(
    db: Session,
    gateway: DeviceGateway,
    automation: Automation,
    now: datetime,
    *,
    trigger_source: str = SOURCE_SCHEDULER,
    audit: Optional[List[Dict[str, Any]]] = None,
    clock: Callable[[], datetime] = utcnow,
) -> AutomationExecution:
    """
    Create an execution and hand it to the executor, holding the
    automation's lease. Raises ConcurrencyConflict when another execution
    is still in flight.
    """
    local = ExecutionLease.local_lock(automation.id)
    if not local.acquire(blocking=False):
        raise ConcurrencyConflict(f"Automation {automation.id} is already firing")
    try:
        lease = ExecutionLease(db, automation.id)
        if not lease.acquire(now):
            raise ConcurrencyConflict(f"Automation {automation.id} has an execution in progress")
        try:
            execution = new_execution(db, automation, now, trigger_source=trigger_source, audit=audit)
            db.commit()
        except Exception:
            db.rollback()
            lease.release()
            raise
        logger.info(
            "automation fired",
            extra={"automation_id": automation.id, "execution_id": execution.id},
        )
        try:
            if trigger_source == SOURCE_SCHEDULE_END:
                return switch_off_targets(db, gateway, automation, execution, clock=clock)
            return ActionExecutor(db, gateway, clock=clock).run(automation, execution, now)
        except Exception as e:
            db.rollback()
            execution.status = ExecutionStatus.FAILED.value
            execution.ended_at = as_utc(clock())
            execution.error_message = f"{type(e).__name__}: {e}"
            ExecutionLease.release_for(db, automation.id)
            db.commit()
            raise
    finally:
        local.release()


class TriggerDispatcher:
    """
    One tick for one automation: IDLE -> EVALUATING -> (FIRING | IDLE).

    Each tick uses its own session, so a failing automation never poisons
    the others. `last_evaluated_at` is written on every evaluated tick.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: DeviceGateway,
        poll_seconds: Optional[int] = None,
        tz_name: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.poll_seconds = int(poll_seconds or config.AUTOMATION_POLL_SECONDS)
        self.tz_name = tz_name
        self.clock = clock

    def evaluate(self, automation_id: int, now: Optional[datetime] = None) -> TickOutcome:
        now = as_utc(now or self.clock())
        set_automation_context(automation_id)
        db = self.session_factory()
        try:
            return self._tick(db, automation_id, now)
        except Exception as e:
            db.rollback()
            logger.exception("automation tick failed", extra={"automation_id": automation_id})
            return TickOutcome(automation_id, "error", detail=f"{type(e).__name__}: {e}")
        finally:
            db.close()
            set_automation_context(None)

    def _tick(self, db: Session, automation_id: int, now: datetime) -> TickOutcome:
        automation = db.query(Automation).filter(Automation.id == automation_id).first()
        if automation is None or automation.status != AutomationStatus.ACTIVE.value:
            return TickOutcome(automation_id, "skipped", detail="not active")

        previous = automation.last_evaluated_at
        automation.last_evaluated_at = now
        db.commit()
        next_due = next_evaluation_at(automation, self.poll_seconds)

        try:
            trigger = trigger_from_automation(automation)
        except ValidationError as e:
            logger.warning("invalid automation definition: %s", e.message, extra={"automation_id": automation_id})
            return TickOutcome(automation_id, "error", detail=e.message, next_due_at=next_due)

        schedule = getattr(trigger, "schedule", None)
        decision = None
        if schedule is not None:
            decision = evaluate_schedule(
                schedule,
                now,
                last_evaluated_at=previous,
                created_at=automation.created_at,
                poll_seconds=self.poll_seconds,
                tz_name=self.tz_name,
            )

        if (
            decision is not None
            and decision.window_closed
            and isinstance(trigger, ScheduledTrigger)
            and isinstance(schedule, TimeRangeSchedule)
            and any(a.action_type in REVERSIBLE_ACTIONS for a in automation.actions)
        ):
            outcome = self._fire(db, automation, now, SOURCE_SCHEDULE_END, None, next_due)
            if not decision.due:
                return outcome

        if not gate_allows(trigger, decision):
            return TickOutcome(automation_id, "idle", detail="outside schedule", next_due_at=next_due)

        audit: List[Dict[str, Any]] = []
        conditions = getattr(trigger, "conditions", ())
        if conditions:
            result = ConditionEvaluator(self.gateway, now, self.tz_name).evaluate_set(conditions)
            audit = result.audit()
            if not result.met:
                return TickOutcome(automation_id, "idle", detail="conditions not met", next_due_at=next_due)

        return self._fire(db, automation, now, SOURCE_SCHEDULER, audit, next_due)

    def _fire(
        self,
        db: Session,
        automation: Automation,
        now: datetime,
        source: str,
        audit: Optional[List[Dict[str, Any]]],
        next_due: Optional[datetime],
    ) -> TickOutcome:
        try:
            execution = fire(db, self.gateway, automation, now, trigger_source=source, audit=audit, clock=self.clock)
        except ConcurrencyConflict as e:
            logger.warning("tick suppressed: %s", e.message, extra={"automation_id": automation.id})
            return TickOutcome(automation.id, "suppressed", detail=e.message, next_due_at=next_due)
        return TickOutcome(automation.id, "fired", execution_id=execution.id, detail=source, next_due_at=next_due)

    def due_automations(self, now: Optional[datetime] = None) -> List[Tuple[datetime, int]]:
        now = as_utc(now or self.clock())
        db = self.session_factory()
        try:
            rows = db.query(Automation).filter(Automation.status == AutomationStatus.ACTIVE.value).all()
            due = [(next_evaluation_at(a, self.poll_seconds), -(a.priority or 0), a.id) for a in rows]
        finally:
            db.close()
        due.sort()
        return [(at, automation_id) for at, _, automation_id in due if at <= now]

    def run_due(self, now: Optional[datetime] = None) -> List[TickOutcome]:
        """One pass over every ACTIVE automation whose cadence says it is due."""
        now = as_utc(now or self.clock())
        outcomes = []
        for _, automation_id in self.due_automations(now):
            outcomes.append(self.evaluate(automation_id, now))
        fired = sum(1 for o in outcomes if o.result == "fired")
        if outcomes:
            logger.info("evaluated %s automations, %s fired", len(outcomes), fired)
        return outcomes


class DueQueue:
    """Min-heap of (next_due_at, automation_id); one live entry per automation."""

    def __init__(self):
        self._heap: List[Tuple[datetime, int]] = []
        self._due: Dict[int, datetime] = {}
        self._lock = threading.Lock()

    def push(self, automation_id: int, due_at: datetime) -> None:
        due_at = as_utc(due_at)
        with self._lock:
            self._due[automation_id] = due_at
            heapq.heappush(self._heap, (due_at, automation_id))

    def discard(self, automation_id: int) -> None:
        with self._lock:
            self._due.pop(automation_id, None)

    def pop_due(self, now: datetime) -> List[int]:
        now = as_utc(now)
        out = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                due_at, automation_id = heapq.heappop(self._heap)
                if self._due.get(automation_id) != due_at:
                    # superseded by a later push or discarded
                    continue
                del self._due[automation_id]
                out.append(automation_id)
        return out

    def next_due(self) -> Optional[datetime]:
        with self._lock:
            return min(self._due.values()) if self._due else None

    def ids(self) -> Set[int]:
        with self._lock:
            return set(self._due)

    def __len__(self) -> int:
        with self._lock:
            return len(self._due)


class AutomationScheduler:
    """
    Multiplexes every ACTIVE automation onto one heap and a shared worker pool.
    The heap is rebuilt from the database every poll period, which picks up
    new, edited and paused automations.
    """

    def __init__(
        self,
        dispatcher: TriggerDispatcher,
        job_processor: Any = None,
        workers: Optional[int] = None,
        job_poll_seconds: int = 10,
    ):
        self.dispatcher = dispatcher
        self.job_processor = job_processor
        self.workers = int(workers or config.AUTOMATION_WORKERS)
        self.job_poll = timedelta(seconds=job_poll_seconds)
        self.queue = DueQueue()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._pool: Optional[ThreadPoolExecutor] = None
        self._inflight: Set[int] = set()
        self._inflight_lock = threading.Lock()
        self._last_refresh: Optional[datetime] = None
        self._last_jobs: Optional[datetime] = None
        self.last_tick_at: Optional[datetime] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="automation")
        self._thread = threading.Thread(target=self._run_loop, name="automation_scheduler", daemon=True)
        self._thread.start()
        logger.info("automation scheduler started (%s workers)", self.workers)

    def stop(self) -> None:
        self._stop.set()
        t = self._thread
        if t and t.is_alive():
            t.join(timeout=2.0)
        if self._pool is not None:
            self._pool.shutdown(wait=False)
            self._pool = None
        logger.info("automation scheduler stopped")

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick_once()
            except Exception:
                logger.exception("automation scheduler tick failed")
            self._stop.wait(1.0)

    def refresh(self, now: Optional[datetime] = None) -> None:
        now = as_utc(now or self.dispatcher.clock())
        db = self.dispatcher.session_factory()
        try:
            rows = db.query(Automation).filter(Automation.status == AutomationStatus.ACTIVE.value).all()
            active = {a.id: next_evaluation_at(a, self.dispatcher.poll_seconds) for a in rows}
        finally:
            db.close()
        with self._inflight_lock:
            inflight = set(self._inflight)
        for automation_id in self.queue.ids() - set(active):
            self.queue.discard(automation_id)
        for automation_id, due_at in active.items():
            if automation_id not in inflight:
                self.queue.push(automation_id, due_at)
        self._last_refresh = now

    def tick_once(self, now: Optional[datetime] = None) -> List[int]:
        now = as_utc(now or self.dispatcher.clock())
        self.last_tick_at = now
        if self._last_refresh is None or now - self._last_refresh >= timedelta(seconds=self.dispatcher.poll_seconds):
            self.refresh(now)

        submitted = []
        for automation_id in self.queue.pop_due(now):
            with self._inflight_lock:
                if automation_id in self._inflight:
                    continue
                self._inflight.add(automation_id)
            submitted.append(automation_id)
            if self._pool is None:
                self._run_one(automation_id, now)
            else:
                self._pool.submit(self._run_one, automation_id, now)

        if self.job_processor is not None and (self._last_jobs is None or now - self._last_jobs >= self.job_poll):
            self._last_jobs = now
            try:
                self.job_processor.process_due(now)
            except Exception:
                logger.exception("scheduled job processing failed")
        return submitted

    def _run_one(self, automation_id: int, now: datetime) -> None:
        try:
            outcome = self.dispatcher.evaluate(automation_id, now)
            if outcome.result != "skipped" and outcome.next_due_at is not None:
                self.queue.push(automation_id, outcome.next_due_at)
        finally:
            with self._inflight_lock:
                self._inflight.discard(automation_id)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running(),
            "workers": self.workers,
            "queued": len(self.queue),
            "next_due_at": self.queue.next_due(),
            "last_tick_at": self.last_tick_at,
        }
