from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from growroom.core import config
from growroom.core.clock import as_utc, utcnow
from growroom.models.automation import Automation, AutomationExecution, ExecutionStatus
from growroom.models.scheduled_job import JobType
from growroom.services.job_scheduler import JobScheduler

logger = logging.getLogger(__name__)

_IN_FLIGHT = (ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value)


class ExecutionLease:
    """
    At most one in-flight execution per automation.

    Two layers: a per-automation threading.Lock for ticks racing inside this
    process, and a conditional UPDATE on automations.lease_token for ticks
    racing across processes (API, scheduler thread, celery worker).
    The row lease stays held while the execution is RUNNING and is released
    when the execution reaches a terminal status. An execution older than the
    TTL is only reclaimed when no delayed action job is still open for it.
    """

    _locks: Dict[int, threading.Lock] = {}
    _guard = threading.Lock()

    def __init__(self, db: Session, automation_id: int, ttl_seconds: Optional[int] = None):
        self.db = db
        self.automation_id = int(automation_id)
        self.ttl = timedelta(seconds=int(ttl_seconds or config.LEASE_TTL_SECONDS))
        self.token: Optional[str] = None

    @classmethod
    def local_lock(cls, automation_id: int) -> threading.Lock:
        with cls._guard:
            lock = cls._locks.get(int(automation_id))
            if lock is None:
                lock = threading.Lock()
                cls._locks[int(automation_id)] = lock
            return lock

    def acquire(self, now: Optional[datetime] = None) -> bool:
        now = as_utc(now or utcnow())
        cutoff = now - self.ttl

        in_flight = (
            self.db.query(AutomationExecution)
            .filter(
                AutomationExecution.automation_id == self.automation_id,
                AutomationExecution.status.in_(_IN_FLIGHT),
            )
            .all()
        )
        if any(self._still_live(e, cutoff) for e in in_flight):
            return False

        token = uuid.uuid4().hex
        claimed = (
            self.db.query(Automation)
            .filter(
                Automation.id == self.automation_id,
                or_(Automation.lease_token.is_(None), Automation.lease_acquired_at < cutoff),
            )
            .update({Automation.lease_token: token, Automation.lease_acquired_at: now}, synchronize_session=False)
        )
        if claimed != 1:
            return False

        for stale in in_flight:
            stale.status = ExecutionStatus.FAILED.value
            stale.ended_at = now
            stale.error_message = "Abandoned: execution lease expired"
            logger.warning(
                "reclaimed stale execution lease",
                extra={"automation_id": self.automation_id, "execution_id": stale.id},
            )
        self.db.commit()
        self.token = token
        return True

    def _still_live(self, execution: AutomationExecution, cutoff: datetime) -> bool:
        if as_utc(execution.started_at) >= cutoff:
            return True
        return JobScheduler(self.db).open_jobs_for_execution(execution.id, JobType.DEVICE_ACTION) > 0

    def release(self) -> None:
        if self.token is None:
            return
        (
            self.db.query(Automation)
            .filter(Automation.id == self.automation_id, Automation.lease_token == self.token)
            .update({Automation.lease_token: None, Automation.lease_acquired_at: None}, synchronize_session=False)
        )
        self.db.commit()
        self.token = None

    @staticmethod
    def release_for(db: Session, automation_id: int) -> None:
        """Release whatever lease the automation holds. Caller commits."""
        (
            db.query(Automation)
            .filter(Automation.id == automation_id)
            .update({Automation.lease_token: None, Automation.lease_acquired_at: None}, synchronize_session=False)
        )
