from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from growroom.core import config
from growroom.core.clock import as_utc, utcnow
from growroom.core.errors import DispatchError
from growroom.drivers.base import DeviceGateway
from growroom.models.automation import ActionType, Automation, AutomationStatus
from growroom.models.location import Device
from growroom.models.scheduled_job import JobStatus, JobType, ScheduledJob
from growroom.services.action_executor import ActionExecutor, cancel_inflight
from growroom.services.effectiveness_checker import EffectivenessChecker

logger = logging.getLogger(__name__)


class JobProcessor:
    """
    Runs due ScheduledJobs.

    Claim is a conditional UPDATE (PENDING -> RUNNING, stamped with this
    worker's id), so two workers polling the same table never run one job
    twice. Locks older than the TTL belong to a dead worker and are released.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: DeviceGateway,
        worker_id: Optional[str] = None,
        batch_size: Optional[int] = None,
        lock_ttl_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.worker_id = worker_id or uuid.uuid4().hex
        self.batch_size = int(batch_size or config.JOB_BATCH_SIZE)
        self.lock_ttl = timedelta(seconds=int(lock_ttl_seconds or config.JOB_LOCK_TTL_SECONDS))
        self._busy = threading.Lock()

    def process_due(self, now: Optional[datetime] = None) -> int:
        if not self._busy.acquire(blocking=False):
            logger.debug("job processing already running, skipping")
            return 0
        try:
            now = as_utc(now or utcnow())
            db = self.session_factory()
            try:
                self.release_expired_locks(db, now)
                jobs = self.claim(db, now)
                if jobs:
                    logger.info("Processing %s jobs", len(jobs))
                for job in jobs:
                    self.process_job(db, job, now)
                return len(jobs)
            finally:
                db.close()
        finally:
            self._busy.release()

    def release_expired_locks(self, db: Session, now: datetime) -> int:
        count = (
            db.query(ScheduledJob)
            .filter(ScheduledJob.status == JobStatus.RUNNING.value, ScheduledJob.locked_at < now - self.lock_ttl)
            .update(
                {ScheduledJob.status: JobStatus.PENDING.value, ScheduledJob.locked_at: None, ScheduledJob.locked_by: None},
                synchronize_session=False,
            )
        )
        db.commit()
        if count:
            logger.warning("Released %s expired job locks", count)
        return int(count or 0)

    def claim(self, db: Session, now: datetime) -> List[ScheduledJob]:
        candidates = (
            db.query(ScheduledJob.id)
            .filter(ScheduledJob.status == JobStatus.PENDING.value, ScheduledJob.run_at <= now)
            .order_by(ScheduledJob.run_at.asc(), ScheduledJob.id.asc())
            .limit(self.batch_size)
            .all()
        )
        claimed_ids = []
        for (job_id,) in candidates:
            got = (
                db.query(ScheduledJob)
                .filter(ScheduledJob.id == job_id, ScheduledJob.status == JobStatus.PENDING.value)
                .update(
                    {
                        ScheduledJob.status: JobStatus.RUNNING.value,
                        ScheduledJob.locked_at: now,
                        ScheduledJob.locked_by: self.worker_id,
                        ScheduledJob.attempts: ScheduledJob.attempts + 1,
                    },
                    synchronize_session=False,
                )
            )
            if got == 1:
                claimed_ids.append(job_id)
        db.commit()
        if not claimed_ids:
            return []
        jobs = db.query(ScheduledJob).filter(ScheduledJob.id.in_(claimed_ids)).order_by(ScheduledJob.run_at.asc()).all()
        for job in jobs:
            if job.started_at is None:
                job.started_at = now
        db.commit()
        return jobs

    def process_job(self, db: Session, job: ScheduledJob, now: Optional[datetime] = None) -> None:
        now = as_utc(now or utcnow())
        job_id = job.id
        try:
            cancelled = self._execute(db, job, now)
        except Exception as e:
            db.rollback()
            job = db.query(ScheduledJob).filter(ScheduledJob.id == job_id).first()
            if job is None:
                return
            self._handle_failure(db, job, e, now)
            return

        job.status = JobStatus.CANCELLED.value if cancelled else JobStatus.COMPLETED.value
        job.completed_at = now
        job.locked_at = None
        job.locked_by = None
        db.commit()
        logger.info("Job %s %s", job_id, job.status.lower(), extra={"job_id": job_id})

    def _execute(self, db: Session, job: ScheduledJob, now: datetime) -> bool:
        """Returns True when the job was skipped because its automation left ACTIVE."""
        if job.automation_id is not None:
            status = db.query(Automation.status).filter(Automation.id == job.automation_id).scalar()
            if status != AutomationStatus.ACTIVE.value:
                logger.info("job skipped, automation not active", extra={"job_id": job.id, "automation_id": job.automation_id})
                # anything else it still has queued or running is stale too
                cancel_inflight(db, job.automation_id, now=now)
                db.commit()
                return True

        if job.type == JobType.DEVICE_OFF.value:
            device = db.query(Device).filter(Device.id == job.device_id).first()
            if device is None:
                raise DispatchError(f"device {job.device_id} not found")
            result = self.gateway.dispatch(device, ActionType.TURN_OFF.value, {})
            if not result.success:
                raise DispatchError(result.error or "turn off failed")
            return False

        if job.type == JobType.DEVICE_ACTION.value:
            ActionExecutor(db, self.gateway, clock=lambda: now).run_delayed(job)
            return False

        if job.type == JobType.EFFECTIVENESS_CHECK.value:
            EffectivenessChecker(db, self.gateway).run_check(job.execution_id, now=now)
            db.commit()
            return False

        raise ValueError(f"Unknown job type: {job.type}")

    def _handle_failure(self, db: Session, job: ScheduledJob, error: Exception, now: datetime) -> None:
        message = getattr(error, "message", None) or str(error)
        job.last_error = message
        job.locked_at = None
        job.locked_by = None
        if job.attempts >= job.max_attempts:
            # single-shot jobs fail; retried jobs that ran out of attempts are dead
            job.status = JobStatus.FAILED.value if job.max_attempts <= 1 else JobStatus.DEAD.value
            job.completed_at = now
            db.commit()
            logger.error(
                "Job %s %s after %s attempts: %s",
                job.id,
                job.status,
                job.attempts,
                message,
                extra={"job_id": job.id, "device_id": job.device_id},
            )
            return

        backoff_minutes = 2 ** max(0, job.attempts - 1)
        job.status = JobStatus.PENDING.value
        job.run_at = now + timedelta(minutes=backoff_minutes)
        db.commit()
        logger.warning(
            "Job %s failed (attempt %s/%s), retry at %s: %s",
            job.id,
            job.attempts,
            job.max_attempts,
            job.run_at.isoformat(),
            message,
            extra={"job_id": job.id, "device_id": job.device_id},
        )

    def cleanup(self, now: Optional[datetime] = None, retention_days: Optional[int] = None) -> int:
        now = as_utc(now or utcnow())
        cutoff = now - timedelta(days=int(retention_days or config.JOB_RETENTION_DAYS))
        db = self.session_factory()
        try:
            count = (
                db.query(ScheduledJob)
                .filter(
                    ScheduledJob.status.in_((JobStatus.COMPLETED.value, JobStatus.CANCELLED.value)),
                    ScheduledJob.completed_at < cutoff,
                )
                .delete(synchronize_session=False)
            )
            db.commit()
            if count:
                logger.info("Cleaned up %s old jobs", count)
            return int(count or 0)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
