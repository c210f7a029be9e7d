from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from growroom.core.clock import as_utc, utcnow
from growroom.core.errors import ConflictError, NotFoundError
from growroom.models.automation import Automation
from growroom.models.location import Room, Section
from growroom.models.scheduled_job import JobStatus, JobType, ScheduledJob

logger = logging.getLogger(__name__)

OPEN_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


def build_idempotency_key(
    job_type: str,
    device_id: Optional[int],
    execution_id: Optional[int],
    run_at: datetime,
    discriminator: Optional[Any] = None,
) -> str:
    # same job for the same execution is scheduled once, whoever asks
    if execution_id is not None:
        key = f"{job_type}-{device_id or '-'}-{execution_id}"
        if discriminator is not None:
            key = f"{key}-{discriminator}"
        return key
    return f"{job_type}-{device_id or '-'}-{int(as_utc(run_at).timestamp() * 1000)}"


class JobScheduler:
    """
    Durable timers stored in `scheduled_jobs`.

    Methods flush but never commit; the caller owns the transaction so a job
    and the execution row that needs it land together.
    """

    def __init__(self, db: Session, user_id: Optional[int] = None):
        self.db = db
        # when set, reads only see jobs of automations this user owns
        self.user_id = user_id

    def _visible(self, q):
        if self.user_id is None:
            return q
        return (
            q.join(Automation, Automation.id == ScheduledJob.automation_id)
            .join(Section, Section.id == Automation.section_id)
            .join(Room, Room.id == Section.room_id)
            .filter(Room.user_id == self.user_id)
        )

    def schedule(
        self,
        job_type: JobType,
        run_at: datetime,
        *,
        device_id: Optional[int] = None,
        automation_id: Optional[int] = None,
        execution_id: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
        max_attempts: int = 3,
        discriminator: Optional[Any] = None,
    ) -> ScheduledJob:
        jt = str(getattr(job_type, "value", job_type))
        run_at = as_utc(run_at)
        key = build_idempotency_key(jt, device_id, execution_id, run_at, discriminator)

        existing = self.db.query(ScheduledJob).filter(ScheduledJob.idempotency_key == key).first()
        if existing:
            logger.debug("job already scheduled", extra={"job_id": existing.id})
            return existing

        job = ScheduledJob(
            type=jt,
            device_id=device_id,
            automation_id=automation_id,
            execution_id=execution_id,
            run_at=run_at,
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=max(1, int(max_attempts)),
            payload=payload or {},
            idempotency_key=key,
        )
        self.db.add(job)
        self.db.flush()
        logger.info(
            "Scheduled job %s: %s at %s",
            job.id,
            jt,
            run_at.isoformat(),
            extra={"job_id": job.id, "device_id": device_id, "automation_id": automation_id, "execution_id": execution_id},
        )
        return job

    def schedule_device_off(
        self,
        device_id: int,
        delay_minutes: int,
        *,
        automation_id: Optional[int] = None,
        execution_id: Optional[int] = None,
        base_time: Optional[datetime] = None,
        discriminator: Optional[Any] = None,
    ) -> ScheduledJob:
        run_at = as_utc(base_time or utcnow()) + timedelta(minutes=int(delay_minutes))
        return self.schedule(
            JobType.DEVICE_OFF,
            run_at,
            device_id=device_id,
            automation_id=automation_id,
            execution_id=execution_id,
            max_attempts=3,
            discriminator=discriminator,
        )

    def get(self, job_id: int) -> ScheduledJob:
        job = self._visible(self.db.query(ScheduledJob)).filter(ScheduledJob.id == job_id).first()
        if not job:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def list(self, status: Optional[str] = None, limit: int = 50) -> List[ScheduledJob]:
        q = self._visible(self.db.query(ScheduledJob))
        if status:
            q = q.filter(ScheduledJob.status == status)
        return q.order_by(ScheduledJob.created_at.desc(), ScheduledJob.id.desc()).limit(max(1, min(int(limit), 100))).all()

    def pending_for_device(self, device_id: int) -> List[ScheduledJob]:
        return (
            self.db.query(ScheduledJob)
            .filter(ScheduledJob.device_id == device_id, ScheduledJob.status == JobStatus.PENDING.value)
            .order_by(ScheduledJob.run_at.asc())
            .all()
        )

    def cancel(self, job_id: int) -> ScheduledJob:
        job = self.get(job_id)
        if job.status != JobStatus.PENDING.value:
            raise ConflictError(f"Cannot cancel job {job_id} with status {job.status}")
        job.status = JobStatus.CANCELLED.value
        job.completed_at = utcnow()
        self.db.flush()
        return job

    def retry(self, job_id: int) -> ScheduledJob:
        job = self.get(job_id)
        if job.status not in (JobStatus.FAILED.value, JobStatus.DEAD.value):
            raise ConflictError(f"Cannot retry job {job_id} with status {job.status}")
        job.status = JobStatus.PENDING.value
        job.attempts = 0
        job.last_error = None
        job.run_at = utcnow()
        job.completed_at = None
        self.db.flush()
        return job

    def _cancel_where(self, *criteria) -> int:
        count = (
            self.db.query(ScheduledJob)
            .filter(ScheduledJob.status == JobStatus.PENDING.value, *criteria)
            .update(
                {ScheduledJob.status: JobStatus.CANCELLED.value, ScheduledJob.completed_at: utcnow()},
                synchronize_session=False,
            )
        )
        self.db.flush()
        return int(count or 0)

    def cancel_for_execution(self, execution_id: int) -> int:
        count = self._cancel_where(ScheduledJob.execution_id == execution_id)
        if count:
            logger.info("Cancelled %s pending jobs for execution %s", count, execution_id, extra={"execution_id": execution_id})
        return count

    def cancel_for_automation(self, automation_id: int) -> int:
        count = self._cancel_where(ScheduledJob.automation_id == automation_id)
        if count:
            logger.info("Cancelled %s pending jobs for automation %s", count, automation_id, extra={"automation_id": automation_id})
        return count

    def cancel_for_device(self, device_id: int) -> int:
        count = self._cancel_where(ScheduledJob.device_id == device_id)
        if count:
            logger.info("Cancelled %s pending jobs for device %s", count, device_id, extra={"device_id": device_id})
        return count

    def open_jobs_for_execution(self, execution_id: int, job_type: Optional[JobType] = None, exclude_id: Optional[int] = None) -> int:
        q = self.db.query(func.count(ScheduledJob.id)).filter(
            ScheduledJob.execution_id == execution_id,
            ScheduledJob.status.in_(OPEN_JOB_STATUSES),
        )
        if job_type is not None:
            q = q.filter(ScheduledJob.type == str(getattr(job_type, "value", job_type)))
        if exclude_id is not None:
            q = q.filter(ScheduledJob.id != exclude_id)
        return int(q.scalar() or 0)

    def stats(self) -> Dict[str, Any]:
        rows = self._visible(self.db.query(ScheduledJob.status, func.count(ScheduledJob.id))).group_by(ScheduledJob.status).all()
        counts = {s.value.lower(): 0 for s in JobStatus}
        for status, n in rows:
            counts[str(status).lower()] = int(n)
        counts["total"] = sum(counts.values())
        return counts
