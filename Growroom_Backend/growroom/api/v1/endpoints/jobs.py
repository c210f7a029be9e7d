from typing import List, Optional, Dict, Any
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from growroom.api import deps
from growroom.db.session import get_db
from growroom.models.scheduled_job import JobStatus
from growroom.models.user import User
from growroom.schemas.automation import JobResponse
from growroom.services.job_scheduler import JobScheduler

router = APIRouter()


@router.get("/", response_model=List[JobResponse])
def list_jobs(
    status: Optional[JobStatus] = None,
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
):
    """Delayed actions, reversals and effectiveness checks, newest first."""
    return JobScheduler(db, user_id=current_user.id).list(status=status.value if status else None, limit=limit)


@router.get("/stats")
def job_stats(
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
) -> Dict[str, Any]:
    return JobScheduler(db, user_id=current_user.id).stats()


@router.get("/{job_id}", response_model=JobResponse)
def get_job(
    job_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
):
    return JobScheduler(db, user_id=current_user.id).get(job_id)


@router.post("/{job_id}/retry", response_model=JobResponse)
def retry_job(
    job_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
):
    """Re-queue a FAILED or DEAD job to run now."""
    job = JobScheduler(db, user_id=current_user.id).retry(job_id)
    db.commit()
    db.refresh(job)
    return job


@router.post("/{job_id}/cancel", response_model=JobResponse)
def cancel_job(
    job_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(deps.get_current_user),
):
    job = JobScheduler(db, user_id=current_user.id).cancel(job_id)
    db.commit()
    db.refresh(job)
    return job
