import enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, JSON
from sqlalchemy.sql import func
from growroom.db.session import Base


class JobType(str, enum.Enum):
    DEVICE_ACTION = "DEVICE_ACTION"  # delayed automation action
    DEVICE_OFF = "DEVICE_OFF"  # reversal after `duration`
    EFFECTIVENESS_CHECK = "EFFECTIVENESS_CHECK"


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DEAD = "DEAD"
    CANCELLED = "CANCELLED"


class ScheduledJob(Base):
    """Durable timer. Delays and reversals never sleep a worker thread."""

    __tablename__ = "scheduled_jobs"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String, nullable=False)
    device_id = Column(Integer, ForeignKey("devices.id", ondelete="SET NULL"), nullable=True, index=True)
    automation_id = Column(Integer, ForeignKey("automations.id", ondelete="CASCADE"), nullable=True, index=True)
    execution_id = Column(Integer, ForeignKey("automation_executions.id", ondelete="CASCADE"), nullable=True, index=True)

    run_at = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String, default=JobStatus.PENDING.value, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    last_error = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    idempotency_key = Column(String, unique=True, nullable=False)

    locked_at = Column(DateTime(timezone=True), nullable=True)
    locked_by = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
