from datetime import datetime, timedelta, timezone

import pytest

from growroom.core.clock import as_utc
from growroom.core.errors import ConflictError
from growroom.models.scheduled_job import JobType, ScheduledJob
from growroom.services.job_processor import JobProcessor
from growroom.services.job_scheduler import JobScheduler


T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def processor(session_factory, gateway):
    return JobProcessor(session_factory, gateway, worker_id="worker-a", lock_ttl_seconds=60)


def _reload(db, job_id):
    db.expire_all()
    return db.get(ScheduledJob, job_id)


def test_device_off_retries_with_backoff_then_dies(db, processor, gateway, grow_room):
    gateway.failures[grow_room.light.id] = "relay stuck"
    job = JobScheduler(db).schedule_device_off(grow_room.light.id, 0, base_time=T0)
    db.commit()

    processor.process_due(T0)
    job = _reload(db, job.id)
    assert job.status == "PENDING"
    assert job.attempts == 1
    assert job.last_error == "relay stuck"
    assert as_utc(job.run_at) == T0 + timedelta(minutes=1)

    processor.process_due(T0 + timedelta(minutes=1))
    job = _reload(db, job.id)
    assert job.attempts == 2
    assert as_utc(job.run_at) == T0 + timedelta(minutes=3)

    # not due yet
    assert processor.process_due(T0 + timedelta(minutes=2)) == 0

    processor.process_due(T0 + timedelta(minutes=3))
    job = _reload(db, job.id)
    assert job.status == "DEAD"
    assert job.attempts == 3
    assert gateway.commands_for(grow_room.light) == ["TURN_OFF"] * 3


def test_single_shot_job_fails_without_retry(db, processor, gateway, grow_room):
    gateway.failures[grow_room.light.id] = "timeout"
    job = JobScheduler(db).schedule(JobType.DEVICE_OFF, T0, device_id=grow_room.light.id, max_attempts=1)
    db.commit()

    processor.process_due(T0)

    job = _reload(db, job.id)
    assert job.status == "FAILED"
    assert job.attempts == 1


def test_successful_device_off(db, processor, gateway, grow_room):
    job = JobScheduler(db).schedule_device_off(grow_room.extractor.id, 30, base_time=T0)
    db.commit()
    assert as_utc(job.run_at) == T0 + timedelta(minutes=30)

    assert processor.process_due(T0 + timedelta(minutes=29)) == 0
    assert processor.process_due(T0 + timedelta(minutes=30)) == 1

    job = _reload(db, job.id)
    assert job.status == "COMPLETED"
    assert job.locked_by is None
    assert gateway.commands_for(grow_room.extractor) == ["TURN_OFF"]


def test_scheduling_is_idempotent(db, grow_room):
    scheduler = JobScheduler(db)
    first = scheduler.schedule_device_off(grow_room.light.id, 10, base_time=T0)
    second = scheduler.schedule_device_off(grow_room.light.id, 10, base_time=T0)
    db.commit()

    assert first.id == second.id
    assert db.query(ScheduledJob).count() == 1


def test_job_for_inactive_automation_is_cancelled(db, processor, gateway, grow_room, make_automation):
    automation = make_automation(status="PAUSED", actions=[dict(device_id=grow_room.light.id, action_type="TURN_ON")])
    job = JobScheduler(db).schedule_device_off(grow_room.light.id, 0, automation_id=automation.id, base_time=T0)
    db.commit()

    processor.process_due(T0)

    assert _reload(db, job.id).status == "CANCELLED"
    assert gateway.dispatched == []


def test_claim_is_exclusive(db, session_factory, gateway, grow_room):
    JobScheduler(db).schedule_device_off(grow_room.light.id, 0, base_time=T0)
    db.commit()
    a = JobProcessor(session_factory, gateway, worker_id="worker-a")
    b = JobProcessor(session_factory, gateway, worker_id="worker-b")

    session_a, session_b = session_factory(), session_factory()
    try:
        claimed_a = a.claim(session_a, T0)
        claimed_b = b.claim(session_b, T0)
    finally:
        session_a.close()
        session_b.close()

    assert len(claimed_a) == 1
    assert claimed_b == []


def test_expired_lock_is_released(db, processor, grow_room):
    job = JobScheduler(db).schedule_device_off(grow_room.light.id, 0, base_time=T0)
    job.status = "RUNNING"
    job.locked_at = T0 - timedelta(minutes=5)
    job.locked_by = "dead-worker"
    db.commit()

    assert processor.release_expired_locks(db, T0) == 1
    job = _reload(db, job.id)
    assert job.status == "PENDING"
    assert job.locked_by is None


def test_cancel_and_retry(db, grow_room):
    scheduler = JobScheduler(db)
    job = scheduler.schedule_device_off(grow_room.light.id, 5, base_time=T0)
    db.commit()

    with pytest.raises(ConflictError):
        scheduler.retry(job.id)

    scheduler.cancel(job.id)
    db.commit()
    assert _reload(db, job.id).status == "CANCELLED"

    with pytest.raises(ConflictError):
        scheduler.cancel(job.id)

    job = _reload(db, job.id)
    job.status = "DEAD"
    job.attempts = 3
    db.commit()
    scheduler.retry(job.id)
    db.commit()
    job = _reload(db, job.id)
    assert job.status == "PENDING"
    assert job.attempts == 0


def test_cancel_for_device(db, grow_room):
    scheduler = JobScheduler(db)
    scheduler.schedule_device_off(grow_room.light.id, 5, base_time=T0)
    scheduler.schedule_device_off(grow_room.light.id, 10, base_time=T0)
    other = scheduler.schedule_device_off(grow_room.pump.id, 5, base_time=T0)
    db.commit()

    assert scheduler.cancel_for_device(grow_room.light.id) == 2
    db.commit()
    assert [j.id for j in scheduler.pending_for_device(grow_room.pump.id)] == [other.id]
    assert scheduler.pending_for_device(grow_room.light.id) == []


def test_cleanup_keeps_recent_and_failed_jobs(db, processor, grow_room):
    now = T0
    rows = [
        ("COMPLETED", now - timedelta(days=40)),
        ("CANCELLED", now - timedelta(days=31)),
        ("COMPLETED", now - timedelta(days=2)),
        ("DEAD", now - timedelta(days=40)),
    ]
    for idx, (status, completed_at) in enumerate(rows):
        db.add(
            ScheduledJob(
                type="DEVICE_OFF",
                device_id=grow_room.light.id,
                run_at=completed_at,
                status=status,
                completed_at=completed_at,
                idempotency_key=f"cleanup-{idx}",
            )
        )
    db.commit()

    assert processor.cleanup(now, retention_days=30) == 2
    db.expire_all()
    assert sorted(j.status for j in db.query(ScheduledJob).all()) == ["COMPLETED", "DEAD"]


def test_stats_count_by_status(db, grow_room):
    scheduler = JobScheduler(db)
    scheduler.schedule_device_off(grow_room.light.id, 5, base_time=T0)
    job = scheduler.schedule_device_off(grow_room.pump.id, 5, base_time=T0)
    scheduler.cancel(job.id)
    db.commit()

    stats = scheduler.stats()
    assert stats["pending"] == 1
    assert stats["cancelled"] == 1
    assert stats["total"] == 2
