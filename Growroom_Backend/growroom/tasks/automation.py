"""
Celery entry points for deployments that run the engine in a worker
(AUTOMATION_SCHEDULER_MODE=celery) instead of the API process thread.
"""
from celery import shared_task
import logging

from growroom.db.session import SessionLocal
from growroom.drivers.manager import GatewayManager
from growroom.services.job_processor import JobProcessor
from growroom.services.trigger_dispatcher import TriggerDispatcher

logger = logging.getLogger(__name__)

# one processor per worker process so its worker id is stable across beats
_processor = None


def _job_processor() -> JobProcessor:
    global _processor
    if _processor is None:
        _processor = JobProcessor(SessionLocal, GatewayManager.get_gateway())
    return _processor


@shared_task
def evaluate_automations():
    """Evaluate every ACTIVE automation whose cadence is due."""
    try:
        outcomes = TriggerDispatcher(SessionLocal, GatewayManager.get_gateway()).run_due()
    except Exception as e:
        logger.exception("Automation evaluation pass failed")
        return {"error": str(e)}
    summary = {}
    for o in outcomes:
        summary[o.result] = summary.get(o.result, 0) + 1
    return {"evaluated": len(outcomes), **summary}


@shared_task
def process_scheduled_jobs():
    """Run due delayed actions, reversals and effectiveness checks."""
    try:
        return {"processed": _job_processor().process_due()}
    except Exception as e:
        logger.exception("Scheduled job processing failed")
        return {"error": str(e)}


@shared_task
def cleanup_old_jobs():
    """Delete COMPLETED / CANCELLED jobs past the retention window."""
    try:
        deleted = _job_processor().cleanup()
        logger.info("Job cleanup completed", extra={"deleted": deleted})
        return {"deleted": deleted}
    except Exception as e:
        logger.exception("Job cleanup failed")
        return {"error": str(e)}
